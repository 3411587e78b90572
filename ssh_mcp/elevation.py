"""su elevation over an interactive PTY channel.

InteractiveShell owns a paramiko channel opened with invoke_shell() and a
reader thread that hands decoded output to exactly one listener at a time.
SuHandshake is the listener used while elevating; once it succeeds the
shell stays open as the session's elevated shell and command runs take
over as listeners (see executor.ShellCommand).
"""

import codecs
import threading
import time
from typing import Callable, List, Optional

import paramiko

from ssh_mcp.config import (
    BUFFER_SIZE, POLL_INTERVAL, MAX_HANDSHAKE_BUFFER_CHARS,
    SU_PASSWORD_PROMPT, SU_SUCCESS, SU_FAILURE,
)
from ssh_mcp.errors import ElevationError
from ssh_mcp.utils import log_error, normalize_terminal_text, append_bounded


class InteractiveShell:
    def __init__(self, channel: paramiko.Channel, name: str = "shell"):
        self.channel = channel
        self.name = name
        self.lock = threading.Lock()
        # One command at a time may talk to a shared shell.
        self.command_lock = threading.Lock()
        self.closed_event = threading.Event()
        self._listener = None
        self._close_handlers: List[Callable[["InteractiveShell"], None]] = []
        self._stop = threading.Event()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._thread: Optional[threading.Thread] = None

    @property
    def closed(self) -> bool:
        return self.closed_event.is_set() or bool(getattr(self.channel, "closed", False))

    def set_listener(self, listener) -> None:
        with self.lock:
            self._listener = listener

    def add_close_handler(self, handler: Callable[["InteractiveShell"], None]) -> None:
        self._close_handlers.append(handler)

    def start(self) -> None:
        self._thread = threading.Thread(target=self._reader_loop, name=f"ssh-mcp-{self.name}", daemon=True)
        self._thread.start()

    def write(self, text: str) -> None:
        if self.closed:
            raise OSError(f"{self.name} channel is closed")
        self.channel.send(text)

    def close(self) -> None:
        self._stop.set()
        try:
            self.channel.close()
        except Exception as exc:
            log_error(f"{self.name} channel close failed: {exc}")

    def _dispatch(self, text: str) -> None:
        with self.lock:
            listener = self._listener
        # Output with no listener is stale (banner, late prompt) and dropped.
        if listener is not None and text:
            listener.feed(text)

    def _reader_loop(self) -> None:
        try:
            while not self._stop.is_set():
                if self.channel.recv_ready():
                    data = self.channel.recv(BUFFER_SIZE)
                    if not data:
                        break
                    self._dispatch(self._decoder.decode(data))
                    continue
                if self.channel.closed or self.channel.eof_received:
                    break
                time.sleep(POLL_INTERVAL)
        except Exception as exc:
            log_error(f"{self.name} reader error: {exc}")
        finally:
            self._finish()

    def _finish(self) -> None:
        self.closed_event.set()
        try:
            self.channel.close()
        except Exception:
            pass
        with self.lock:
            listener = self._listener
            self._listener = None
        if listener is not None:
            listener.closed()
        for handler in self._close_handlers:
            try:
                handler(self)
            except Exception as exc:
                log_error(f"{self.name} close handler failed: {exc}")


class SuHandshake:
    """Drive `su -` to a root prompt.

    States: awaiting_prompt -> password_sent -> resolved | failed. The
    secret is written at most once; the buffer is bounded and survives
    prompts that arrive split across reads.
    """

    AWAITING_PROMPT = "awaiting_prompt"
    PASSWORD_SENT = "password_sent"
    RESOLVED = "resolved"
    FAILED = "failed"

    def __init__(
        self,
        shell: InteractiveShell,
        secret: str,
        on_done: Callable[[Optional[ElevationError]], None],
        max_buffer_chars: int = MAX_HANDSHAKE_BUFFER_CHARS,
    ):
        self.shell = shell
        self.secret = secret
        self.on_done = on_done
        self.max_buffer_chars = max_buffer_chars
        self.state = self.AWAITING_PROMPT
        self.buffer = ""

    @property
    def finished(self) -> bool:
        return self.state in (self.RESOLVED, self.FAILED)

    def feed(self, text: str) -> None:
        if self.finished:
            return
        self.buffer = append_bounded(self.buffer, text, self.max_buffer_chars)
        clean = normalize_terminal_text(self.buffer)

        if self.state == self.AWAITING_PROMPT and SU_PASSWORD_PROMPT.search(clean):
            self.state = self.PASSWORD_SENT
            self.buffer = ""
            try:
                self.shell.write(self.secret + "\n")
            except Exception as exc:
                self._fail(ElevationError(f"Failed to send su password: {exc}"))
            return

        if SU_FAILURE.search(clean):
            self._fail(ElevationError(f"su authentication failed: {clean.strip()}"))
            return

        if SU_SUCCESS.search(clean):
            self.state = self.RESOLVED
            self.buffer = ""
            self.on_done(None)

    def closed(self) -> None:
        if not self.finished:
            self._fail(ElevationError("su shell closed before elevation completed"))

    def fail(self, error: ElevationError) -> None:
        if not self.finished:
            self._fail(error)

    def _fail(self, error: ElevationError) -> None:
        self.state = self.FAILED
        self.on_done(error)
