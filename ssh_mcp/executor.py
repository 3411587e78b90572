import shlex
import threading
import time
from dataclasses import dataclass
from typing import Optional

import paramiko

from ssh_mcp.config import (
    ABORT_TIMEOUT, BUFFER_SIZE, DEFAULT_TIMEOUT_MS, MAX_BUFFER_CHARS, POLL_INTERVAL, ROOT_PROMPT,
)
from ssh_mcp.elevation import InteractiveShell
from ssh_mcp.outcome import Outcome
from ssh_mcp.session import Session
from ssh_mcp.utils import log_error, normalize_terminal_text, append_bounded

REASON_EXEC_ERROR = "exec_error"
REASON_STDERR = "stderr"
REASON_CLOSED = "closed"
REASON_TIMEOUT = "timeout"


@dataclass(frozen=True)
class ExecutionRequest:
    command: str
    stdin: Optional[bytes] = None
    timeout: float = DEFAULT_TIMEOUT_MS / 1000.0
    # None means: request a PTY only when there is a stdin payload.
    get_pty: Optional[bool] = None

    @property
    def wants_pty(self) -> bool:
        if self.get_pty is None:
            return bool(self.stdin)
        return self.get_pty


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    output: str = ""
    error: str = ""
    reason: str = ""
    exit_code: Optional[int] = None

    @property
    def timed_out(self) -> bool:
        return self.reason == REASON_TIMEOUT

    @classmethod
    def ok(cls, output: str, exit_code: Optional[int] = None) -> "ExecutionResult":
        return cls(success=True, output=output, exit_code=exit_code)

    @classmethod
    def failed(cls, reason: str, error: str, exit_code: Optional[int] = None) -> "ExecutionResult":
        return cls(success=False, error=error, reason=reason, exit_code=exit_code)


def timeout_result(timeout: float) -> ExecutionResult:
    return ExecutionResult.failed(REASON_TIMEOUT, f"Command execution timed out after {int(round(timeout * 1000))}ms")


def abort_command(command: str) -> str:
    return f"timeout 3s pkill -f {shlex.quote(command)} 2>/dev/null || true"


def execute(session: Session, request: ExecutionRequest) -> ExecutionResult:
    """Run one command on the session's elevated shell, or on a fresh exec channel."""
    client = session.get_connection()
    shell = session.elevated_shell()
    session._log("command_started", command=request.command, elevated=shell is not None)
    result = None
    if shell is not None:
        result = _execute_in_shell(session, shell, request)
    if result is None:
        result = _execute_fresh(session, client, request)
    session._log(
        "command_finished",
        success=result.success,
        reason=result.reason,
        exit_code=result.exit_code,
    )
    return result


# ========= Fresh exec channel =========

def _execute_fresh(session: Session, client: paramiko.SSHClient, request: ExecutionRequest) -> ExecutionResult:
    try:
        transport = client.get_transport()
        if transport is None or not transport.is_active():
            raise paramiko.SSHException("transport is not active")
        channel = transport.open_session()
        if request.wants_pty:
            channel.get_pty()
        channel.exec_command(request.command)
    except Exception as exc:
        return ExecutionResult.failed(REASON_EXEC_ERROR, f"SSH exec error: {exc}")

    if request.stdin:
        try:
            channel.sendall(request.stdin)
        except Exception as exc:
            log_error(f"Error writing to stdin: {exc}")
    try:
        channel.shutdown_write()
    except Exception:
        pass

    outcome = Outcome()
    collector = threading.Thread(
        target=_collect_exec_output, args=(channel, request, outcome), name="ssh-mcp-exec", daemon=True
    )
    collector.start()

    if outcome.wait(request.timeout):
        return outcome.value
    result = timeout_result(request.timeout)
    if not outcome.resolve(value=result):
        return outcome.value

    # Advisory only: the timeout is already reported whatever happens here.
    aborter = threading.Thread(
        target=_abort_remote, args=(session, client, request.command, channel), name="ssh-mcp-abort", daemon=True
    )
    aborter.start()
    return result


def _collect_exec_output(channel: paramiko.Channel, request: ExecutionRequest, outcome: Outcome) -> None:
    stdout = bytearray()
    stderr = bytearray()
    try:
        while not outcome.done:
            has_progress = False
            if channel.recv_ready():
                data = channel.recv(BUFFER_SIZE)
                if data:
                    stdout.extend(data)
                    has_progress = True
            if channel.recv_stderr_ready():
                data = channel.recv_stderr(BUFFER_SIZE)
                if data:
                    stderr.extend(data)
                    has_progress = True
            if has_progress:
                continue
            if channel.exit_status_ready() or channel.closed:
                if not channel.recv_ready() and not channel.recv_stderr_ready():
                    break
            time.sleep(POLL_INTERVAL)
        if outcome.done:
            return

        exit_code = channel.recv_exit_status()
        out_text = stdout.decode("utf-8", errors="replace")
        err_text = stderr.decode("utf-8", errors="replace")
        if request.wants_pty:
            if request.stdin:
                out_text = _strip_stdin_echo(out_text, request.stdin)
            out_text = out_text.replace("\r\n", "\n")
        if err_text:
            outcome.resolve(
                value=ExecutionResult.failed(REASON_STDERR, f"Error (code {exit_code}):\n{err_text}", exit_code)
            )
        elif request.wants_pty and exit_code != 0:
            # A PTY merges stderr into stdout; the exit status is all that is left.
            outcome.resolve(
                value=ExecutionResult.failed(REASON_STDERR, f"Error (code {exit_code}):\n{out_text}", exit_code)
            )
        else:
            outcome.resolve(value=ExecutionResult.ok(out_text, exit_code))
    except Exception as exc:
        outcome.resolve(value=ExecutionResult.failed(REASON_EXEC_ERROR, f"SSH exec error: {exc}"))
    finally:
        try:
            channel.close()
        except Exception:
            pass


def _strip_stdin_echo(output: str, payload: bytes) -> str:
    # A PTY echoes whatever was written to stdin before the program disabled echo.
    echoed = payload.decode("utf-8", errors="replace").replace("\n", "\r\n")
    if echoed and output.startswith(echoed):
        return output[len(echoed):]
    return output


def _abort_remote(session: Session, client: paramiko.SSHClient, command: str, channel: paramiko.Channel) -> None:
    abort_channel = None
    try:
        transport = client.get_transport()
        if transport is None or not transport.is_active():
            return
        abort_channel = transport.open_session()
        abort_channel.exec_command(abort_command(command))
        session._log("abort_sent", command=command)
        deadline = time.time() + ABORT_TIMEOUT
        while time.time() < deadline and not abort_channel.exit_status_ready():
            time.sleep(POLL_INTERVAL)
    except Exception as exc:
        log_error(f"abort of timed out command failed: {exc}")
    finally:
        for ch in (abort_channel, channel):
            if ch is None:
                continue
            try:
                ch.close()
            except Exception:
                pass


# ========= Shared elevated shell =========

class ShellCommand:
    """Listener collecting one command's output until the root prompt returns."""

    def __init__(self, outcome: Outcome, max_buffer_chars: int = MAX_BUFFER_CHARS):
        self.outcome = outcome
        self.max_buffer_chars = max_buffer_chars
        self.buffer = ""

    def feed(self, text: str) -> None:
        if self.outcome.done:
            return
        self.buffer = append_bounded(self.buffer, text, self.max_buffer_chars)
        clean = normalize_terminal_text(self.buffer)
        if "\n" in clean and ROOT_PROMPT.search(clean):
            self.outcome.resolve(value=ExecutionResult.ok(extract_shell_output(clean)))

    def closed(self) -> None:
        self.outcome.resolve(
            value=ExecutionResult.failed(REASON_CLOSED, "su shell closed while the command was running")
        )


def extract_shell_output(text: str) -> str:
    """Drop the echoed command (first line) and the trailing prompt line."""
    lines = text.split("\n")
    body = lines[1:-1]
    if not body:
        return ""
    return "\n".join(body) + "\n"


def _execute_in_shell(session: Session, shell: InteractiveShell, request: ExecutionRequest) -> Optional[ExecutionResult]:
    """Run one command in the shared shell; None when the shell went away before it could start."""
    started = time.time()
    if not shell.command_lock.acquire(timeout=request.timeout):
        return timeout_result(request.timeout)
    try:
        if shell.closed:
            return None
        outcome = Outcome()
        shell.set_listener(ShellCommand(outcome))
        try:
            shell.write(request.command + "\n")
        except Exception as exc:
            return ExecutionResult.failed(REASON_EXEC_ERROR, f"SSH exec error: {exc}")

        remaining = max(0.0, request.timeout - (time.time() - started))
        if not outcome.wait(remaining) and outcome.resolve(value=timeout_result(request.timeout)):
            # The command may still be running; its late output must not reach the next caller.
            session.retire_shell(shell)
        return outcome.value
    finally:
        shell.set_listener(None)
        shell.command_lock.release()
