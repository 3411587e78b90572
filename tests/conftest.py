"""Pytest fixtures: an in-process fake of the paramiko client API.

FakeRemote scripts a tiny remote host: exec channels understand `echo`,
`whoami`, stderr writes, `sleep` (hangs), the pkill abort command and the
two sudo wrappers; interactive shells emulate a bash prompt plus `su -`.
"""

import re
import shlex
import threading
import time
from typing import Callable, List, Optional

import paramiko
import pytest

from ssh_mcp.config import SessionConfig
from ssh_mcp.session import Session

USER_PROMPT = "{user}@fakehost:~$ "
ROOT_PROMPT = "root@fakehost:~# "

ECHO = re.compile(r"""^echo\s+(?:"([^"]*)"|'([^']*)'|(.*))$""")
STDERR_ECHO = re.compile(r"""echo\s+"?([^">]*?)"?\s*>&2""")
EXIT_CODE = re.compile(r"exit\s+(\d+)")


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def run_simple(command: str, identity: str):
    """Return (stdout, stderr, exit_code, hangs) for a one-line command."""
    command = command.strip()
    if ">&2" in command:
        match = STDERR_ECHO.search(command)
        code = EXIT_CODE.search(command)
        text = match.group(1) if match else "error"
        return "", text + "\n", int(code.group(1)) if code else 1, False
    if command == "whoami":
        return identity + "\n", "", 0, False
    if command.startswith("sleep"):
        return "", "", None, True
    match = ECHO.match(command)
    if match:
        text = next(group for group in match.groups() if group is not None)
        return text + "\n", "", 0, False
    name = command.split()[0] if command else command
    return "", f"sh: 1: {name}: not found\n", 127, False


class FakeRemote:
    def __init__(self, username: str = "tester", su_password: str = "rootpw", sudo_password: str = "sudopw"):
        self.username = username
        self.su_password = su_password
        self.sudo_password = sudo_password
        self.sudo_nopasswd = True
        self.su_mode = "normal"  # normal | silent | close
        self.connect_error: Optional[Exception] = None
        self.open_session_error: Optional[Exception] = None
        self.connect_gate: Optional[threading.Event] = None
        self.connect_entered = threading.Event()
        self.clients: List["FakeSSHClient"] = []
        self.shells: List["FakeShellChannel"] = []
        self.exec_channels: List["FakeExecChannel"] = []
        self.exec_log: List[str] = []
        self.lock = threading.Lock()

    @property
    def aborts(self) -> List[str]:
        return [cmd for cmd in self.exec_log if cmd.startswith("timeout 3s pkill -f")]

    def run_exec(self, command: str, stdin: bytes, pty: bool):
        if command.startswith("timeout 3s pkill -f"):
            return "", "", 0, False
        if command.startswith("sudo "):
            out, err, code, hangs = self._run_sudo(command, stdin)
        else:
            out, err, code, hangs = run_simple(command, self.username)
        if pty:
            # A terminal echoes the piped payload, merges stderr into stdout and uses CRLF.
            echo = stdin.decode("utf-8").replace("\n", "\r\n")
            return echo + (out + err).replace("\n", "\r\n"), "", code, hangs
        return out, err, code, hangs

    def _run_sudo(self, command: str, stdin: bytes):
        parts = shlex.split(command)
        inner = parts[-1]
        if "-n" in parts:
            if not self.sudo_nopasswd:
                return "", "sudo: a password is required\n", 1, False
            return run_simple(inner, "root")
        if stdin.decode("utf-8") != self.sudo_password + "\n":
            return "", "sudo: 1 incorrect password attempt\n", 1, False
        return run_simple(inner, "root")


class FakeTransport:
    def __init__(self, remote: FakeRemote):
        self.remote = remote
        self.active = True
        self.keepalive = None

    def is_active(self) -> bool:
        return self.active

    def set_keepalive(self, interval: int) -> None:
        self.keepalive = interval

    def open_session(self) -> "FakeExecChannel":
        if not self.active:
            raise paramiko.SSHException("SSH session not active")
        if self.remote.open_session_error is not None:
            raise self.remote.open_session_error
        channel = FakeExecChannel(self.remote)
        with self.remote.lock:
            self.remote.exec_channels.append(channel)
        return channel


class FakeExecChannel:
    def __init__(self, remote: FakeRemote):
        self.remote = remote
        self.command: Optional[str] = None
        self.pty = False
        self.stdin = b""
        self.write_closed = False
        self.closed = False
        self._ran = False
        self._stdout = b""
        self._stderr = b""
        self._exit_code: Optional[int] = None
        self._hangs = False
        self._lock = threading.Lock()

    def get_pty(self, *args, **kwargs) -> None:
        self.pty = True

    def exec_command(self, command: str) -> None:
        self.command = command
        with self.remote.lock:
            self.remote.exec_log.append(command)

    def sendall(self, data: bytes) -> None:
        self.stdin += data

    def shutdown_write(self) -> None:
        self.write_closed = True

    def _ensure_ran(self) -> None:
        with self._lock:
            if self._ran:
                return
            self._ran = True
            out, err, code, hangs = self.remote.run_exec(self.command, self.stdin, self.pty)
            self._stdout = out.encode("utf-8")
            self._stderr = err.encode("utf-8")
            self._exit_code = code
            self._hangs = hangs

    def recv_ready(self) -> bool:
        self._ensure_ran()
        return bool(self._stdout)

    def recv(self, nbytes: int) -> bytes:
        with self._lock:
            data, self._stdout = self._stdout[:nbytes], self._stdout[nbytes:]
            return data

    def recv_stderr_ready(self) -> bool:
        self._ensure_ran()
        return bool(self._stderr)

    def recv_stderr(self, nbytes: int) -> bytes:
        with self._lock:
            data, self._stderr = self._stderr[:nbytes], self._stderr[nbytes:]
            return data

    def exit_status_ready(self) -> bool:
        self._ensure_ran()
        return not self._hangs or self.closed

    def recv_exit_status(self) -> int:
        self._ensure_ran()
        return self._exit_code if self._exit_code is not None else -1

    def close(self) -> None:
        self.closed = True


class FakeShellChannel:
    """A PTY shell: echoes input, answers `su -` with a password prompt."""

    def __init__(self, remote: FakeRemote):
        self.remote = remote
        self.state = "user"
        self.closed = False
        self.eof_received = False
        self.sent: List[str] = []
        self._pending = ""
        self._out = b""
        self._lock = threading.Lock()
        self._emit("Welcome to fakehost\r\n" + self.user_prompt)

    @property
    def user_prompt(self) -> str:
        return USER_PROMPT.format(user=self.remote.username)

    def _emit(self, text: str) -> None:
        self._out += text.encode("utf-8")

    def recv_ready(self) -> bool:
        with self._lock:
            return bool(self._out)

    def recv(self, nbytes: int) -> bytes:
        with self._lock:
            data, self._out = self._out[:nbytes], self._out[nbytes:]
            return data

    def send(self, text: str) -> int:
        if self.closed:
            raise OSError("Socket is closed")
        with self._lock:
            self.sent.append(text)
            self._pending += text
            while "\n" in self._pending and not self.closed:
                line, self._pending = self._pending.split("\n", 1)
                self._handle_line(line)
        return len(text)

    def _handle_line(self, line: str) -> None:
        if self.state == "password":
            self._emit("\r\n")
            if line == self.remote.su_password:
                self.state = "root"
                self._emit(ROOT_PROMPT)
            else:
                self.state = "user"
                self._emit("su: Authentication failure\r\n" + self.user_prompt)
            return

        # PTY echo of the typed line.
        self._emit(line + "\r\n")
        if self.state == "busy":
            return
        if self.state == "user" and line == "su -":
            if self.remote.su_mode == "close":
                self.closed = True
                self.eof_received = True
            elif self.remote.su_mode == "normal":
                self.state = "password"
                self._emit("Password: ")
            return
        if line == "exit":
            self.closed = True
            self.eof_received = True
            return

        identity = "root" if self.state == "root" else self.remote.username
        prompt = ROOT_PROMPT if self.state == "root" else self.user_prompt
        out, err, code, hangs = run_simple(line, identity)
        if hangs:
            self.state = "busy"
            return
        self._emit((out + err).replace("\n", "\r\n") + prompt)

    def close(self) -> None:
        self.closed = True


class FakeSSHClient:
    def __init__(self, remote: FakeRemote):
        self.remote = remote
        self.transport: Optional[FakeTransport] = None
        self.connect_kwargs = None
        self.closed = False
        self.policy = None
        self.loaded_host_keys = False
        with remote.lock:
            remote.clients.append(self)

    def load_system_host_keys(self) -> None:
        self.loaded_host_keys = True

    def set_missing_host_key_policy(self, policy) -> None:
        self.policy = policy

    def connect(self, **kwargs) -> None:
        self.connect_kwargs = kwargs
        self.remote.connect_entered.set()
        if self.remote.connect_gate is not None:
            self.remote.connect_gate.wait(5)
        if self.remote.connect_error is not None:
            raise self.remote.connect_error
        self.transport = FakeTransport(self.remote)

    def get_transport(self) -> Optional[FakeTransport]:
        return self.transport

    def invoke_shell(self, term="vt100", width=80, height=24, **kwargs) -> FakeShellChannel:
        if self.transport is None or not self.transport.active:
            raise paramiko.SSHException("SSH session not active")
        shell = FakeShellChannel(self.remote)
        with self.remote.lock:
            self.remote.shells.append(shell)
        return shell

    def close(self) -> None:
        self.closed = True
        if self.transport is not None:
            self.transport.active = False


@pytest.fixture
def remote(monkeypatch) -> FakeRemote:
    fake = FakeRemote()
    monkeypatch.setattr(paramiko, "SSHClient", lambda: FakeSSHClient(fake))
    yield fake
    if fake.connect_gate is not None:
        fake.connect_gate.set()


@pytest.fixture
def make_session(remote):
    sessions = []

    def factory(log_path=None, connect_timeout=2.0, elevation_timeout=2.0, **overrides) -> Session:
        params = {"host": "fakehost", "username": remote.username, "password": "secret"}
        params.update(overrides)
        session = Session(
            SessionConfig(**params),
            log_path=log_path,
            connect_timeout=connect_timeout,
            elevation_timeout=elevation_timeout,
            health_check_interval=0,
        )
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        session.close()
