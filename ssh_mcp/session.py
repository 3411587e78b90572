import threading
from typing import Any, List, Optional, Tuple

import paramiko

from ssh_mcp.config import (
    CONNECT_TIMEOUT, ELEVATION_TIMEOUT, HEALTH_CHECK_INTERVAL, KEEPALIVE_INTERVAL,
    SU_COMMAND, SHELL_TERM, SHELL_COLS, SHELL_ROWS, SessionConfig,
)
from ssh_mcp.elevation import InteractiveShell, SuHandshake
from ssh_mcp.errors import SSHMCPError, SSHConnectionError, ElevationError
from ssh_mcp.outcome import Outcome
from ssh_mcp.utils import log_error, iso_now, json_line


class Session:
    """One persistent SSH connection plus an optional elevated (su) shell.

    connect() and ensure_elevated() are single-flight: concurrent callers
    share the in-flight attempt instead of opening a second transport or a
    second su shell. The elevated shell never outlives its connection.
    """

    def __init__(
        self,
        config: SessionConfig,
        log_path: Optional[str] = None,
        connect_timeout: float = CONNECT_TIMEOUT,
        elevation_timeout: float = ELEVATION_TIMEOUT,
        health_check_interval: float = HEALTH_CHECK_INTERVAL,
    ):
        self.config = config
        self.log_path = log_path
        self.connect_timeout = connect_timeout
        self.elevation_timeout = elevation_timeout
        self.health_check_interval = health_check_interval

        self.client: Optional[paramiko.SSHClient] = None
        self.connecting = False
        self._connect_attempt: Optional[Outcome] = None

        self.su_shell: Optional[InteractiveShell] = None
        self.is_elevated = False
        self._elevation_attempt: Optional[Outcome] = None

        self._health_thread: Optional[threading.Thread] = None
        self._health_stop: Optional[threading.Event] = None

        self.lock = threading.Lock()

    def _log(self, event: str, **payload: Any) -> None:
        data = {"ts": iso_now(), "event": event}
        data.update(payload)
        json_line(self.log_path, data)

    # ========= Connection =========

    def connect(self) -> None:
        stale: Tuple[Optional[paramiko.SSHClient], List[InteractiveShell]] = (None, [])
        with self.lock:
            if self.client is not None and self.is_connected():
                return
            attempt = self._connect_attempt
            leader = attempt is None
            if leader:
                if self.client is not None:
                    stale = self._detach_locked()
                attempt = Outcome(timeout=self.connect_timeout)
                self._connect_attempt = attempt
                self.connecting = True

        self._release(*stale)
        if leader:
            self._log("connect_started", host=self.config.host, port=self.config.port)
            worker = threading.Thread(
                target=self._connect_worker, args=(attempt,), name="ssh-mcp-connect", daemon=True
            )
            worker.start()

        if not attempt.wait():
            self._finish_connect(attempt, error=SSHConnectionError("SSH connection timeout"))
        attempt.result()

    def _connect_worker(self, attempt: Outcome) -> None:
        session_config = self.config
        client = paramiko.SSHClient()
        try:
            if session_config.verify_host_key:
                client.load_system_host_keys()
            else:
                client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            client.connect(**session_config.connect_kwargs(self.connect_timeout))
            transport = client.get_transport()
            if transport:
                transport.set_keepalive(KEEPALIVE_INTERVAL)
        except Exception as exc:
            try:
                client.close()
            except Exception:
                pass
            self._finish_connect(attempt, error=SSHConnectionError(f"SSH connection error: {exc}"))
            return

        if not self._finish_connect(attempt, client=client):
            # Timed out or closed while the handshake was still running.
            client.close()

    def _finish_connect(
        self,
        attempt: Outcome,
        client: Optional[paramiko.SSHClient] = None,
        error: Optional[SSHConnectionError] = None,
    ) -> bool:
        with self.lock:
            if attempt.done:
                return False
            if self._connect_attempt is attempt:
                self._connect_attempt = None
                self.connecting = False
            if error is None:
                self.client = client
                self._log("connected", host=self.config.host, port=self.config.port)
            else:
                self._log("connect_failed", error=error.message)
            attempt.resolve(error=error)
            elevate = error is None and bool(self.config.su_password)

        if error is not None:
            log_error(error.message)
            return True

        log_error("SSH connection established")
        self._ensure_health_monitor()
        if elevate:
            # Elevation must not hold up or fail the connection.
            threading.Thread(target=self._elevate_in_background, name="ssh-mcp-su", daemon=True).start()
        return True

    def is_connected(self) -> bool:
        client = self.client
        if client is None:
            return False
        try:
            transport = client.get_transport()
            return bool(transport and transport.is_active())
        except Exception:
            return False

    def ensure_connected(self) -> None:
        if not self.is_connected():
            self.connect()

    def get_connection(self) -> paramiko.SSHClient:
        client = self.client
        if client is None:
            raise SSHConnectionError("SSH connection not established")
        return client

    def _require_client_locked(self) -> paramiko.SSHClient:
        if self.client is None:
            raise SSHConnectionError("SSH connection not established")
        return self.client

    def close(self) -> None:
        with self.lock:
            attempt = self._connect_attempt
            if attempt is not None:
                self._connect_attempt = None
                self.connecting = False
                attempt.resolve(error=SSHConnectionError("SSH connection closed before it was established"))
            client, shells = self._detach_locked()
            if self._health_stop is not None:
                self._health_stop.set()
            self._health_stop = None
            self._health_thread = None

        if client is None and not shells and attempt is None:
            return
        self._release(client, shells)
        self._log("closed")

    def _detach_locked(self) -> Tuple[Optional[paramiko.SSHClient], List[InteractiveShell]]:
        client = self.client
        self.client = None
        return client, self._detach_elevation_locked()

    def _release(self, client: Optional[paramiko.SSHClient], shells: List[InteractiveShell]) -> None:
        # Elevated channel first, then the transport.
        for shell in shells:
            shell.close()
        if client is not None:
            try:
                client.close()
            except Exception as exc:
                log_error(f"SSH client close failed: {exc}")

    # ========= Health =========

    def check_health(self) -> bool:
        with self.lock:
            client = self.client
        if client is None:
            return False
        if self.is_connected():
            return True
        with self.lock:
            if self.client is not client:
                return self.is_connected()
            client, shells = self._detach_locked()
        self._release(client, shells)
        self._log("transport_lost")
        log_error("SSH connection lost")
        return False

    def _ensure_health_monitor(self) -> None:
        if self.health_check_interval <= 0:
            return
        with self.lock:
            if self._health_thread is not None and self._health_thread.is_alive():
                return
            stop = threading.Event()
            self._health_stop = stop
            self._health_thread = threading.Thread(
                target=self._health_loop, args=(stop,), name="ssh-mcp-health", daemon=True
            )
            self._health_thread.start()

    def _health_loop(self, stop: threading.Event) -> None:
        while not stop.wait(self.health_check_interval):
            try:
                self.check_health()
            except Exception as exc:
                log_error(f"health loop error: {exc}")

    # ========= Elevation =========

    def ensure_elevated(self) -> None:
        stale: List[InteractiveShell] = []
        with self.lock:
            if self.is_elevated and self.su_shell is not None:
                if not self.su_shell.closed:
                    return
                stale.append(self.su_shell)
                self.su_shell = None
                self.is_elevated = False
            secret = self.config.su_password
            if not secret:
                return
            attempt = self._elevation_attempt
            leader = attempt is None
            if leader:
                client = self._require_client_locked()
                attempt = Outcome(timeout=self.elevation_timeout)
                self._elevation_attempt = attempt

        self._release(None, stale)
        if leader:
            self._start_elevation(client, secret, attempt)

        if not attempt.wait():
            self._finish_elevation(
                attempt, attempt.context,
                ElevationError(f"su elevation timed out after {self.elevation_timeout:g}s"),
            )
        attempt.result()

    def _start_elevation(self, client: paramiko.SSHClient, secret: str, attempt: Outcome) -> None:
        self._log("elevation_started")
        try:
            channel = client.invoke_shell(term=SHELL_TERM, width=SHELL_COLS, height=SHELL_ROWS)
        except Exception as exc:
            self._finish_elevation(
                attempt, None, ElevationError(f"Failed to start interactive shell for su: {exc}")
            )
            return

        shell = InteractiveShell(channel, name="su-shell")
        with self.lock:
            cancelled = attempt.done
            attempt.context = shell
        if cancelled:
            shell.close()
            return

        handshake = SuHandshake(shell, secret, on_done=lambda error: self._finish_elevation(attempt, shell, error))
        shell.set_listener(handshake)
        shell.add_close_handler(self._on_shell_closed)
        shell.start()
        try:
            shell.write(SU_COMMAND + "\n")
        except Exception as exc:
            handshake.fail(ElevationError(f"Failed to start su: {exc}"))

    def _finish_elevation(
        self,
        attempt: Outcome,
        shell: Optional[InteractiveShell],
        error: Optional[ElevationError],
    ) -> None:
        with self.lock:
            won = not attempt.done
            if won:
                if self._elevation_attempt is attempt:
                    self._elevation_attempt = None
                if error is None:
                    self.su_shell = shell
                    self.is_elevated = True
                    shell.set_listener(None)
                attempt.resolve(error=error)

        if won and error is None:
            self._log("elevated")
            return
        if won:
            self._log("elevation_failed", error=error.message)
        if shell is not None:
            shell.close()

    def _elevate_in_background(self) -> None:
        try:
            self.ensure_elevated()
            log_error("Successfully elevated to su shell")
        except SSHMCPError as exc:
            log_error(f"Failed to elevate to su shell: {exc.message}")

    def _on_shell_closed(self, shell: InteractiveShell) -> None:
        with self.lock:
            if self.su_shell is not shell:
                return
            self.su_shell = None
            self.is_elevated = False
        self._log("su_shell_closed")
        log_error("su shell closed; commands fall back to non-elevated execution")

    def _detach_elevation_locked(self) -> List[InteractiveShell]:
        shells = []
        if self.su_shell is not None:
            shells.append(self.su_shell)
        self.su_shell = None
        self.is_elevated = False
        attempt = self._elevation_attempt
        if attempt is not None:
            self._elevation_attempt = None
            if attempt.context is not None:
                shells.append(attempt.context)
            attempt.resolve(error=ElevationError("su elevation cancelled"))
        return shells

    def elevated_shell(self) -> Optional[InteractiveShell]:
        with self.lock:
            shell = self.su_shell
            if shell is not None and self.is_elevated and not shell.closed:
                return shell
            return None

    def retire_shell(self, shell: InteractiveShell) -> None:
        """Drop an elevated shell whose state is unknown (a command never returned to the prompt)."""
        with self.lock:
            if self.su_shell is shell:
                self.su_shell = None
                self.is_elevated = False
        shell.close()
        self._log("su_shell_retired")
        log_error("su shell retired after a timed out command; next commands fall back or re-elevate")

    def set_su_password(self, secret: Optional[str]) -> None:
        with self.lock:
            updated = self.config.with_su_password(secret)
            if updated.su_password == self.config.su_password:
                return
            self.config = updated
            shells = self._detach_elevation_locked()
        self._release(None, shells)
        self._log("su_password_changed", cleared=updated.su_password is None)

    def set_sudo_password(self, secret: Optional[str]) -> None:
        with self.lock:
            self.config = self.config.with_sudo_password(secret)
