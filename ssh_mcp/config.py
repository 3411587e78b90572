import os
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

# ========= Static config =========
CONNECT_TIMEOUT = 30.0
ELEVATION_TIMEOUT = 10.0
ABORT_TIMEOUT = 5.0
KEEPALIVE_INTERVAL = 30
HEALTH_CHECK_INTERVAL = 30.0
BUFFER_SIZE = 4096
POLL_INTERVAL = 0.02

DEFAULT_TIMEOUT_MS = 60000
DEFAULT_MAX_CHARS = 1000

MAX_BUFFER_CHARS = 2_000_000
MAX_HANDSHAKE_BUFFER_CHARS = 8192

SU_COMMAND = "su -"
SHELL_TERM = "xterm"
SHELL_COLS = 80
SHELL_ROWS = 24

# ========= Output cleanup =========
ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")

# ========= su handshake patterns =========
SU_PASSWORD_PROMPT = re.compile(r"password[: ]*$", re.IGNORECASE)
SU_SUCCESS = re.compile(r"(^|\n)[^\n]*#[ \t]*\Z|root[@:]", re.IGNORECASE)
SU_FAILURE = re.compile(r"authentication failure|incorrect password|su: .*failed", re.IGNORECASE)
ROOT_PROMPT = re.compile(r"(^|\n)[^\n]*#[ \t]*\Z")


def parse_max_chars(raw: Any) -> Optional[int]:
    """Return the command length limit, or None when the limit is disabled."""
    if raw is None:
        return DEFAULT_MAX_CHARS
    text = str(raw).strip()
    if text.lower() == "none":
        return None
    try:
        parsed = int(text)
    except ValueError:
        return DEFAULT_MAX_CHARS
    if parsed <= 0:
        return None
    return parsed


def sanitize_secret(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str) or not value:
        return None
    return value


@dataclass(frozen=True)
class SessionConfig:
    """Immutable connection parameters for one Session."""

    host: str
    username: str
    port: int = 22
    password: Optional[str] = None
    key_path: Optional[str] = None
    key_passphrase: Optional[str] = None
    su_password: Optional[str] = None
    sudo_password: Optional[str] = None
    verify_host_key: bool = True

    def __post_init__(self):
        if not self.host:
            raise ValueError("host must be a non-empty string")
        if not self.username:
            raise ValueError("username must be a non-empty string")
        if not 1 <= int(self.port) <= 65535:
            raise ValueError(f"port must be 1-65535, got {self.port}")

    def connect_kwargs(self, timeout: float) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "hostname": self.host,
            "port": int(self.port),
            "username": self.username,
            "timeout": timeout,
            "banner_timeout": timeout,
            "auth_timeout": timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }
        # One credential mechanism per attempt: password wins over key.
        if self.password:
            kwargs["password"] = self.password
        elif self.key_path:
            kwargs["key_filename"] = self.key_path
            if self.key_passphrase:
                kwargs["passphrase"] = self.key_passphrase
        return kwargs

    def with_su_password(self, secret: Optional[str]) -> "SessionConfig":
        return replace(self, su_password=sanitize_secret(secret))

    def with_sudo_password(self, secret: Optional[str]) -> "SessionConfig":
        return replace(self, sudo_password=sanitize_secret(secret))


# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.SSH_HOST: Optional[str] = None
        self.SSH_USER: Optional[str] = None
        self.SSH_PASSWORD: Optional[str] = None
        self.SSH_PORT: int = 22
        self.SSH_KEY_PATH: Optional[str] = None
        self.SSH_KEY_PASSPHRASE: Optional[str] = None
        self.SSH_VERIFY_HOST_KEY: bool = True
        self.SU_PASSWORD: Optional[str] = None
        self.SUDO_PASSWORD: Optional[str] = None
        self.DISABLE_SUDO: bool = False
        self.TIMEOUT_MS: int = DEFAULT_TIMEOUT_MS
        self.MAX_CHARS: Optional[int] = DEFAULT_MAX_CHARS
        self.PROJECT_ROOT: str = ""
        self.PROJECT_TAG: str = ""
        self.CACHE_DIRS: Dict[str, str] = {}
        self.ENV_ERRORS: List[str] = []

    def load_from_env(self):
        self.SSH_HOST = os.environ.get("SSH_HOST", self.SSH_HOST)
        self.SSH_USER = os.environ.get("SSH_USER", self.SSH_USER)
        self.SSH_PASSWORD = os.environ.get("SSH_PASSWORD", self.SSH_PASSWORD)
        self.SSH_PORT = self._env_int("SSH_PORT", self.SSH_PORT)
        self.SSH_KEY_PATH = os.environ.get("SSH_KEY_PATH", self.SSH_KEY_PATH)
        self.SSH_KEY_PASSPHRASE = os.environ.get("SSH_KEY_PASSPHRASE", self.SSH_KEY_PASSPHRASE)
        self.SU_PASSWORD = sanitize_secret(os.environ.get("SSH_SU_PASSWORD", self.SU_PASSWORD))
        self.SUDO_PASSWORD = sanitize_secret(os.environ.get("SSH_SUDO_PASSWORD", self.SUDO_PASSWORD))

        verify_host_env = os.environ.get("SSH_VERIFY_HOST_KEY")
        if verify_host_env is not None:
            self.SSH_VERIFY_HOST_KEY = verify_host_env.lower() in ("true", "1", "yes")

        disable_sudo_env = os.environ.get("SSH_MCP_DISABLE_SUDO")
        if disable_sudo_env is not None:
            self.DISABLE_SUDO = disable_sudo_env.lower() in ("true", "1", "yes")

        self.TIMEOUT_MS = self._env_int("SSH_MCP_TIMEOUT", self.TIMEOUT_MS)

        if "SSH_MCP_MAX_CHARS" in os.environ:
            self.MAX_CHARS = parse_max_chars(os.environ["SSH_MCP_MAX_CHARS"])

    def _env_int(self, name: str, default: int) -> int:
        raw = os.environ.get(name)
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            self.ENV_ERRORS.append(f"Invalid {name}: {raw!r} is not an integer")
            return default

    @property
    def command_timeout(self) -> float:
        return self.TIMEOUT_MS / 1000.0

    def validate(self) -> List[str]:
        errors = list(self.ENV_ERRORS)
        if not self.SSH_HOST:
            errors.append("SSH host is required (via --host or SSH_HOST env)")
        if not self.SSH_USER:
            errors.append("SSH user is required (via --user or SSH_USER env)")
        if not self.SSH_PASSWORD and not self.SSH_KEY_PATH:
            errors.append("Either password or key must be provided (via args or env)")
        if not 1 <= self.SSH_PORT <= 65535:
            errors.append(f"Invalid port: {self.SSH_PORT}")
        if self.TIMEOUT_MS <= 0:
            errors.append(f"Invalid timeout: {self.TIMEOUT_MS}")
        return errors

    def session_config(self) -> SessionConfig:
        return SessionConfig(
            host=self.SSH_HOST or "",
            username=self.SSH_USER or "",
            port=self.SSH_PORT,
            password=sanitize_secret(self.SSH_PASSWORD),
            key_path=self.SSH_KEY_PATH or None,
            key_passphrase=sanitize_secret(self.SSH_KEY_PASSPHRASE),
            su_password=sanitize_secret(self.SU_PASSWORD),
            sudo_password=sanitize_secret(self.SUDO_PASSWORD),
            verify_host_key=self.SSH_VERIFY_HOST_KEY,
        )

# Global instance
config = ServerConfig()
