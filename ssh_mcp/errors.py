"""JSON-RPC error codes and the exceptions that map onto them.

Only two code families reach callers: invalid parameters and internal
errors. The exception class (and its message) keeps the finer distinction
between connection, elevation, execution and timeout failures.
"""

from typing import Any, Dict

METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class SSHMCPError(Exception):
    code = INTERNAL_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_error(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class InvalidParamsError(SSHMCPError):
    code = INVALID_PARAMS


class SSHConnectionError(SSHMCPError):
    """Transport failure, connect timeout, or no established connection."""


class ElevationError(SSHMCPError):
    """su handshake failed, was rejected, timed out, or lost its channel."""


class CommandExecutionError(SSHMCPError):
    """Exec setup failure or a command that reported standard error."""


class CommandTimeoutError(CommandExecutionError):
    pass
