import shlex
import threading
from typing import Any, Dict, List, Optional

from ssh_mcp import __version__
from ssh_mcp.config import ServerConfig
from ssh_mcp.errors import (
    METHOD_NOT_FOUND, INTERNAL_ERROR,
    SSHMCPError, InvalidParamsError, ElevationError, CommandExecutionError, CommandTimeoutError,
)
from ssh_mcp.executor import ExecutionRequest, ExecutionResult, execute
from ssh_mcp.session import Session
from ssh_mcp.utils import log_error


class ServerContext:
    """Owns the one Session shared by every tool call of this process."""

    def __init__(self, server_config: ServerConfig, log_path: Optional[str] = None):
        self.server_config = server_config
        self.log_path = log_path
        self.session: Optional[Session] = None
        self.lock = threading.Lock()

    def get_session(self) -> Session:
        with self.lock:
            if self.session is None:
                if not self.server_config.SSH_HOST or not self.server_config.SSH_USER:
                    raise InvalidParamsError("Missing required host or username")
                self.session = Session(self.server_config.session_config(), log_path=self.log_path)
            return self.session

    def close(self) -> None:
        with self.lock:
            session = self.session
            self.session = None
        if session is not None:
            session.close()


def sanitize_command(command: Any, max_chars: Optional[int]) -> str:
    if not isinstance(command, str):
        raise InvalidParamsError("Command must be a string")
    trimmed = command.strip()
    if not trimmed:
        raise InvalidParamsError("Command cannot be empty")
    if max_chars is not None and len(trimmed) > max_chars:
        raise InvalidParamsError(f"Command is too long (max {max_chars} characters)")
    return trimmed


def build_sudo_request(command: str, sudo_password: Optional[str], timeout: float) -> ExecutionRequest:
    if not sudo_password:
        # -n: fail instead of prompting when sudo wants a password.
        return ExecutionRequest(command=f"sudo -n sh -c {shlex.quote(command)}", timeout=timeout)
    return ExecutionRequest(
        command=f"sudo -p '' -S sh -c {shlex.quote(command)}",
        stdin=(sudo_password + "\n").encode("utf-8"),
        timeout=timeout,
        get_pty=True,
    )


def tools_list(disable_sudo: bool = False) -> List[Dict[str, Any]]:
    tools = [
        {
            "name": "exec",
            "description": "Execute a shell command on the remote SSH server and return the output.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "Shell command to execute on the remote SSH server"},
                },
                "required": ["command"],
            },
        },
    ]
    if not disable_sudo:
        tools.append({
            "name": "sudo-exec",
            "description": (
                "Execute a shell command on the remote SSH server using sudo. "
                "Runs in the elevated su shell when one is available, uses the sudo password if provided, "
                "otherwise assumes passwordless sudo."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "Shell command to execute with sudo on the remote SSH server"},
                },
                "required": ["command"],
            },
        })
    return tools


def raise_for_result(result: ExecutionResult) -> str:
    if result.success:
        return result.output
    if result.timed_out:
        raise CommandTimeoutError(result.error)
    raise CommandExecutionError(result.error)


def exec_tool(args: Dict[str, Any], context: ServerContext) -> str:
    command = sanitize_command(args.get("command"), context.server_config.MAX_CHARS)
    session = context.get_session()
    session.ensure_connected()
    request = ExecutionRequest(command=command, timeout=context.server_config.command_timeout)
    return raise_for_result(execute(session, request))


def sudo_exec_tool(args: Dict[str, Any], context: ServerContext) -> str:
    command = sanitize_command(args.get("command"), context.server_config.MAX_CHARS)
    session = context.get_session()
    session.ensure_connected()

    if session.config.su_password:
        try:
            session.ensure_elevated()
        except ElevationError as exc:
            log_error(f"su elevation failed, falling back to sudo: {exc.message}")

    timeout = context.server_config.command_timeout
    if session.elevated_shell() is not None:
        request = ExecutionRequest(command=command, timeout=timeout)
    else:
        request = build_sudo_request(command, session.config.sudo_password, timeout)
    return raise_for_result(execute(session, request))


TOOLS = {
    "exec": exec_tool,
    "sudo-exec": sudo_exec_tool,
}


def tool_result(text: str) -> Dict[str, Any]:
    return {"content": [{"type": "text", "text": text}]}


def make_response(req_id: Any, result: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": result}


def make_error(req_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}


def handle_request(request: Dict[str, Any], context: ServerContext) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params", {}) or {}
    req_id = request.get("id")

    if method == "initialize":
        return make_response(req_id, {
            "protocolVersion": "2024-11-05",
            "capabilities": {"tools": {}},
            "serverInfo": {"name": "SSH MCP Server", "version": __version__},
        })

    if method == "notifications/initialized": return None
    if method == "tools/list":
        return make_response(req_id, {"tools": tools_list(context.server_config.DISABLE_SUDO)})

    if method == "tools/call":
        tool_name = params.get("name")
        args = params.get("arguments", {}) or {}
        handler = TOOLS.get(tool_name)
        if handler is None or (tool_name == "sudo-exec" and context.server_config.DISABLE_SUDO):
            return make_error(req_id, METHOD_NOT_FOUND, f"Unknown tool: {tool_name}")
        try:
            return make_response(req_id, tool_result(handler(args, context)))
        except SSHMCPError as exc:
            log_error(f"tool {tool_name} failed: {exc.message}")
            return {"jsonrpc": "2.0", "id": req_id, "error": exc.to_error()}
        except Exception as exc:
            log_error(f"tool execution error ({tool_name}): {exc}")
            return make_error(req_id, INTERNAL_ERROR, f"Unexpected error: {exc}")

    if req_id is None:
        # Unknown notifications get no reply.
        return None
    return make_error(req_id, METHOD_NOT_FOUND, f"Unknown method: {method}")
