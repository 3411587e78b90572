import sys
import io
import json
import signal
import argparse
from ssh_mcp.config import config, parse_max_chars
from ssh_mcp.utils import (
    log_error, resolve_runtime_paths, make_cache_dirs, build_session_log_path
)
from ssh_mcp.server import ServerContext, handle_request
from ssh_mcp.errors import INTERNAL_ERROR

_stdin = None
_stdout = None


def _install_stdio() -> None:
    global _stdin, _stdout
    # Force UTF-8 I/O; remote output is arbitrary text.
    _stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
    _stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)


def _write_response(response: dict) -> None:
    """Write JSON-RPC response to stdout as UTF-8."""
    try:
        _stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
        _stdout.flush()
    except Exception as exc:
        log_error(f"response write error: {exc}")
        # Fallback: escape all non-ASCII to guarantee safe output
        try:
            _stdout.write(json.dumps(response, ensure_ascii=True) + "\n")
            _stdout.flush()
        except Exception as exc2:
            log_error(f"response write fallback error: {exc2}")


def _shutdown_handler(signum, frame) -> None:
    log_error(f"received signal {signum}, shutting down...")
    raise SystemExit(0)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="SSH MCP Server (persistent connection, su elevation, sudo-exec)"
    )
    parser.add_argument("--host", help="SSH host (overrides SSH_HOST env)")
    parser.add_argument("--port", type=int, help="SSH port (overrides SSH_PORT env)")
    parser.add_argument("--user", help="SSH username (overrides SSH_USER env)")
    parser.add_argument("--password", help="SSH password (overrides SSH_PASSWORD env)")
    parser.add_argument("--key", help="Path to SSH private key (overrides SSH_KEY_PATH env)")
    parser.add_argument("--passphrase", help="Passphrase for SSH private key (overrides SSH_KEY_PASSPHRASE env)")
    parser.add_argument("--verify-host", action="store_true", help="Verify SSH host key (default: True, use --no-verify-host to disable)")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    parser.add_argument("--su-password", help="Password for `su -` elevation (overrides SSH_SU_PASSWORD env)")
    parser.add_argument("--sudo-password", help="Password for sudo (overrides SSH_SUDO_PASSWORD env)")
    parser.add_argument("--disable-sudo", action="store_true", help="Do not expose the sudo-exec tool")
    parser.add_argument("--timeout", type=int, help="Per-command timeout in milliseconds (default 60000)")
    parser.add_argument("--max-chars", help="Maximum command length; 'none' or <= 0 disables the limit (default 1000)")
    parser.add_argument("--project-root", help="Project root for local state")
    parser.add_argument("--cache-dir", help="Optional cache root override")
    return parser


def main(argv=None) -> None:
    # Pre-load from environment
    config.load_from_env()

    parser = build_parser()
    args = parser.parse_args(argv)

    # Apply args over env vars
    if args.host: config.SSH_HOST = args.host
    if args.user: config.SSH_USER = args.user
    if args.password: config.SSH_PASSWORD = args.password
    if args.key: config.SSH_KEY_PATH = args.key
    if args.passphrase: config.SSH_KEY_PASSPHRASE = args.passphrase
    if args.port: config.SSH_PORT = args.port
    if args.su_password: config.SU_PASSWORD = args.su_password
    if args.sudo_password: config.SUDO_PASSWORD = args.sudo_password
    if args.disable_sudo: config.DISABLE_SUDO = True
    if args.timeout is not None: config.TIMEOUT_MS = args.timeout
    if args.max_chars is not None: config.MAX_CHARS = parse_max_chars(args.max_chars)

    # Handle verify host logic
    if args.no_verify_host:
        config.SSH_VERIFY_HOST_KEY = False
    elif args.verify_host:
        config.SSH_VERIFY_HOST_KEY = True

    # Validation
    for problem in config.validate():
        parser.error(problem)

    runtime_paths = resolve_runtime_paths(project_root_arg=args.project_root, cache_dir_arg=args.cache_dir)
    config.PROJECT_ROOT = runtime_paths["project_root"]
    config.PROJECT_TAG = runtime_paths["project_tag"]
    config.CACHE_DIRS = make_cache_dirs(runtime_paths["cache_root"])
    log_path = build_session_log_path(config.CACHE_DIRS["sessions_dir"], config.PROJECT_TAG)

    _install_stdio()
    context = ServerContext(config, log_path=log_path)
    signal.signal(signal.SIGINT, _shutdown_handler)
    signal.signal(signal.SIGTERM, _shutdown_handler)

    log_error(
        f"SSH MCP started for {config.SSH_HOST}:{config.SSH_PORT}. "
        f"project_root={config.PROJECT_ROOT} cache={config.CACHE_DIRS['cache_root']} "
        f"verify_host={config.SSH_VERIFY_HOST_KEY} sudo={'off' if config.DISABLE_SUDO else 'on'}"
    )

    try:
        serve(context)
    finally:
        log_error("shutting down...")
        context.close()


def serve(context: ServerContext, stream=None) -> None:
    """Answer JSON-RPC requests read line by line from stdin (or `stream`).

    Requests are handled one at a time, in arrival order: a command that
    hangs holds up every later request until its own timeout fires.
    """
    for line in stream if stream is not None else _stdin:
        line = line.strip()
        if not line:
            continue
        try:
            response = handle_request(json.loads(line), context)
            if response is not None:
                _write_response(response)
        except json.JSONDecodeError as exc:
            log_error(f"invalid json: {exc}")
        except Exception as exc:
            log_error(f"unexpected error: {exc}")
            # Attempt to send an error response back so the client doesn't hang
            req_id = None
            try:
                req_id = json.loads(line).get("id")
            except Exception:
                pass
            _write_response({
                "jsonrpc": "2.0",
                "id": req_id,
                "error": {"code": INTERNAL_ERROR, "message": f"Internal error: {exc}"},
            })


if __name__ == "__main__":
    main()
