import io

import pytest

from ssh_mcp import main as entry
from ssh_mcp.config import ServerConfig
from ssh_mcp.server import ServerContext

ENV_VARS = ("SSH_HOST", "SSH_USER", "SSH_PASSWORD", "SSH_KEY_PATH")


@pytest.fixture
def fresh_config(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    cfg = ServerConfig()
    monkeypatch.setattr(entry, "config", cfg)
    return cfg


def test_missing_host_is_a_usage_error(fresh_config, capsys):
    with pytest.raises(SystemExit) as excinfo:
        entry.main(["--user", "deploy", "--password", "pw"])
    assert excinfo.value.code == 2
    assert "SSH host is required" in capsys.readouterr().err


def test_missing_credential_is_a_usage_error(fresh_config, capsys):
    with pytest.raises(SystemExit):
        entry.main(["--host", "h", "--user", "deploy"])
    assert "Either password or key" in capsys.readouterr().err


def test_serve_answers_and_skips_bad_json(monkeypatch):
    written = []
    monkeypatch.setattr(entry, "_write_response", written.append)
    context = ServerContext(ServerConfig())
    stream = io.StringIO(
        '{"jsonrpc":"2.0","id":1,"method":"initialize","params":{}}\n'
        "not json\n"
        "\n"
        '{"jsonrpc":"2.0","method":"notifications/initialized"}\n'
        '{"jsonrpc":"2.0","id":2,"method":"tools/list"}\n'
    )
    entry.serve(context, stream)
    assert [response["id"] for response in written] == [1, 2]
    assert "serverInfo" in written[0]["result"]


def test_parser_accepts_max_chars_sentinel():
    args = entry.build_parser().parse_args(["--max-chars", "none", "--timeout", "500", "--disable-sudo"])
    assert args.max_chars == "none"
    assert args.timeout == 500
    assert args.disable_sudo is True


def test_bad_port_env_is_a_usage_error(monkeypatch, capsys):
    monkeypatch.setenv("SSH_PORT", "abc")
    monkeypatch.setattr(entry, "config", ServerConfig())
    with pytest.raises(SystemExit) as excinfo:
        entry.main(["--host", "h", "--user", "deploy", "--password", "pw"])
    assert excinfo.value.code == 2
    assert "Invalid SSH_PORT" in capsys.readouterr().err


def test_serve_answers_requests_in_order(monkeypatch):
    written = []
    monkeypatch.setattr(entry, "_write_response", written.append)
    context = ServerContext(ServerConfig())
    stream = io.StringIO(
        '{"jsonrpc":"2.0","id":"b","method":"tools/list"}\n'
        '{"jsonrpc":"2.0","id":"a","method":"initialize","params":{}}\n'
    )
    entry.serve(context, stream)
    assert [response["id"] for response in written] == ["b", "a"]
