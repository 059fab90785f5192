import pytest
from typer.testing import CliRunner

import main
from config.settings import Settings
from core.openclaw_gateway import AuthenticationError, Connection, ConnectionStatus, Session
from core.openclaw_gateway.local_to_server import read_upload

runner = CliRunner()


class StubManager:
    def __init__(self, fail=None):
        self.fail = fail
        self.closed = False

    async def connect(self, config):
        if self.fail:
            raise self.fail
        return Connection(id=config.connection_id(), config=config, status=ConnectionStatus.CONNECTED)

    async def list_sessions(self, connection_id):
        return [Session(connection_id=connection_id, key="agent:main:main", name="Main")]

    async def upload_file(self, connection_id, session_key, path):
        return read_upload(path)

    async def send_message(self, connection_id, session_key, text, attachments=None):
        if not session_key.strip():
            raise ValueError("message.send 需要非空 session key")
        raise AssertionError("unexpected send")

    async def close_all(self):
        self.closed = True


@pytest.fixture
def settings(tmp_path, monkeypatch):
    s = Settings(config_dir=tmp_path)
    monkeypatch.setattr(main, "_load_settings", lambda: s)
    return s


def test_sessions_lists_table(settings, monkeypatch):
    stub = StubManager()
    monkeypatch.setattr(main, "_build_manager", lambda _: stub)
    result = runner.invoke(main.app, ["sessions", "--url", "127.0.0.1:18789", "--token", "t"])
    assert result.exit_code == 0, result.output
    assert "agent:main:main" in result.output
    assert stub.closed


def test_failure_prints_connection_name_and_reason(settings, monkeypatch):
    monkeypatch.setattr(main, "_build_manager", lambda _: StubManager(fail=AuthenticationError("bad token")))
    result = runner.invoke(main.app, ["sessions", "--url", "127.0.0.1:18789", "--name", "home"])
    assert result.exit_code == 1
    assert "home: bad token" in result.output


def test_missing_connection_exits_with_usage_error(settings):
    result = runner.invoke(main.app, ["history", "agent:main:main"])
    assert result.exit_code == 2


def test_save_option_persists_connection(settings, monkeypatch):
    monkeypatch.setattr(main, "_build_manager", lambda _: StubManager())
    result = runner.invoke(main.app, ["sessions", "--url", "h:1", "--token", "t", "--name", "lab", "--save"])
    assert result.exit_code == 0, result.output
    assert Settings(config_dir=settings.config_dir).get_connection("lab").token == "t"


def test_missing_attachment_prints_connection_name_instead_of_traceback(settings, monkeypatch, tmp_path):
    stub = StubManager()
    monkeypatch.setattr(main, "_build_manager", lambda _: stub)
    missing = str(tmp_path / "nope.png")
    result = runner.invoke(main.app, ["send", "agent:main:main", "hi", "-a", missing, "--url", "h:1", "--name", "home"])
    assert result.exit_code == 1
    assert "home:" in result.output
    assert not isinstance(result.exception, FileNotFoundError)
    assert stub.closed


def test_blank_session_key_prints_connection_name_instead_of_traceback(settings, monkeypatch):
    monkeypatch.setattr(main, "_build_manager", lambda _: StubManager())
    result = runner.invoke(main.app, ["send", " ", "hi", "--url", "h:1", "--name", "home"])
    assert result.exit_code == 1
    assert "home:" in result.output
    assert "session key" in result.output
