from __future__ import annotations

import importlib
import json
import logging

import pytest

from chatsync.cli import commands
from chatsync.transport.errors import AuthenticationError
from tests.fakes import AGENT, FakeTransport, raw_message

pytestmark = pytest.mark.unit

cli_main = importlib.import_module("chatsync.cli.main")


@pytest.fixture
def fake(monkeypatch) -> FakeTransport:
    transport = FakeTransport(
        [raw_message(i) for i in range(1, 81)],
        agents=[{"id": AGENT, "name": "Helper"}, {"id": "agent-2"}],
    )
    monkeypatch.setattr(commands, "make_transport", lambda settings: transport)
    monkeypatch.setattr(cli_main, "configure_logging", lambda level: None)
    return transport


def run_cli(tmp_path, *argv: str) -> int:
    return cli_main.main(["--state", str(tmp_path / "state.sqlite"), *argv])


def test_cli_agents(fake, tmp_path, capsys):
    assert run_cli(tmp_path, "agents") == 0
    out = capsys.readouterr().out.splitlines()
    assert out == [f"{AGENT} Helper", "agent-2"]


def test_cli_agents_json(fake, tmp_path, capsys):
    run_cli(tmp_path, "agents", "--json")
    lines = capsys.readouterr().out.splitlines()
    assert json.loads(lines[0]) == {"id": AGENT, "name": "Helper"}


def test_cli_history_prints_newest_page(fake, tmp_path, capsys):
    assert run_cli(tmp_path, "history", AGENT) == 0
    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 50
    assert lines[0].endswith("assistant-text: message 31")
    assert lines[-1].endswith("assistant-text: message 80")


def test_cli_history_older(fake, tmp_path, capsys):
    run_cli(tmp_path, "history", AGENT, "--older")
    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 80
    assert lines[-1].endswith("message 30")


def test_cli_history_is_cached_between_runs(fake, tmp_path, capsys):
    run_cli(tmp_path, "history", AGENT)
    run_cli(tmp_path, "history", AGENT)

    first, second = fake.page_calls()
    assert first[2:4] == (None, None)
    assert second[3] == "message-0080"

    assert run_cli(tmp_path, "clear", AGENT) == 0
    run_cli(tmp_path, "history", AGENT)
    assert fake.page_calls()[-1][2:4] == (None, None)
    assert f"{AGENT}\n" in capsys.readouterr().out


def test_cli_clear_all(fake, tmp_path, capsys):
    assert run_cli(tmp_path, "clear") == 0
    assert capsys.readouterr().out == "all\n"


def test_cli_send_streams_reply(fake, tmp_path, capsys):
    fake.streams.append(
        [
            {"id": "msg-1", "message_type": "assistant_message", "content": "Hel"},
            {"id": "msg-1", "message_type": "assistant_message", "content": "lo"},
            "[DONE]",
        ]
    )

    assert run_cli(tmp_path, "send", AGENT, "Hi") == 0

    assert capsys.readouterr().out == "Hello\n"
    assert fake.stream_calls() == [("stream", AGENT, "Hi")]


def test_cli_send_reports_failure(fake, tmp_path, capsys):
    fake.streams.append([AuthenticationError("HTTP 401", status_code=401)])

    assert run_cli(tmp_path, "send", AGENT, "Hi") == 1

    assert "Bad credentials" in capsys.readouterr().err


def test_cli_invalid_settings(fake, tmp_path, capsys):
    path = tmp_path / "settings.json"
    path.write_text("{not json", encoding="utf-8")

    assert run_cli(tmp_path, "--settings", str(path), "agents") == 2
    assert "Invalid settings" in capsys.readouterr().err


def test_cli_settings_file_is_used(fake, tmp_path, monkeypatch):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"history": {"page_size": 10}}), encoding="utf-8")
    seen = []

    def capture(settings):
        seen.append(settings)
        return fake

    monkeypatch.setattr(commands, "make_transport", capture)
    monkeypatch.setenv("CHATSYNC_API_KEY", "env-key")

    run_cli(tmp_path, "--settings", str(path), "history", AGENT)

    assert seen[0].history.page_size == 10
    assert seen[0].service.api_key == "env-key"
    assert fake.page_calls()[0][4] == 10


def test_cli_verbose_raises_console_level(fake, tmp_path, monkeypatch):
    levels = []
    monkeypatch.setattr(cli_main, "configure_logging", levels.append)

    run_cli(tmp_path, "agents")
    run_cli(tmp_path, "-v", "agents")

    assert levels == [logging.WARNING, logging.INFO]
