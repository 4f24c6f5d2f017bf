from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from agentrelay import app


def _write_conversation(home: Path) -> None:
    log = home / "projects" / "-proj" / "c1.jsonl"
    log.parent.mkdir(parents=True)
    log.write_text(json.dumps({
        "type": "user", "uuid": "u1", "parentUuid": None, "sessionId": "c1",
        "timestamp": "2024-01-01T00:00:00Z", "cwd": "/proj",
        "message": {"role": "user", "content": "hi"},
    }) + "\n", encoding="utf-8")


def test_list_prints_conversations(tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.setenv("RELAY_AGENT_HOME", str(tmp_path))
    _write_conversation(tmp_path)

    with pytest.raises(SystemExit) as exc:
        app.main(["list"])
    assert exc.value.code == 0
    out = capsys.readouterr().out
    assert "c1" in out
    assert "No summary available" in out


def test_list_empty_history(tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.setenv("RELAY_AGENT_HOME", str(tmp_path))
    with pytest.raises(SystemExit):
        app.main(["list"])
    assert "No conversations." in capsys.readouterr().out


def test_status_without_server_reads_local_history(tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.setenv("RELAY_AGENT_HOME", str(tmp_path))
    _write_conversation(tmp_path)

    with patch.object(app, "_fetch_server_status", AsyncMock(return_value=None)):
        with pytest.raises(SystemExit) as exc:
            app.main(["status"])
    assert exc.value.code == 0
    status = json.loads(capsys.readouterr().out)
    assert status["server"] == "not running"
    assert status["conversations"] == 1
    assert status["registry"]["active_sessions_count"] == 0
    assert status["history_cache"]["cached_file_count"] == 1


def test_no_command_prints_help(capsys) -> None:
    with pytest.raises(SystemExit) as exc:
        app.main([])
    assert exc.value.code == 2
    assert "agentrelay" in capsys.readouterr().out


def test_config_file_overlay(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("RELAY_PORT", raising=False)
    path = tmp_path / "relay.yaml"
    path.write_text("server:\n  port: 4555\n", encoding="utf-8")
    assert app.load_config(str(path)).port == 4555
    assert app.load_config(None).port == 3001


def test_serve_accepts_config_after_subcommand(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("RELAY_PORT", raising=False)
    path = tmp_path / "relay.yaml"
    path.write_text("server:\n  port: 4556\n", encoding="utf-8")
    seen = {}

    def fake_serve(config, config_path):
        seen["port"] = config.port
        seen["path"] = config_path
        return 0

    with patch.object(app, "_cmd_serve", fake_serve):
        with pytest.raises(SystemExit) as exc:
            app.main(["serve", "--config", str(path), "--host", "0.0.0.0"])
    assert exc.value.code == 0
    assert seen == {"port": 4556, "path": str(path)}
