from __future__ import annotations

import json
from pathlib import Path

import pytest

from agentrelay.shared.services.session_info import SessionInfoStore, atomic_write_text


def test_defaults_for_unknown_conversation(tmp_path: Path) -> None:
    store = SessionInfoStore(tmp_path / "info.json")
    info = store.get("c1")
    assert info.permission_mode == "default"
    assert info.initial_commit_head is None
    assert not store.has("c1")
    assert not (tmp_path / "info.json").exists()


def test_update_persists_and_reloads(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "info.json"
    store = SessionInfoStore(path)
    store.update("c1", permission_mode="acceptEdits")
    store.update("c1", initial_commit_head="abc123")

    data = json.loads(path.read_text())
    assert data["schema_version"] == 1
    assert data["sessions"]["c1"]["permission_mode"] == "acceptEdits"

    reloaded = SessionInfoStore(path)
    info = reloaded.get("c1")
    assert info.permission_mode == "acceptEdits"
    assert info.initial_commit_head == "abc123"
    assert info.created_at
    assert info.updated_at >= info.created_at
    assert set(reloaded.all()) == {"c1"}


def test_returned_info_is_a_copy(tmp_path: Path) -> None:
    store = SessionInfoStore(tmp_path / "info.json")
    store.update("c1", permission_mode="plan")
    info = store.get("c1")
    info.permission_mode = "changed"
    assert store.get("c1").permission_mode == "plan"


def test_unknown_field_rejected(tmp_path: Path) -> None:
    store = SessionInfoStore(tmp_path / "info.json")
    with pytest.raises(ValueError):
        store.update("c1", colour="blue")


def test_corrupt_file_starts_empty(tmp_path: Path) -> None:
    path = tmp_path / "info.json"
    path.write_text("{not json", encoding="utf-8")
    store = SessionInfoStore(path)
    assert store.all() == {}
    store.update("c2", continuation_session_id="c3")
    assert json.loads(path.read_text())["sessions"]["c2"]["continuation_session_id"] == "c3"


def test_atomic_write_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "out.txt"
    atomic_write_text(target, "one")
    atomic_write_text(target, "two")
    assert target.read_text() == "two"
    assert [p.name for p in tmp_path.iterdir()] == ["out.txt"]
