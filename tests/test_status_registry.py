from __future__ import annotations

from agentrelay.adapters.status_registry import (
    ConversationStatus,
    SessionEvent,
    SessionStatusRegistry,
)
from agentrelay.shared.models.conversation import ConversationMessage


def test_register_then_unregister_round_trip() -> None:
    registry = SessionStatusRegistry()
    registry.register("h1", "c1")
    assert registry.status("c1") is ConversationStatus.ONGOING
    assert registry.stream_handle_for("c1") == "h1"
    assert registry.conversation_id_for("h1") == "c1"

    assert registry.unregister("h1") is True
    assert registry.status("c1") is ConversationStatus.COMPLETED
    assert registry.stream_handle_for("c1") is None
    assert registry.conversation_id_for("h1") is None


def test_unknown_ids_are_completed_and_not_found() -> None:
    registry = SessionStatusRegistry()
    assert registry.status("nope") is ConversationStatus.COMPLETED
    assert registry.stream_handle_for("nope") is None
    assert registry.conversation_id_for("nope") is None


def test_new_handle_supersedes_old_one_for_same_conversation() -> None:
    registry = SessionStatusRegistry()
    registry.register("h1", "c")
    registry.register("h2", "c")
    assert registry.stream_handle_for("c") == "h2"
    assert registry.conversation_id_for("h1") is None
    assert registry.active_stream_handles() == ["h2"]
    assert registry.check_consistency() == []


def test_reregistering_handle_detaches_old_conversation() -> None:
    registry = SessionStatusRegistry()
    registry.register("h", "c1", initial_prompt="hi", working_directory="/w")
    registry.register("h", "c2")
    assert registry.conversation_id_for("h") == "c2"
    assert registry.stream_handle_for("c1") is None
    assert registry.status("c1") is ConversationStatus.COMPLETED
    assert registry.context_for("c1") is None
    assert registry.active_conversation_ids() == ["c2"]


def test_unregister_unknown_handle_is_silent() -> None:
    registry = SessionStatusRegistry()
    ended: list[SessionEvent] = []
    registry.session_ended.connect(ended.append)
    assert registry.unregister("ghost") is False
    assert ended == []


def test_unregister_of_superseded_handle_keeps_new_mapping() -> None:
    registry = SessionStatusRegistry()
    registry.register("h1", "c")
    registry.register("h2", "c")
    assert registry.unregister("h1") is False
    assert registry.stream_handle_for("c") == "h2"


def test_signals_fire_on_register_and_unregister() -> None:
    registry = SessionStatusRegistry()
    started: list[SessionEvent] = []
    ended: list[SessionEvent] = []
    registry.session_started.connect(started.append)
    registry.session_ended.connect(ended.append)

    registry.register("h", "c")
    registry.unregister("h")

    assert started == [SessionEvent("h", "c")]
    assert ended == [SessionEvent("h", "c")]


def test_failing_listener_does_not_break_register() -> None:
    registry = SessionStatusRegistry()

    def boom(event: SessionEvent) -> None:
        raise RuntimeError("listener failed")

    seen: list[SessionEvent] = []
    registry.session_started.connect(boom)
    registry.session_started.connect(seen.append)
    registry.register("h", "c")
    assert registry.stream_handle_for("c") == "h"
    assert seen == [SessionEvent("h", "c")]


def test_clear_wipes_everything() -> None:
    registry = SessionStatusRegistry()
    registry.register("h1", "c1", initial_prompt="x", working_directory="/w")
    registry.register("h2", "c2")
    registry.clear()
    assert registry.active_conversation_ids() == []
    assert registry.active_stream_handles() == []
    assert registry.context_for("c1") is None


def test_injected_inconsistency_is_reported() -> None:
    registry = SessionStatusRegistry()
    registry.register("h1", "c1")
    # Forward entry without its reverse.
    registry._handle_by_conversation["c2"] = "h2"

    assert registry.stream_handle_for("c2") == "h2"
    assert registry.status("c2") is ConversationStatus.ONGOING
    problems = registry.check_consistency()
    assert len(problems) == 1
    assert "c2" in problems[0]
    assert registry.stats()["consistent"] is False


def test_stats_counts() -> None:
    registry = SessionStatusRegistry()
    registry.register("h1", "c1", initial_prompt="x", working_directory="/w")
    registry.register("h2", "c2")
    stats = registry.stats()
    assert stats["active_sessions_count"] == 2
    assert stats["active_stream_handles_count"] == 2
    assert stats["active_contexts_count"] == 1
    assert stats["consistent"] is True


def test_conversations_not_in_history_builds_placeholders() -> None:
    registry = SessionStatusRegistry()
    inherited = [
        ConversationMessage(
            uuid="u1", type="user", message={"role": "user", "content": "earlier"},
            timestamp="2024-01-01T00:00:00Z", conversation_id="c1",
        ),
    ]
    registry.register(
        "h1", "c1",
        initial_prompt="go on", working_directory="/proj", model="opus",
        inherited_messages=inherited,
    )
    registry.register("h2", "c2", initial_prompt="on disk", working_directory="/proj")
    # Active but registered without context: nothing to show.
    registry.register("h3", "c3")

    placeholders = registry.conversations_not_in_history({"c2"})
    assert [p.conversation_id for p in placeholders] == ["c1"]
    entry = placeholders[0]
    assert entry.status == "ongoing"
    assert entry.stream_handle == "h1"
    assert entry.project_path == "/proj"
    assert entry.model == "opus"
    assert entry.message_count == 2


def test_active_conversation_details_appends_prompt() -> None:
    registry = SessionStatusRegistry()
    inherited = [
        ConversationMessage(
            uuid="u1", type="user", message={"role": "user", "content": "earlier"},
            timestamp="2024-01-01T00:00:00Z", conversation_id="c1",
        ),
    ]
    registry.register(
        "h1", "c1", initial_prompt="go on", working_directory="/proj",
        inherited_messages=inherited,
    )
    details = registry.active_conversation_details("c1")
    assert details is not None
    assert [m.uuid for m in details.messages] == ["u1", "active-c1-user"]
    assert details.messages[-1].text == "go on"
    assert details.project_path == "/proj"
    assert registry.active_conversation_details("unknown") is None
