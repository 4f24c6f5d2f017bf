from __future__ import annotations

from fake_process import RecordingConnection

from agentrelay.adapters.events import AssistantTurn
from agentrelay.adapters.stream_hub import ClientDisconnected, StreamHub
from agentrelay.web.sse import SSEConnection


def test_add_client_configures_and_sends_connected_first() -> None:
    hub = StreamHub()
    conn = RecordingConnection()
    assert hub.add_client("s1", conn) is True
    assert conn.configured
    assert conn.payloads[0]["type"] == "connected"
    assert conn.payloads[0]["stream_handle"] == "s1"
    assert "timestamp" in conn.payloads[0]
    assert hub.client_count("s1") == 1


def test_two_subscribers_then_one_leaves() -> None:
    hub = StreamHub()
    first, second = RecordingConnection(), RecordingConnection()
    hub.add_client("s1", first)
    hub.add_client("s1", second)

    assert hub.broadcast("s1", {"type": "assistant", "n": 1}) == 2
    assert first.payloads[-1] == second.payloads[-1] == {"type": "assistant", "n": 1}

    first.drop()
    assert hub.client_count("s1") == 1
    assert hub.broadcast("s1", {"type": "assistant", "n": 2}) == 1
    assert second.payloads[-1] == {"type": "assistant", "n": 2}
    assert first.payloads[-1] == {"type": "assistant", "n": 1}


def test_dead_connection_is_pruned_without_affecting_live_one() -> None:
    hub = StreamHub()
    live, dead = RecordingConnection(), RecordingConnection()
    hub.add_client("s1", live)
    hub.add_client("s1", dead)
    dead.fail = True

    assert hub.broadcast("s1", {"type": "x"}) == 1
    assert live.types == ["connected", "x"]
    assert hub.client_count("s1") == 1
    assert dead.closed
    assert not live.closed


def test_broadcast_preserves_call_order() -> None:
    hub = StreamHub()
    conn = RecordingConnection()
    hub.add_client("s1", conn)
    for i in range(5):
        hub.broadcast("s1", {"type": "n", "i": i})
    assert [p["i"] for p in conn.payloads[1:]] == [0, 1, 2, 3, 4]


def test_broadcast_encodes_stream_events() -> None:
    hub = StreamHub()
    conn = RecordingConnection()
    hub.add_client("s1", conn)
    raw = {"type": "assistant", "message": {"content": "hi"}}
    hub.broadcast("s1", AssistantTurn(raw=raw))
    assert conn.payloads[-1] == raw


def test_broadcast_to_unknown_group_is_noop() -> None:
    hub = StreamHub()
    assert hub.broadcast("missing", {"type": "x"}) == 0
    assert hub.active_handles() == []


def test_empty_group_is_removed_and_disconnect_announced() -> None:
    hub = StreamHub()
    events: list[ClientDisconnected] = []
    hub.client_disconnected.connect(events.append)
    conn = RecordingConnection()
    hub.add_client("s1", conn)
    hub.remove_client("s1", conn)
    assert hub.active_handles() == []
    assert events == [ClientDisconnected("s1", 0)]
    # Second removal is a no-op.
    hub.remove_client("s1", conn)
    assert len(events) == 1


def test_close_session_sends_closed_then_ends_connections() -> None:
    hub = StreamHub()
    a, b = RecordingConnection(), RecordingConnection()
    hub.add_client("s1", a)
    hub.add_client("s1", b)
    hub.close_session("s1")
    for conn in (a, b):
        assert conn.types[-1] == "closed"
        assert conn.closed
    assert hub.active_handles() == []
    assert hub.total_client_count() == 0


def test_close_session_leaves_other_groups_alone() -> None:
    hub = StreamHub()
    a, b = RecordingConnection(), RecordingConnection()
    hub.add_client("s1", a)
    hub.add_client("s2", b)
    hub.close_session("s1")
    assert hub.active_handles() == ["s2"]
    assert not b.closed


def test_max_clients_rejects_extra_subscribers() -> None:
    hub = StreamHub(max_clients=2)
    assert hub.add_client("s1", RecordingConnection())
    assert hub.add_client("s2", RecordingConnection())
    rejected = RecordingConnection()
    assert hub.add_client("s1", rejected) is False
    assert rejected.payloads == []
    assert hub.total_client_count() == 2


def test_disconnect_all_closes_every_group() -> None:
    hub = StreamHub()
    conns = [RecordingConnection() for _ in range(3)]
    hub.add_client("s1", conns[0])
    hub.add_client("s1", conns[1])
    hub.add_client("s2", conns[2])
    hub.disconnect_all()
    assert all(c.closed and c.types[-1] == "closed" for c in conns)
    assert hub.stats()["total_clients"] == 0


def test_subscriber_with_full_queue_is_closed_when_pruned() -> None:
    hub = StreamHub()
    conn = SSEConnection(queue_size=1)
    assert hub.add_client("s1", conn)

    # The connected event already fills the queue.
    assert hub.broadcast("s1", {"type": "assistant"}) == 0
    assert hub.client_count("s1") == 0
    assert conn.closed

    hub.close_session("s1")
    assert hub.active_handles() == []
