from tenantchat.models import Role
from tenantchat.presence import PresenceTracker


def test_second_connection_keeps_principal_present() -> None:
    p = PresenceTracker()
    assert p.join("room_x", "A", "Alice", "c1") is True
    assert p.join("room_x", "A", "Alice", "c2") is False

    assert p.drop_connection("c1") == []
    assert p.is_present("room_x", "A")

    assert p.drop_connection("c2") == ["room_x"]
    assert not p.is_present("room_x", "A")
    assert p.snapshot("room_x") == []


def test_drop_connection_reports_each_changed_room() -> None:
    p = PresenceTracker()
    p.join("room_a", "A", "Alice", "c1")
    p.join("room_b", "A", "Alice", "c1")
    p.join("room_b", "B", "Bob", "c2")

    assert p.drop_connection("c1") == ["room_a", "room_b"]
    assert [e.principal_id for e in p.snapshot("room_b")] == ["B"]
    assert p.count("room_a") == 0


def test_leave_without_connection_drops_every_connection() -> None:
    p = PresenceTracker()
    p.join("room_x", "A", "Alice", "c1")
    p.join("room_x", "A", "Alice", "c2")
    assert p.leave("room_x", "A") is True
    assert not p.is_present("room_x", "A")
    assert p.drop_connection("c1") == []
    assert p.leave("room_x", "A") is False


def test_snapshot_is_shaped_by_role() -> None:
    p = PresenceTracker()
    p.join("room_x", "A", "Alice", "c1")
    p.join("room_x", "B", "Bob", "c2")

    staff = p.shape_snapshot("room_x", Role.ADMIN)
    assert sorted(u["userId"] for u in staff["users"]) == ["A", "B"]
    assert "count" not in staff

    client = p.shape_snapshot("room_x", Role.CLIENT)
    assert client == {"roomId": "room_x", "count": 2}


def test_discard_room_forgets_everything() -> None:
    p = PresenceTracker()
    p.join("room_x", "A", "Alice", "c1")
    p.discard_room("room_x")
    assert p.count("room_x") == 0
    assert p.drop_connection("c1") == []
    assert p.get_stats()["rooms_present"] == 0
