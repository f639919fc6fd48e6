import asyncio

import pytest

from conftest import ACME, ALICE, BOB, CARL, EVE, GLOBEX, principal
from tenantchat.attachments import FileAttachmentStore
from tenantchat.errors import DependencyFailure, Forbidden, NotFound
from tenantchat.models import Message, Room
from tenantchat.rooms import RoomDirectory
from tenantchat.util import new_object_id, tenant_room_id


def _directory(store, tmp_path) -> RoomDirectory:
    return RoomDirectory(store, FileAttachmentStore(tmp_path / "att"))


def _msg(room_id: str, body: str = "hi", author: str = ALICE) -> Message:
    return Message(
        id=new_object_id(),
        room_id=room_id,
        tenant_id=ACME,
        author_id=author,
        author_display_name="Alice",
        author_tenant_name="Acme Corp",
        body=body,
    )


def test_create_room_adds_creator_and_persists(store, tmp_path) -> None:
    rooms = _directory(store, tmp_path)
    room = asyncio.run(rooms.create_room(ACME, ALICE, "Ops", [BOB, CARL]))
    assert room.room_id.startswith("room_")
    assert room.users == [ALICE, BOB, CARL]
    stored = asyncio.run(store.find_room(room.room_id))
    assert stored is not None and stored.users == room.users


def test_create_room_rejects_foreign_members(store, tmp_path) -> None:
    rooms = _directory(store, tmp_path)
    with pytest.raises(Forbidden):
        asyncio.run(rooms.create_room(ACME, ALICE, "Ops", [BOB, EVE]))
    assert asyncio.run(store.find_rooms_for_principal(ALICE)) == []


def test_membership_rules(store, tmp_path) -> None:
    rooms = _directory(store, tmp_path)
    room = asyncio.run(rooms.create_room(ACME, ALICE, "Ops", [BOB]))

    assert asyncio.run(rooms.is_member(room.room_id, principal(BOB)))
    assert not asyncio.run(rooms.is_member(room.room_id, principal(CARL)))
    assert asyncio.run(rooms.is_member(tenant_room_id(ACME), principal(CARL)))
    assert not asyncio.run(rooms.is_member(tenant_room_id(GLOBEX), principal(CARL)))
    assert not asyncio.run(rooms.is_member("room_0_missing00", principal(ALICE)))


def test_cache_reads_through_to_the_store(store, tmp_path) -> None:
    room = Room("room_1_preexists", "Old", ACME, creator_id=ALICE, users=[BOB])
    asyncio.run(store.insert_room(room))

    rooms = _directory(store, tmp_path)
    assert rooms.cached(room.room_id) is None
    loaded = asyncio.run(rooms.get_room(room.room_id))
    assert loaded is not None and loaded.users == [ALICE, BOB]
    assert rooms.cached(room.room_id) is loaded


def test_remove_member_updates_roster(store, tmp_path) -> None:
    rooms = _directory(store, tmp_path)
    room = asyncio.run(rooms.create_room(ACME, BOB, "Ops", [ALICE]))
    updated = asyncio.run(rooms.remove_member(room.room_id, ALICE))
    assert updated is not None and updated.users == [BOB]
    assert rooms.cached(room.room_id).users == [BOB]
    assert asyncio.run(store.find_room(room.room_id)).users == [BOB]


def test_remove_last_member_reaps_the_room(store, tmp_path) -> None:
    asyncio.run(store.insert_room(Room("room_1_lonely000", "Solo", ACME, creator_id=BOB)))
    # The stored roster has lost its creator and holds one other id.
    store._rooms["room_1_lonely000"]["users"] = [ALICE]

    rooms = _directory(store, tmp_path)
    assert asyncio.run(rooms.remove_member("room_1_lonely000", ALICE)) is None
    assert asyncio.run(store.find_room("room_1_lonely000")) is None
    assert rooms.cached("room_1_lonely000") is None


def test_remove_member_of_missing_room(store, tmp_path) -> None:
    rooms = _directory(store, tmp_path)
    with pytest.raises(NotFound):
        asyncio.run(rooms.remove_member("room_0_missing00", ALICE))


def test_delete_room_by_non_creator_touches_nothing(store, tmp_path) -> None:
    rooms = _directory(store, tmp_path)

    async def scenario():
        room = await rooms.create_room(ACME, ALICE, "Ops", [BOB])
        await store.insert_message(_msg(room.room_id))
        att = await rooms.attachments.put("file", room.room_id, "a.pdf", b"%PDF", "application/pdf")
        with pytest.raises(Forbidden):
            await rooms.delete_room(room.room_id, BOB)
        return room, att

    room, att = asyncio.run(scenario())
    assert asyncio.run(store.find_room(room.room_id)) is not None
    assert len(asyncio.run(store.list_messages(room.room_id))) == 1
    assert asyncio.run(rooms.attachments.get(att.key)) == b"%PDF"


def test_delete_room_cascades(store, tmp_path) -> None:
    rooms = _directory(store, tmp_path)

    async def scenario():
        room = await rooms.create_room(ACME, ALICE, "Ops", [BOB])
        for body in ("one", "two", "three"):
            await store.insert_message(_msg(room.room_id, body))
        await rooms.attachments.put("file", room.room_id, "a.pdf", b"1", "application/pdf")
        await rooms.attachments.put("file", room.room_id, "b.png", b"2", "image/png")
        await rooms.attachments.put("voice", room.room_id, "c.ogg", b"3", "audio/ogg")
        return room, await rooms.delete_room(room.room_id, ALICE)

    room, result = asyncio.run(scenario())
    assert result.deleted_files == 2
    assert result.deleted_voices == 1
    assert result.deleted_messages == 3
    assert result.deleted_rooms == 1
    assert result.failed == []
    assert result.room_gone
    assert asyncio.run(store.find_room(room.room_id)) is None
    assert not (tmp_path / "att" / "file" / room.room_id).exists()
    assert result.to_wire()["deletedFileCount"] == 2


def test_delete_room_continues_past_a_failed_step(store, tmp_path) -> None:
    rooms = _directory(store, tmp_path)

    async def broken_purge(room_id, namespace):
        raise DependencyFailure("disk gone")

    async def scenario():
        room = await rooms.create_room(ACME, ALICE, "Ops", [BOB])
        await store.insert_message(_msg(room.room_id))
        rooms.attachments.purge_room_attachments = broken_purge
        return room, await rooms.delete_room(room.room_id, ALICE)

    room, result = asyncio.run(scenario())
    assert result.failed == ["voice", "file"]
    assert result.deleted_messages == 1
    assert result.deleted_rooms == 1
    assert result.room_gone
    assert "errors" in result.to_wire()["message"]


def test_tenant_room_cannot_be_deleted(store, tmp_path) -> None:
    rooms = _directory(store, tmp_path)
    with pytest.raises(Forbidden):
        asyncio.run(rooms.delete_room(tenant_room_id(ACME), ALICE))
