"""Room directory: existence, membership and ownership of rooms.

Explicit rooms live in the document store and are mirrored into an
in-memory cache. The cache starts empty and fills as rooms are touched; a
miss reads through to the store. Every mutation writes the store first and
the cache second.

Tenant rooms (`tenant_<id>`) are never stored. Every principal of the tenant
is a member.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .attachments import AttachmentStore
from .constants import COLL_ADMINS, COLL_CLIENTS, COLL_MEMBERS, NS_FILE, NS_VOICE
from .errors import ChatError, Forbidden, NotFound, ValidationError
from .models import Principal, Room
from .store import ChatStore
from .util import is_explicit_room_id, new_room_id, tenant_of_room


@dataclass
class CascadeResult:
    room_id: str
    deleted_voices: int = 0
    deleted_files: int = 0
    deleted_messages: int = 0
    deleted_rooms: int = 0
    failed: list[str] = field(default_factory=list)

    @property
    def room_gone(self) -> bool:
        return "room" not in self.failed

    def to_wire(self) -> dict[str, Any]:
        msg = "Room deleted successfully"
        if self.failed:
            msg = "Room deleted with errors: " + ", ".join(self.failed)
        return {
            "message": msg,
            "deletedRoomCount": self.deleted_rooms,
            "deletedVoiceCount": self.deleted_voices,
            "deletedFileCount": self.deleted_files,
            "deletedMessageCount": self.deleted_messages,
        }


class RoomDirectory:
    def __init__(self, store: ChatStore, attachments: AttachmentStore) -> None:
        self.store = store
        self.attachments = attachments
        self.log = logging.getLogger("tenantchat.rooms")
        self._cache: dict[str, Room] = {}

    async def create_room(
        self, tenant_id: str, creator_id: str, name: str, member_ids: list[str]
    ) -> Room:
        member_ids = [str(m) for m in member_ids]
        await self.validate_tenant_members(tenant_id, member_ids)

        room_id = new_room_id()
        while room_id in self._cache or await self.store.find_room(room_id):
            room_id = new_room_id()

        room = Room(
            room_id=room_id,
            room_name=name,
            tenant_id=tenant_id,
            creator_id=creator_id,
            users=member_ids,
        )
        await self.store.insert_room(room)
        self._cache[room.room_id] = room
        self.log.info(
            "Room created room=%s tenant=%s creator=%s users=%s",
            room.room_id,
            tenant_id,
            creator_id,
            len(room.users),
        )
        return room

    async def validate_tenant_members(self, tenant_id: str, member_ids: list[str]) -> None:
        """Refuse ids that are not principals of `tenant_id`."""
        wanted = set(member_ids)
        if not wanted:
            raise ValidationError("Invalid room name or users.")

        found: set[str] = set()
        for collection in (COLL_MEMBERS, COLL_ADMINS, COLL_CLIENTS):
            missing = sorted(wanted - found)
            if not missing:
                break
            docs = await self.store.find_principal_docs(collection, missing, tenant_id)
            found.update(str(d["_id"]) for d in docs)

        if wanted - found:
            self.log.info(
                "Refused room members tenant=%s unknown=%s",
                tenant_id,
                sorted(wanted - found),
            )
            raise Forbidden("Some users do not belong to your company.")

    def cached(self, room_id: str) -> Room | None:
        return self._cache.get(room_id)

    def evict(self, room_id: str) -> None:
        self._cache.pop(room_id, None)

    async def get_room(self, room_id: str) -> Room | None:
        if not is_explicit_room_id(room_id):
            return None
        room = self._cache.get(room_id)
        if room is not None:
            return room
        room = await self.store.find_room(room_id)
        if room is not None:
            self._cache[room_id] = room
        return room

    async def require_room(self, room_id: str) -> Room:
        room = await self.get_room(room_id)
        if room is None:
            raise NotFound("Room not found")
        return room

    async def is_member(self, room_id: str, principal: Principal) -> bool:
        tenant_id = tenant_of_room(room_id)
        if tenant_id is not None:
            return tenant_id == principal.tenant_id
        room = await self.get_room(room_id)
        if room is None:
            return False
        return room.tenant_id == principal.tenant_id and room.has_member(principal.id)

    async def rooms_for(self, principal: Principal) -> list[Room]:
        rooms = await self.store.find_rooms_for_principal(
            principal.id, principal.tenant_id
        )
        out: list[Room] = []
        for room in rooms:
            # Keep the cached object authoritative once a room is loaded.
            cached = self._cache.setdefault(room.room_id, room)
            out.append(cached)
        return out

    async def remove_member(self, room_id: str, principal_id: str) -> Room | None:
        """Pull `principal_id` from the roster.

        Returns the updated room, or None when the roster became empty and
        the room record was deleted.
        """
        updated = await self.store.pull_room_member(room_id, principal_id)
        if updated is None:
            self.evict(room_id)
            raise NotFound("Room not found")

        if not updated.users:
            await self.store.delete_room(room_id)
            self.evict(room_id)
            self.log.info("Room reaped room=%s (no members left)", room_id)
            return None

        cached = self._cache.get(room_id)
        if cached is not None:
            cached.users = list(updated.users)
        else:
            self._cache[room_id] = updated
            cached = updated
        return cached

    async def delete_room(self, room_id: str, requester_id: str) -> CascadeResult:
        if tenant_of_room(room_id) is not None:
            raise Forbidden("Company rooms cannot be deleted")

        room = await self.require_room(room_id)
        if room.creator_id != requester_id:
            self.log.info(
                "Refused room delete room=%s requester=%s creator=%s",
                room_id,
                requester_id,
                room.creator_id,
            )
            raise Forbidden("Only the room creator can delete this room")

        result = CascadeResult(room_id=room_id)

        for namespace, attr in ((NS_VOICE, "deleted_voices"), (NS_FILE, "deleted_files")):
            try:
                count = await self.attachments.purge_room_attachments(room_id, namespace)
            except ChatError as e:
                self.log.warning(
                    "Cascade step failed room=%s step=%s: %s", room_id, namespace, e
                )
                result.failed.append(namespace)
            else:
                setattr(result, attr, count)

        try:
            result.deleted_messages = await self.store.delete_messages_for_room(room_id)
        except ChatError as e:
            self.log.warning("Cascade step failed room=%s step=messages: %s", room_id, e)
            result.failed.append("messages")

        try:
            result.deleted_rooms = await self.store.delete_room(room_id)
        except ChatError as e:
            self.log.warning("Cascade step failed room=%s step=room: %s", room_id, e)
            result.failed.append("room")
        else:
            self.evict(room_id)

        self.log.info(
            "Room deleted room=%s voices=%s files=%s messages=%s rooms=%s failed=%s",
            room_id,
            result.deleted_voices,
            result.deleted_files,
            result.deleted_messages,
            result.deleted_rooms,
            ",".join(result.failed) or "-",
        )
        return result

    def get_stats(self) -> dict[str, Any]:
        return {
            "rooms_cached": len(self._cache),
            "memberships_cached": sum(len(r.users) for r in self._cache.values()),
        }
