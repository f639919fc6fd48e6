"""Room lifecycle: create, join, leave and delete.

Each flow validates and persists first, then updates the transport groups
and the presence index, then queues its notifications.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .constants import (
    S_FILES_DELETED,
    S_JOIN_CONFIRMATION,
    S_ONLINE_USERS_UPDATE,
    S_ROOM_CREATED,
    S_ROOM_DELETED,
    S_ROOM_LEFT,
    S_USER_JOINED,
    S_USER_LEFT_ROOM,
    S_VOICES_DELETED,
    SYSTEM_AUTHOR_ID,
    SYSTEM_AUTHOR_NAME,
)
from .errors import DependencyFailure, Forbidden, ValidationError
from .messages import Outgoing
from .models import Message, Principal, Room
from .rooms import CascadeResult
from .session import Connection
from .util import (
    iso,
    new_object_id,
    normalize_room_name,
    require_room_id,
    tenant_of_room,
    utcnow,
)

if TYPE_CHECKING:
    from .service import ChatService


class RoomLifecycleManager:
    def __init__(self, hub: ChatService) -> None:
        self.hub = hub
        self.log = logging.getLogger("tenantchat.lifecycle")

    def _room_name(self, room_id: str, room: Room | None, principal: Principal) -> str:
        if room is not None:
            return room.room_name
        return principal.tenant_name

    def queue_presence(self, outgoing: Outgoing, room_id: str) -> None:
        presence = self.hub.presence
        self.hub.message_helper.queue_to_group(
            outgoing,
            room_id,
            S_ONLINE_USERS_UPDATE,
            lambda conn: presence.shape_snapshot(room_id, conn.principal.role),
        )

    async def create_room(self, conn: Connection, payload: Any, outgoing: Outgoing) -> Room:
        principal = conn.principal
        if not isinstance(payload, dict):
            raise ValidationError("Invalid room name or users.")
        user_ids = payload.get("userIds")
        if not isinstance(user_ids, list) or not user_ids:
            raise ValidationError("Invalid room name or users.")
        if not all(isinstance(u, str) and u.strip() for u in user_ids):
            raise ValidationError("Invalid room name or users.")
        name = normalize_room_name(
            payload.get("roomName"), max_chars=self.hub.config.max_room_name_len
        )

        room = await self.hub.room_directory.create_room(
            principal.tenant_id,
            principal.id,
            name,
            [u.strip() for u in user_ids],
        )
        self.hub.stats_manager.inc("rooms_created")

        sessions = self.hub.session_manager
        sessions.add_to_group(conn, room.room_id)
        self.hub.presence.join(room.room_id, principal.id, principal.display_name, conn.conn_id)
        conn.joined.add(room.room_id)

        # Already-online invitees start receiving room events right away.
        for uid in room.users:
            for other in sessions.connections_for(uid):
                sessions.add_to_group(other, room.room_id)

        system_message = Message(
            id=new_object_id(),
            room_id=room.room_id,
            tenant_id=room.tenant_id,
            author_id=SYSTEM_AUTHOR_ID,
            author_display_name=SYSTEM_AUTHOR_NAME,
            author_tenant_name=SYSTEM_AUTHOR_NAME,
            body=f'Room "{room.room_name}" has been created!',
        )
        try:
            await self.hub.store.insert_message(system_message)
        except DependencyFailure as e:
            self.log.warning(
                "System message not stored room=%s: %s", room.room_id, e
            )
        else:
            self.hub.relay.publish(system_message, outgoing)

        wire = room.to_wire()
        for uid in room.users:
            self.hub.message_helper.queue_to_principal(outgoing, uid, S_ROOM_CREATED, wire)

        return room

    async def join_room(self, conn: Connection, room_id: Any, outgoing: Outgoing) -> None:
        principal = conn.principal
        room_id = require_room_id(room_id)

        if (
            room_id not in conn.groups
            and len(conn.groups) >= int(self.hub.config.max_rooms_per_connection)
        ):
            raise ValidationError("too many rooms")

        room = await self.hub.relay.authorize_room(principal, room_id)

        self.hub.session_manager.add_to_group(conn, room_id)
        newly_present = self.hub.presence.join(
            room_id, principal.id, principal.display_name, conn.conn_id
        )
        conn.joined.add(room_id)
        self.hub.stats_manager.inc("joins")
        self.log.info(
            "JOIN principal=%s room=%s conn_id=%s", principal.id, room_id, conn.conn_id
        )

        confirmation: dict[str, Any] = {
            "room": room_id,
            "roomName": self._room_name(room_id, room, principal),
        }
        snapshot = self.hub.presence.shape_snapshot(room_id, principal.role)
        if "users" in snapshot:
            confirmation["users"] = snapshot["users"]
        else:
            confirmation["count"] = snapshot["count"]
        self.hub.message_helper.queue_event(outgoing, conn, S_JOIN_CONFIRMATION, confirmation)

        if newly_present:
            joined = {
                "user": {"userId": principal.id, "username": principal.display_name},
                "roomId": room_id,
            }
            self.hub.message_helper.queue_to_group(
                outgoing,
                room_id,
                S_USER_JOINED,
                lambda c: joined if c.principal.policy.sees_presence_identities else None,
                exclude_principal=principal.id,
            )
            self.queue_presence(outgoing, room_id)

    async def leave_room(self, conn: Connection, room_id: Any, outgoing: Outgoing) -> Room | None:
        principal = conn.principal
        room_id = require_room_id(room_id)
        if tenant_of_room(room_id) is not None:
            raise Forbidden("You cannot leave the company room")

        directory = self.hub.room_directory
        room = await directory.require_room(room_id)
        if room.tenant_id != principal.tenant_id or not room.has_member(principal.id):
            raise Forbidden("You are not a member of this room")
        if room.creator_id == principal.id:
            raise Forbidden("Room creator cannot leave the room")
        room_name = room.room_name

        updated = await directory.remove_member(room_id, principal.id)

        sessions = self.hub.session_manager
        leaver_conns = sessions.connections_for(principal.id)
        for c in leaver_conns:
            sessions.remove_from_group(c, room_id)
        presence_changed = self.hub.presence.leave(room_id, principal.id)
        self.hub.stats_manager.inc("leaves")
        self.log.info(
            "LEAVE principal=%s room=%s reaped=%s", principal.id, room_id, updated is None
        )

        confirmation = {
            "success": True,
            "message": "Successfully left the room",
            "data": {"roomId": room_id, "userId": principal.id},
        }
        for c in leaver_conns:
            self.hub.message_helper.queue_event(outgoing, c, S_ROOM_LEFT, confirmation)

        if updated is None:
            self.hub.presence.discard_room(room_id)
            sessions.discard_group(room_id)
            return None

        departed = {
            "userId": principal.id,
            "username": principal.display_name,
            "roomId": room_id,
            "roomName": room_name,
        }
        reduced = {"roomId": room_id, "roomName": room_name}
        self.hub.message_helper.queue_to_group(
            outgoing,
            room_id,
            S_USER_LEFT_ROOM,
            lambda c: departed if c.principal.policy.sees_presence_identities else reduced,
        )
        if presence_changed:
            self.queue_presence(outgoing, room_id)
        return updated

    async def delete_room(
        self, principal: Principal, room_id: Any, outgoing: Outgoing
    ) -> CascadeResult:
        room_id = require_room_id(room_id)
        result = await self.hub.room_directory.delete_room(room_id, principal.id)
        self.hub.stats_manager.inc("rooms_deleted")

        helper = self.hub.message_helper
        stamp = iso(utcnow())
        for event, count, label in (
            (S_VOICES_DELETED, result.deleted_voices, "voice"),
            (S_FILES_DELETED, result.deleted_files, "file"),
        ):
            if label in result.failed:
                continue
            data = {
                "roomId": room_id,
                "message": f"All {label} attachments for room {room_id} have been deleted",
                "deletedCount": count,
                "timestamp": stamp,
            }
            helper.queue_to_group(outgoing, room_id, event, lambda c, d=data: d)

        if result.room_gone:
            deleted = {"roomId": room_id, "userId": principal.id, "timestamp": stamp}
            helper.queue_to_group(outgoing, room_id, S_ROOM_DELETED, lambda c: deleted)
            self.hub.presence.discard_room(room_id)
            self.hub.session_manager.discard_group(room_id)

        return result
