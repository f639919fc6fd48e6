from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .codec import decode, decode_text
from .constants import (
    E_CREATE_ROOM,
    E_DELETE_MESSAGE,
    E_DELETE_ROOM,
    E_EDIT_MESSAGE,
    E_JOIN_ROOM,
    E_LEAVE_ROOM,
    E_SEND_MESSAGE,
    E_STOP_TYPING,
    E_TYPING,
    K_EVENT,
)
from .envelope import envelope_args, validate_envelope
from .errors import ChatError, ValidationError
from .messages import Outgoing
from .session import Connection

if TYPE_CHECKING:
    from .service import ChatService


def _arg(args: list, index: int) -> Any:
    return args[index] if len(args) > index else None


def _room_arg(args: list) -> Any:
    """`joinRoom("room_x")` and `joinRoom({"roomId": "room_x"})` are both accepted."""
    first = _arg(args, 0)
    if isinstance(first, dict):
        return first.get("roomId")
    return first


class MessageRouter:
    """
    Decodes inbound frames and dispatches them to the lifecycle and relay.

    This class is responsible for:
    - Decoding JSON text frames and CBOR binary frames
    - Envelope validation
    - Rate limiting
    - Turning a refused operation into one `errorMessage` for its sender
    """

    def __init__(self, hub: ChatService) -> None:
        self.hub = hub
        self.log = logging.getLogger("tenantchat.router")
        self._handlers = {
            E_CREATE_ROOM: self._handle_create_room,
            E_JOIN_ROOM: self._handle_join_room,
            E_LEAVE_ROOM: self._handle_leave_room,
            E_SEND_MESSAGE: self._handle_send_message,
            E_EDIT_MESSAGE: self._handle_edit_message,
            E_DELETE_MESSAGE: self._handle_delete_message,
            E_TYPING: self._handle_typing,
            E_STOP_TYPING: self._handle_stop_typing,
            E_DELETE_ROOM: self._handle_delete_room,
        }

    async def route_frame(
        self, conn: Connection, data: str | bytes, outgoing: Outgoing
    ) -> None:
        """Main entry point for one inbound frame."""
        stats = self.hub.stats_manager
        stats.inc("events_in")
        stats.inc("bytes_in", len(data))

        if not self.hub.session_manager.refill_and_take(conn, 1.0):
            stats.inc("rate_limited")
            self.log.debug(
                "Rate limited principal=%s conn_id=%s", conn.principal.id, conn.conn_id
            )
            self.hub.message_helper.emit_error(outgoing, conn, "rate limited")
            return

        try:
            if isinstance(data, (bytes, bytearray)):
                conn.binary = True
                env = decode(bytes(data))
            else:
                conn.binary = False
                env = decode_text(data)
            validate_envelope(env)
        except (TypeError, ValueError) as e:
            stats.inc("events_bad")
            self.log.debug(
                "Bad frame principal=%s conn_id=%s bytes=%s err=%s",
                conn.principal.id,
                conn.conn_id,
                len(data),
                e,
            )
            self.hub.message_helper.emit_error(outgoing, conn, f"bad message: {e}")
            return

        event = env[K_EVENT]
        args = envelope_args(env)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX principal=%s conn_id=%s event=%s args=%s bytes=%s",
                conn.principal.id,
                conn.conn_id,
                event,
                len(args),
                len(data),
            )

        handler = self._handlers.get(event)
        try:
            if handler is None:
                raise ValidationError(f"unknown event {event!r}")
            await handler(conn, args, outgoing)
        except ChatError as e:
            # Nothing of a refused operation may reach anyone else.
            outgoing.clear()
            self.log.info(
                "Refused event=%s principal=%s conn_id=%s err=%s",
                event,
                conn.principal.id,
                conn.conn_id,
                e.message,
            )
            self.hub.message_helper.emit_error(outgoing, conn, e.message)
        except Exception:
            outgoing.clear()
            self.log.exception(
                "Handler failed event=%s principal=%s conn_id=%s",
                event,
                conn.principal.id,
                conn.conn_id,
            )
            self.hub.message_helper.emit_error(outgoing, conn, "Server error")

    async def _handle_create_room(self, conn: Connection, args: list, outgoing: Outgoing) -> None:
        await self.hub.lifecycle.create_room(conn, _arg(args, 0), outgoing)

    async def _handle_join_room(self, conn: Connection, args: list, outgoing: Outgoing) -> None:
        await self.hub.lifecycle.join_room(conn, _room_arg(args), outgoing)

    async def _handle_leave_room(self, conn: Connection, args: list, outgoing: Outgoing) -> None:
        await self.hub.lifecycle.leave_room(conn, _room_arg(args), outgoing)

    async def _handle_delete_room(self, conn: Connection, args: list, outgoing: Outgoing) -> None:
        await self.hub.lifecycle.delete_room(conn.principal, _room_arg(args), outgoing)

    async def _handle_send_message(self, conn: Connection, args: list, outgoing: Outgoing) -> None:
        body = _arg(args, 0)
        room_id = _arg(args, 1)
        if isinstance(body, dict):
            room_id = body.get("roomId", room_id)
            body = body.get("message")
        await self.hub.relay.send_message(conn.principal, body, room_id, outgoing)

    async def _handle_edit_message(self, conn: Connection, args: list, outgoing: Outgoing) -> None:
        payload = _arg(args, 0)
        if not isinstance(payload, dict):
            raise ValidationError("editMessage expects {messageId, newMessage, roomId}")
        await self.hub.relay.edit_message(
            conn.principal,
            payload.get("messageId"),
            payload.get("newMessage"),
            payload.get("roomId"),
            outgoing,
        )

    async def _handle_delete_message(self, conn: Connection, args: list, outgoing: Outgoing) -> None:
        message_id = _arg(args, 0)
        room_id = _arg(args, 1)
        if isinstance(message_id, dict):
            room_id = message_id.get("roomId", room_id)
            message_id = message_id.get("messageId")
        await self.hub.relay.delete_message(conn.principal, message_id, room_id, outgoing)

    async def _handle_typing(self, conn: Connection, args: list, outgoing: Outgoing) -> None:
        await self.hub.relay.typing(conn, _room_arg(args), outgoing)

    async def _handle_stop_typing(self, conn: Connection, args: list, outgoing: Outgoing) -> None:
        await self.hub.relay.typing(conn, _room_arg(args), outgoing, stopped=True)
