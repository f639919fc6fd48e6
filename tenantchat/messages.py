"""Outgoing event queueing and delivery for the chat hub."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from .constants import S_ERROR_MESSAGE
from .envelope import make_envelope
from .session import Connection

if TYPE_CHECKING:
    from .service import ChatService

Outgoing = list[tuple[Connection, dict]]


class MessageHelper:
    """
    Builds and delivers server events.

    Handlers never write to a transport directly: they append
    `(connection, envelope)` pairs to an outgoing list, and the hub flushes
    that list once the handler has finished. A handler that fails leaves
    nothing behind because its list is discarded.
    """

    def __init__(self, hub: ChatService) -> None:
        self.hub = hub
        self.log = logging.getLogger("tenantchat.hub")

    def queue_env(self, outgoing: Outgoing, conn: Connection, env: dict) -> None:
        outgoing.append((conn, env))

    def queue_event(
        self, outgoing: Outgoing, conn: Connection, event: str, data: Any = None
    ) -> None:
        self.queue_env(outgoing, conn, make_envelope(event, data=data))

    def queue_to_group(
        self,
        outgoing: Outgoing,
        room_id: str,
        event: str,
        shape: Callable[[Connection], Any],
        *,
        exclude_principal: str | None = None,
    ) -> int:
        """Queue `event` to every connection of a room's group.

        `shape(conn)` returns the payload for that recipient, or None to skip it.
        Returns the number of envelopes queued.
        """
        queued = 0
        for conn in self.hub.session_manager.group_members(room_id):
            if exclude_principal is not None and conn.principal.id == exclude_principal:
                continue
            data = shape(conn)
            if data is None:
                continue
            self.queue_event(outgoing, conn, event, data)
            queued += 1
        return queued

    def queue_to_principal(
        self, outgoing: Outgoing, principal_id: str, event: str, data: Any
    ) -> int:
        """Queue `event` on a principal's personal channel (all its connections)."""
        conns = self.hub.session_manager.connections_for(principal_id)
        for conn in conns:
            self.queue_event(outgoing, conn, event, data)
        return len(conns)

    def emit_error(self, outgoing: Outgoing, conn: Connection, text: str) -> None:
        self.hub.stats_manager.inc("errors_sent")
        self.queue_event(outgoing, conn, S_ERROR_MESSAGE, text)

    async def flush(self, outgoing: Outgoing) -> None:
        for conn, env in outgoing:
            await self.send(conn, env)
        outgoing.clear()

    async def send(self, conn: Connection, env: dict) -> None:
        """Send an envelope immediately (not queued)."""
        if conn.closed:
            return
        try:
            sent = await conn.send(env)
        except (OSError, RuntimeError) as e:
            self.log.warning(
                "Send failed conn_id=%s event=%s err=%s",
                conn.conn_id,
                env.get("event"),
                e,
            )
            return
        except Exception:
            self.log.debug(
                "Send failed conn_id=%s event=%s",
                conn.conn_id,
                env.get("event"),
                exc_info=True,
            )
            return
        self.hub.stats_manager.inc("events_out")
        self.hub.stats_manager.inc("bytes_out", sent)
