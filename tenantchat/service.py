from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from .attachments import AttachmentStore, FileAttachmentStore
from .config import ChatRuntimeConfig
from .constants import S_ROOM_CREATED
from .errors import ChatError, Forbidden, Unauthorized
from .identity import Credential, IdentityResolver, describe_principal_doc
from .lifecycle import RoomLifecycleManager
from .messages import MessageHelper, Outgoing
from .models import PRINCIPAL_COLLECTIONS, Principal, Role, Room
from .paths import default_attachments_dir
from .presence import PresenceTracker
from .relay import MessageRelay
from .rooms import RoomDirectory
from .router import MessageRouter
from .session import Connection, SessionManager
from .stats import StatsManager
from .store import ChatStore, build_store
from .util import expand_path, tenant_room_id

T = TypeVar("T")


class ChatService:
    """The chat hub: owns every component and the connection lifecycle.

    All state lives on one asyncio event loop. Handlers only suspend at store
    and attachment calls, so the room cache and presence index are never
    touched by two handlers at once between those points.
    """

    def __init__(
        self,
        config: ChatRuntimeConfig,
        *,
        store: ChatStore | None = None,
        attachments: AttachmentStore | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("tenantchat.hub")

        self.store = store if store is not None else build_store(config)
        if attachments is None:
            root = (
                expand_path(config.attachments_dir)
                if config.attachments_dir
                else default_attachments_dir(config.data_dir)
            )
            attachments = FileAttachmentStore(root)
        self.attachments = attachments

        self.identity = IdentityResolver(config, self.store)
        self.room_directory = RoomDirectory(self.store, self.attachments)
        self.presence = PresenceTracker()

        self.stats_manager = StatsManager(self)
        self.session_manager = SessionManager(self)
        self.message_helper = MessageHelper(self)
        self.relay = MessageRelay(self)
        self.lifecycle = RoomLifecycleManager(self)
        self.router = MessageRouter(self)

        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        self.stats_manager.set_start_time()
        await self.store.open()
        self._started = True
        self.log.info(
            "Hub running store=%s attachments=%s",
            type(self.store).__name__,
            type(self.attachments).__name__,
        )
        self.log.info(
            "Policy max_rooms=%s max_room_name_len=%s max_message_chars=%s rate_limit_msgs_per_minute=%s",
            self.config.max_rooms_per_connection,
            self.config.max_room_name_len,
            self.config.max_message_chars,
            self.config.rate_limit_msgs_per_minute,
        )

    async def stop(self) -> None:
        conns = self.session_manager.clear_all()
        for conn in conns:
            self.presence.drop_connection(conn.conn_id)
        await self.store.close()
        self._started = False
        self.log.info("Hub stopped connections_dropped=%s", len(conns))

    async def authenticate(self, credential: Credential | None) -> Principal:
        try:
            return await self.identity.resolve(credential)
        except Unauthorized as e:
            self.stats_manager.inc("connections_refused")
            self.log.info("Authentication refused: %s", e.message)
            raise

    async def dispatch(self, op: Callable[[Outgoing], Awaitable[T]]) -> T:
        """Run one operation and deliver what it queued.

        A `ChatError` propagates to the caller and nothing is delivered.
        """
        outgoing: Outgoing = []
        result = await op(outgoing)
        await self.message_helper.flush(outgoing)
        return result

    async def on_connect(self, principal: Principal, transport: Any) -> Connection:
        """Bind a transport to `principal` and subscribe it to its rooms."""
        conn = self.session_manager.register(principal, transport)
        self.stats_manager.inc("connections")
        self.session_manager.add_to_group(conn, tenant_room_id(principal.tenant_id))

        outgoing: Outgoing = []
        try:
            rooms = await self.room_directory.rooms_for(principal)
        except ChatError as e:
            self.log.warning(
                "Room lookup failed on connect principal=%s conn_id=%s: %s",
                principal.id,
                conn.conn_id,
                e,
            )
            self.message_helper.emit_error(outgoing, conn, "Failed to load rooms.")
            rooms = []

        limit = int(self.config.max_rooms_per_connection)
        if len(rooms) > limit:
            self.log.warning(
                "Room list truncated on connect principal=%s conn_id=%s rooms=%s limit=%s",
                principal.id,
                conn.conn_id,
                len(rooms),
                limit,
            )
            self.message_helper.emit_error(outgoing, conn, "too many rooms")
        for room in rooms[:limit]:
            self.session_manager.add_to_group(conn, room.room_id)
            self.message_helper.queue_event(outgoing, conn, S_ROOM_CREATED, room.to_wire())

        await self.message_helper.flush(outgoing)
        self.log.debug(
            "Connected principal=%s conn_id=%s rooms=%s", principal.id, conn.conn_id, len(rooms)
        )
        return conn

    async def on_frame(self, conn: Connection, data: str | bytes) -> None:
        outgoing: Outgoing = []
        await self.router.route_frame(conn, data, outgoing)
        await self.message_helper.flush(outgoing)

    async def on_close(self, conn: Connection) -> None:
        changed = self.presence.drop_connection(conn.conn_id)
        if self.session_manager.unregister(conn) is None:
            return
        outgoing: Outgoing = []
        for room_id in changed:
            self.lifecycle.queue_presence(outgoing, room_id)
        await self.message_helper.flush(outgoing)

    # HTTP-facing helpers

    async def list_rooms(self, principal: Principal) -> list[Room]:
        return await self.room_directory.rooms_for(principal)

    async def list_company_users(self, principal: Principal) -> list[dict[str, Any]]:
        if not principal.policy.lists_tenant_principals:
            return []
        out: list[dict[str, Any]] = []
        for collection, role in PRINCIPAL_COLLECTIONS:
            for doc in await self.store.list_principal_docs(collection, principal.tenant_id):
                out.append(describe_principal_doc(doc, role))
        return out

    def require_admin(self, principal: Principal) -> None:
        if principal.role != Role.ADMIN:
            raise Forbidden("Admin access required")
