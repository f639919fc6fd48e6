"""Message relay: send, edit, delete, typing and attachment fan-out.

Every operation persists before it queues anything, and every broadcast is
shaped per recipient: viewers whose role sees tenant-branded authors get the
author's company name for other people's messages.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .attachments import check_upload
from .constants import (
    ATTACHMENT_NAMESPACES,
    S_MESSAGE_DELETED,
    S_MESSAGE_UPDATED,
    S_NEW_MESSAGE,
    S_USER_STOPPED_TYPING,
    S_USER_TYPING,
)
from .errors import ChatError, Forbidden, NotFound, ValidationError
from .messages import Outgoing
from .models import Attachment, Message, Principal, Room, author_name_for
from .session import Connection
from .util import (
    is_valid_object_id,
    new_object_id,
    require_room_id,
    tenant_of_room,
    tenant_room_id,
    utcnow,
)

if TYPE_CHECKING:
    from .service import ChatService


def shape_message(message: Message, viewer: Principal | None) -> dict[str, Any]:
    return message.to_wire(username=author_name_for(message, viewer))


class MessageRelay:
    def __init__(self, hub: ChatService) -> None:
        self.hub = hub
        self.log = logging.getLogger("tenantchat.relay")

    async def authorize_room(self, principal: Principal, room_id: str) -> Room | None:
        """Check that `principal` may act in `room_id`.

        Returns the Room for explicit rooms and None for the tenant room.
        """
        room_id = require_room_id(room_id)
        tenant_id = tenant_of_room(room_id)
        if tenant_id is not None:
            if tenant_id != principal.tenant_id:
                raise Forbidden("You are not a member of this room")
            return None

        room = await self.hub.room_directory.require_room(room_id)
        if room.tenant_id != principal.tenant_id or not room.has_member(principal.id):
            raise Forbidden("You are not a member of this room")
        return room

    def _validate_body(self, body: Any) -> str:
        if not isinstance(body, str) or not body.strip():
            raise ValidationError("Message cannot be empty")
        if len(body) > int(self.hub.config.max_message_chars):
            raise ValidationError("Message is too long")
        return body

    def publish(self, message: Message, outgoing: Outgoing, *, event: str = S_NEW_MESSAGE) -> int:
        """Queue a stored message to the room's group, shaped per recipient."""
        queued = self.hub.message_helper.queue_to_group(
            outgoing,
            message.room_id,
            event,
            lambda conn: shape_message(message, conn.principal),
        )
        self.hub.stats_manager.inc("msgs_relayed")
        return queued

    async def send_message(
        self,
        principal: Principal,
        body: Any,
        room_id: str | None,
        outgoing: Outgoing,
    ) -> Message:
        body = self._validate_body(body)
        if room_id is None:
            room_id = tenant_room_id(principal.tenant_id)
        await self.authorize_room(principal, room_id)

        message = Message(
            id=new_object_id(),
            room_id=room_id,
            tenant_id=principal.tenant_id,
            author_id=principal.id,
            author_display_name=principal.display_name,
            author_tenant_name=principal.tenant_name,
            body=body,
        )
        await self.hub.store.insert_message(message)
        self.publish(message, outgoing)
        self.log.debug(
            "MSG principal=%s room=%s id=%s chars=%s",
            principal.id,
            room_id,
            message.id,
            len(body),
        )
        return message

    async def _own_message(
        self, principal: Principal, message_id: Any, room_id: Any, verb: str
    ) -> Message:
        if not is_valid_object_id(message_id):
            raise ValidationError("Invalid message ID")
        room_id = require_room_id(room_id)
        await self.authorize_room(principal, room_id)

        message = await self.hub.store.find_message(message_id, room_id)
        if message is None:
            raise NotFound("Message not found")
        if message.author_id != principal.id:
            self.log.info(
                "Refused %s principal=%s message=%s author=%s",
                verb,
                principal.id,
                message_id,
                message.author_id,
            )
            raise Forbidden(f"You can only {verb} your own messages")
        return message

    async def edit_message(
        self,
        principal: Principal,
        message_id: Any,
        new_body: Any,
        room_id: Any,
        outgoing: Outgoing,
    ) -> Message:
        if not is_valid_object_id(message_id):
            raise ValidationError("Invalid message ID")
        new_body = self._validate_body(new_body)
        message = await self._own_message(principal, message_id, room_id, "edit")

        edited_at = utcnow()
        if not await self.hub.store.update_message_body(
            message.id, message.room_id, new_body, edited_at
        ):
            raise NotFound("Message not found")
        message.body = new_body
        message.edited_at = edited_at

        self.publish(message, outgoing, event=S_MESSAGE_UPDATED)
        return message

    async def delete_message(
        self,
        principal: Principal,
        message_id: Any,
        room_id: Any,
        outgoing: Outgoing,
    ) -> Message:
        message = await self._own_message(principal, message_id, room_id, "delete")
        await self._remove(message, outgoing)
        return message

    async def _remove(self, message: Message, outgoing: Outgoing) -> None:
        if not await self.hub.store.delete_message(message.id, message.room_id):
            raise NotFound("Message not found")

        if message.attachment is not None:
            try:
                await self.hub.attachments.delete(message.attachment.key)
            except ChatError as e:
                self.log.warning(
                    "Orphaned attachment key=%s message=%s: %s",
                    message.attachment.key,
                    message.id,
                    e,
                )

        data = {"messageId": message.id, "roomId": message.room_id}
        self.hub.message_helper.queue_to_group(
            outgoing, message.room_id, S_MESSAGE_DELETED, lambda conn: data
        )

    async def typing(
        self,
        conn: Connection,
        room_id: Any,
        outgoing: Outgoing,
        *,
        stopped: bool = False,
    ) -> None:
        principal = conn.principal
        room_id = require_room_id(room_id)
        await self.authorize_room(principal, room_id)

        if stopped:
            event = S_USER_STOPPED_TYPING
            data: dict[str, Any] = {"userId": principal.id, "roomId": room_id}
        else:
            event = S_USER_TYPING
            data = {
                "userId": principal.id,
                "username": principal.display_name,
                "roomId": room_id,
            }

        self.hub.message_helper.queue_to_group(
            outgoing,
            room_id,
            event,
            lambda c: data if c.principal.policy.sees_typing else None,
            exclude_principal=principal.id,
        )

    async def history(self, principal: Principal, room_id: Any) -> list[dict[str, Any]]:
        room_id = require_room_id(room_id)
        await self.authorize_room(principal, room_id)
        messages = await self.hub.store.list_messages(room_id)
        return [shape_message(m, principal) for m in messages]

    async def attachment_history(
        self, principal: Principal, room_id: Any, namespace: str
    ) -> list[dict[str, Any]]:
        room_id = require_room_id(room_id)
        await self.authorize_room(principal, room_id)
        messages = await self.hub.store.list_messages(
            room_id, kind=namespace, newest_first=True
        )
        return [shape_message(m, principal) for m in messages]

    async def post_attachment(
        self,
        principal: Principal,
        room_id: Any,
        namespace: str,
        *,
        filename: str,
        mime: str | None,
        data: bytes,
        outgoing: Outgoing,
    ) -> Message:
        """Store an uploaded object and relay it like any other message."""
        check_upload(
            self.hub.config, namespace, filename=filename, mime=mime, size=len(data)
        )
        room_id = require_room_id(room_id)
        await self.authorize_room(principal, room_id)

        attachment = await self.hub.attachments.put(
            namespace, room_id, filename, data, mime or "application/octet-stream"
        )
        message = Message(
            id=new_object_id(),
            room_id=room_id,
            tenant_id=principal.tenant_id,
            author_id=principal.id,
            author_display_name=principal.display_name,
            author_tenant_name=principal.tenant_name,
            body=attachment.name,
            attachment=attachment,
        )
        try:
            await self.hub.store.insert_message(message)
        except ChatError:
            await self._discard_object(attachment)
            raise

        self.publish(message, outgoing)
        self.log.info(
            "Attachment posted principal=%s room=%s ns=%s bytes=%s",
            principal.id,
            room_id,
            namespace,
            attachment.size,
        )
        return message

    async def _discard_object(self, attachment: Attachment) -> None:
        try:
            await self.hub.attachments.delete(attachment.key)
        except ChatError as e:
            self.log.warning("Orphaned attachment key=%s: %s", attachment.key, e)

    async def _attachment_message(
        self, principal: Principal, message_id: Any, namespace: str
    ) -> Message:
        if namespace not in ATTACHMENT_NAMESPACES:
            raise NotFound("File not found")
        if not is_valid_object_id(message_id):
            raise ValidationError("Invalid message ID")
        message = await self.hub.store.find_message(message_id)
        if message is None or message.attachment is None:
            raise NotFound("File not found")
        if message.attachment.kind != namespace:
            raise NotFound("File not found")
        await self.authorize_room(principal, message.room_id)
        return message

    async def open_attachment(
        self, principal: Principal, message_id: Any, namespace: str
    ) -> tuple[Attachment, bytes]:
        message = await self._attachment_message(principal, message_id, namespace)
        attachment = message.attachment
        if attachment is None:
            raise NotFound("File not found")
        data = await self.hub.attachments.get(attachment.key)
        return attachment, data

    async def delete_attachment(
        self, principal: Principal, message_id: Any, namespace: str, outgoing: Outgoing
    ) -> Message:
        message = await self._attachment_message(principal, message_id, namespace)
        if message.author_id != principal.id:
            raise Forbidden("You can only delete your own files")
        await self._remove(message, outgoing)
        return message
