"""Domain types for tenantchat.

Roles are a closed enum; anything that behaves differently per role reads
the role's `RolePolicy` instead of comparing role strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .constants import (
    ANONYMOUS_NAME,
    COLL_ADMINS,
    COLL_CLIENTS,
    COLL_MEMBERS,
    NS_VOICE,
    UNKNOWN_TENANT_NAME,
)
from .util import iso, utcnow


class Role(str, Enum):
    MEMBER = "user"
    ADMIN = "admin"
    CLIENT = "client"


@dataclass(frozen=True)
class RolePolicy:
    sees_presence_identities: bool
    sees_typing: bool
    sees_tenant_branded_authors: bool
    lists_tenant_principals: bool


ROLE_POLICIES: dict[Role, RolePolicy] = {
    Role.MEMBER: RolePolicy(
        sees_presence_identities=True,
        sees_typing=True,
        sees_tenant_branded_authors=False,
        lists_tenant_principals=True,
    ),
    Role.ADMIN: RolePolicy(
        sees_presence_identities=True,
        sees_typing=True,
        sees_tenant_branded_authors=False,
        lists_tenant_principals=True,
    ),
    Role.CLIENT: RolePolicy(
        sees_presence_identities=False,
        sees_typing=False,
        sees_tenant_branded_authors=True,
        lists_tenant_principals=False,
    ),
}

# Lookup priority: the first collection holding the id wins.
PRINCIPAL_COLLECTIONS: tuple[tuple[str, Role], ...] = (
    (COLL_MEMBERS, Role.MEMBER),
    (COLL_ADMINS, Role.ADMIN),
    (COLL_CLIENTS, Role.CLIENT),
)


def policy_for(role: Role) -> RolePolicy:
    return ROLE_POLICIES[Role(role)]


def _as_utc(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    raise TypeError(f"unsupported timestamp {value!r}")


@dataclass(frozen=True)
class Principal:
    id: str
    tenant_id: str
    role: Role
    display_name: str = ANONYMOUS_NAME
    email: str | None = None
    tenant_name: str = UNKNOWN_TENANT_NAME
    position: str | None = None

    @property
    def policy(self) -> RolePolicy:
        return policy_for(self.role)

    def to_wire(self) -> dict[str, Any]:
        return {
            "userId": self.id,
            "email": self.email,
            "companyId": self.tenant_id,
            "position": self.position,
            "firstName": self.display_name,
            "companyName": self.tenant_name,
            "role": self.role.value,
        }


@dataclass(frozen=True)
class Attachment:
    kind: str
    key: str
    name: str
    mime: str
    size: int

    def to_doc(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "key": self.key,
            "name": self.name,
            "mime": self.mime,
            "size": int(self.size),
        }

    @classmethod
    def from_doc(cls, doc: dict[str, Any] | None) -> Attachment | None:
        if not isinstance(doc, dict):
            return None
        return cls(
            kind=str(doc.get("kind")),
            key=str(doc.get("key")),
            name=str(doc.get("name") or ""),
            mime=str(doc.get("mime") or "application/octet-stream"),
            size=int(doc.get("size") or 0),
        )


def attachment_url(message_id: str, kind: str) -> str:
    if kind == NS_VOICE:
        return f"/api/download/voice/{message_id}"
    return f"/api/download/{message_id}"


@dataclass
class Room:
    room_id: str
    room_name: str
    tenant_id: str
    creator_id: str
    users: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        seen: set[str] = set()
        users: list[str] = []
        for uid in [self.creator_id, *self.users]:
            if uid not in seen:
                seen.add(uid)
                users.append(uid)
        self.users = users

    def has_member(self, principal_id: str) -> bool:
        return principal_id in self.users

    def to_doc(self) -> dict[str, Any]:
        return {
            "roomId": self.room_id,
            "roomName": self.room_name,
            "tenantId": self.tenant_id,
            "creator": self.creator_id,
            "users": list(self.users),
            "createdAt": self.created_at,
        }

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> Room:
        room = cls(
            room_id=str(doc["roomId"]),
            room_name=str(doc.get("roomName") or ""),
            tenant_id=str(doc.get("tenantId") or doc.get("companyId") or ""),
            creator_id=str(doc.get("creator") or ""),
            users=[],
            created_at=_as_utc(doc.get("createdAt")) or utcnow(),
        )
        # Persisted rosters may already have lost the creator; keep them as stored.
        room.users = list(dict.fromkeys(str(u) for u in doc.get("users") or ()))
        return room

    def to_wire(self) -> dict[str, Any]:
        return {
            "roomId": self.room_id,
            "roomName": self.room_name,
            "users": list(self.users),
            "creator": self.creator_id,
        }


@dataclass
class Message:
    id: str
    room_id: str
    tenant_id: str
    author_id: str
    author_display_name: str
    author_tenant_name: str
    body: str
    created_at: datetime = field(default_factory=utcnow)
    edited_at: datetime | None = None
    attachment: Attachment | None = None

    def to_doc(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "_id": self.id,
            "roomId": self.room_id,
            "tenantId": self.tenant_id,
            "authorId": self.author_id,
            "authorDisplayName": self.author_display_name,
            "authorTenantName": self.author_tenant_name,
            "body": self.body,
            "createdAt": self.created_at,
        }
        if self.edited_at is not None:
            doc["editedAt"] = self.edited_at
        if self.attachment is not None:
            doc["attachment"] = self.attachment.to_doc()
        return doc

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> Message:
        return cls(
            id=str(doc["_id"]),
            room_id=str(doc.get("roomId") or ""),
            tenant_id=str(doc.get("tenantId") or ""),
            author_id=str(doc.get("authorId") or ""),
            author_display_name=str(doc.get("authorDisplayName") or ANONYMOUS_NAME),
            author_tenant_name=str(doc.get("authorTenantName") or UNKNOWN_TENANT_NAME),
            body=str(doc.get("body") or ""),
            created_at=_as_utc(doc.get("createdAt")) or utcnow(),
            edited_at=_as_utc(doc.get("editedAt")),
            attachment=Attachment.from_doc(doc.get("attachment")),
        )

    def to_wire(self, *, username: str | None = None) -> dict[str, Any]:
        """Wire shape of a message, using `username` as the shown author name."""
        wire: dict[str, Any] = {
            "_id": self.id,
            "userId": self.author_id,
            "username": username if username is not None else self.author_display_name,
            "message": self.body,
            "roomId": self.room_id,
            "companyId": self.tenant_id,
            "companyName": self.author_tenant_name,
            "timestamp": iso(self.created_at),
            "updatedAt": iso(self.edited_at),
        }
        att = self.attachment
        if att is not None:
            wire[att.kind] = {
                "key": att.key,
                "originalName": att.name,
                "mimeType": att.mime,
                "size": att.size,
                "url": attachment_url(self.id, att.kind),
            }
        return wire


def author_name_for(message: Message, viewer: Principal | None) -> str:
    """Author name as `viewer` may see it.

    Viewers whose role sees tenant-branded authors get the author's tenant
    name for everybody else's messages. Their own messages keep the real name.
    """
    if viewer is None or viewer.id == message.author_id:
        return message.author_display_name
    if viewer.policy.sees_tenant_branded_authors:
        return message.author_tenant_name
    return message.author_display_name
