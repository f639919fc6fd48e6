"""Document store collaborator.

`ChatStore` is the only persistence API the core uses. `MemoryStore` keeps
everything in process (development and tests); `MongoStore` talks to MongoDB
through pymongo's asyncio client.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from .config import ChatRuntimeConfig
from .constants import COLL_MESSAGES, COLL_ROOMS, COLL_TENANTS
from .errors import DependencyFailure
from .models import Message, Room


class ChatStore(ABC):
    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # rooms

    @abstractmethod
    async def insert_room(self, room: Room) -> None: ...

    @abstractmethod
    async def find_room(self, room_id: str) -> Room | None: ...

    @abstractmethod
    async def find_rooms_for_principal(
        self, principal_id: str, tenant_id: str | None = None
    ) -> list[Room]: ...

    @abstractmethod
    async def pull_room_member(self, room_id: str, principal_id: str) -> Room | None:
        """Remove one id from a room roster and return the updated room."""

    @abstractmethod
    async def delete_room(self, room_id: str) -> int: ...

    # messages

    @abstractmethod
    async def insert_message(self, message: Message) -> None: ...

    @abstractmethod
    async def find_message(
        self, message_id: str, room_id: str | None = None
    ) -> Message | None: ...

    @abstractmethod
    async def update_message_body(
        self, message_id: str, room_id: str, body: str, edited_at: datetime
    ) -> bool: ...

    @abstractmethod
    async def delete_message(self, message_id: str, room_id: str) -> int: ...

    @abstractmethod
    async def list_messages(
        self, room_id: str, *, kind: str | None = None, newest_first: bool = False
    ) -> list[Message]: ...

    @abstractmethod
    async def delete_messages_for_room(self, room_id: str) -> int: ...

    # principals (read-only)

    @abstractmethod
    async def find_principal_doc(
        self, collection: str, principal_id: str
    ) -> dict[str, Any] | None: ...

    @abstractmethod
    async def find_principal_docs(
        self, collection: str, principal_ids: list[str], tenant_id: str
    ) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def list_principal_docs(
        self, collection: str, tenant_id: str
    ) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def find_tenant_name(self, tenant_id: str) -> str | None: ...


def tenant_name_from_doc(doc: dict[str, Any] | None) -> str | None:
    if not isinstance(doc, dict):
        return None
    info = doc.get("companyInfo")
    if isinstance(info, dict) and isinstance(info.get("companyName"), str):
        return info["companyName"] or None
    name = doc.get("companyName")
    return name if isinstance(name, str) and name else None


class MemoryStore(ChatStore):
    """In-process store. Rooms and messages keep insertion order."""

    def __init__(self) -> None:
        self.log = logging.getLogger("tenantchat.store")
        self._rooms: dict[str, dict[str, Any]] = {}
        self._messages: dict[str, dict[str, Any]] = {}
        self._principals: dict[str, dict[str, dict[str, Any]]] = {}
        self._tenants: dict[str, dict[str, Any]] = {}

    def add_principal(self, collection: str, doc: dict[str, Any]) -> None:
        """Seed a principal document (`_id`, `companyId`, `firstName`, ...)."""
        d = copy.deepcopy(doc)
        d["_id"] = str(d["_id"])
        if d.get("companyId") is not None:
            d["companyId"] = str(d["companyId"])
        self._principals.setdefault(collection, {})[d["_id"]] = d

    def add_tenant(self, tenant_id: str, company_name: str) -> None:
        self._tenants[str(tenant_id)] = {
            "_id": str(tenant_id),
            "companyInfo": {"companyName": company_name},
        }

    async def insert_room(self, room: Room) -> None:
        if room.room_id in self._rooms:
            raise DependencyFailure(f"duplicate room id {room.room_id}")
        self._rooms[room.room_id] = copy.deepcopy(room.to_doc())

    async def find_room(self, room_id: str) -> Room | None:
        doc = self._rooms.get(room_id)
        return Room.from_doc(copy.deepcopy(doc)) if doc else None

    async def find_rooms_for_principal(
        self, principal_id: str, tenant_id: str | None = None
    ) -> list[Room]:
        out: list[Room] = []
        for doc in self._rooms.values():
            if principal_id not in doc.get("users", ()):
                continue
            if tenant_id is not None and str(doc.get("tenantId")) != str(tenant_id):
                continue
            out.append(Room.from_doc(copy.deepcopy(doc)))
        return out

    async def pull_room_member(self, room_id: str, principal_id: str) -> Room | None:
        doc = self._rooms.get(room_id)
        if doc is None:
            return None
        doc["users"] = [u for u in doc.get("users", ()) if u != principal_id]
        return Room.from_doc(copy.deepcopy(doc))

    async def delete_room(self, room_id: str) -> int:
        return 1 if self._rooms.pop(room_id, None) is not None else 0

    async def insert_message(self, message: Message) -> None:
        if message.id in self._messages:
            raise DependencyFailure(f"duplicate message id {message.id}")
        self._messages[message.id] = copy.deepcopy(message.to_doc())

    async def find_message(
        self, message_id: str, room_id: str | None = None
    ) -> Message | None:
        doc = self._messages.get(message_id)
        if doc is None:
            return None
        if room_id is not None and doc.get("roomId") != room_id:
            return None
        return Message.from_doc(copy.deepcopy(doc))

    async def update_message_body(
        self, message_id: str, room_id: str, body: str, edited_at: datetime
    ) -> bool:
        doc = self._messages.get(message_id)
        if doc is None or doc.get("roomId") != room_id:
            return False
        doc["body"] = body
        doc["editedAt"] = edited_at
        return True

    async def delete_message(self, message_id: str, room_id: str) -> int:
        doc = self._messages.get(message_id)
        if doc is None or doc.get("roomId") != room_id:
            return 0
        del self._messages[message_id]
        return 1

    async def list_messages(
        self, room_id: str, *, kind: str | None = None, newest_first: bool = False
    ) -> list[Message]:
        out = []
        for doc in self._messages.values():
            if doc.get("roomId") != room_id:
                continue
            if kind is not None and (doc.get("attachment") or {}).get("kind") != kind:
                continue
            out.append(Message.from_doc(copy.deepcopy(doc)))
        if newest_first:
            out.reverse()
        return out

    async def delete_messages_for_room(self, room_id: str) -> int:
        doomed = [k for k, d in self._messages.items() if d.get("roomId") == room_id]
        for k in doomed:
            del self._messages[k]
        return len(doomed)

    async def find_principal_doc(
        self, collection: str, principal_id: str
    ) -> dict[str, Any] | None:
        doc = self._principals.get(collection, {}).get(str(principal_id))
        return copy.deepcopy(doc) if doc else None

    async def find_principal_docs(
        self, collection: str, principal_ids: list[str], tenant_id: str
    ) -> list[dict[str, Any]]:
        wanted = {str(p) for p in principal_ids}
        return [
            copy.deepcopy(d)
            for pid, d in self._principals.get(collection, {}).items()
            if pid in wanted and str(d.get("companyId")) == str(tenant_id)
        ]

    async def list_principal_docs(
        self, collection: str, tenant_id: str
    ) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(d)
            for d in self._principals.get(collection, {}).values()
            if str(d.get("companyId")) == str(tenant_id)
        ]

    async def find_tenant_name(self, tenant_id: str) -> str | None:
        return tenant_name_from_doc(self._tenants.get(str(tenant_id)))


class MongoStore(ChatStore):
    """MongoDB-backed store.

    Principal and tenant ids are ObjectIds in the principal collections;
    message ids are stored as ObjectIds and surfaced as hex strings.
    """

    def __init__(self, uri: str, db_name: str) -> None:
        self.log = logging.getLogger("tenantchat.store")
        self.uri = uri
        self.db_name = db_name
        self._client = None
        self._db = None

    async def open(self) -> None:
        from pymongo import AsyncMongoClient

        self._client = AsyncMongoClient(self.uri, tz_aware=True)
        self._db = self._client[self.db_name]
        async with self._guard("ping"):
            await self._client.admin.command("ping")
        self.log.info("Connected to MongoDB db=%s", self.db_name)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
        self._client = None
        self._db = None

    @asynccontextmanager
    async def _guard(self, op: str):
        from pymongo.errors import PyMongoError

        try:
            yield
        except PyMongoError as e:
            self.log.warning("MongoDB %s failed: %s", op, e, exc_info=True)
            raise DependencyFailure(f"database error during {op}") from e

    def _coll(self, name: str):
        if self._db is None:
            raise DependencyFailure("database not connected")
        return self._db[name]

    @staticmethod
    def _oid(value: str):
        from bson import ObjectId

        return ObjectId(value) if ObjectId.is_valid(str(value)) else value

    @classmethod
    def _id_variants(cls, value: str) -> list:
        oid = cls._oid(value)
        return [oid, str(value)] if oid != value else [value]

    @staticmethod
    def _message_from_doc(doc: dict[str, Any]) -> Message:
        doc = dict(doc)
        doc["_id"] = str(doc["_id"])
        return Message.from_doc(doc)

    @staticmethod
    def _principal_doc(doc: dict[str, Any]) -> dict[str, Any]:
        doc = dict(doc)
        doc["_id"] = str(doc["_id"])
        if doc.get("companyId") is not None:
            doc["companyId"] = str(doc["companyId"])
        return doc

    async def insert_room(self, room: Room) -> None:
        async with self._guard("insert_room"):
            await self._coll(COLL_ROOMS).insert_one(room.to_doc())

    async def find_room(self, room_id: str) -> Room | None:
        async with self._guard("find_room"):
            doc = await self._coll(COLL_ROOMS).find_one({"roomId": room_id})
        return Room.from_doc(doc) if doc else None

    async def find_rooms_for_principal(
        self, principal_id: str, tenant_id: str | None = None
    ) -> list[Room]:
        query: dict[str, Any] = {"users": principal_id}
        if tenant_id is not None:
            query["tenantId"] = tenant_id
        async with self._guard("find_rooms_for_principal"):
            docs = await self._coll(COLL_ROOMS).find(query).to_list()
        return [Room.from_doc(d) for d in docs]

    async def pull_room_member(self, room_id: str, principal_id: str) -> Room | None:
        from pymongo import ReturnDocument

        async with self._guard("pull_room_member"):
            doc = await self._coll(COLL_ROOMS).find_one_and_update(
                {"roomId": room_id},
                {"$pull": {"users": principal_id}},
                return_document=ReturnDocument.AFTER,
            )
        return Room.from_doc(doc) if doc else None

    async def delete_room(self, room_id: str) -> int:
        async with self._guard("delete_room"):
            result = await self._coll(COLL_ROOMS).delete_one({"roomId": room_id})
        return int(result.deleted_count)

    async def insert_message(self, message: Message) -> None:
        doc = message.to_doc()
        doc["_id"] = self._oid(message.id)
        async with self._guard("insert_message"):
            await self._coll(COLL_MESSAGES).insert_one(doc)

    async def find_message(
        self, message_id: str, room_id: str | None = None
    ) -> Message | None:
        query: dict[str, Any] = {"_id": self._oid(message_id)}
        if room_id is not None:
            query["roomId"] = room_id
        async with self._guard("find_message"):
            doc = await self._coll(COLL_MESSAGES).find_one(query)
        return self._message_from_doc(doc) if doc else None

    async def update_message_body(
        self, message_id: str, room_id: str, body: str, edited_at: datetime
    ) -> bool:
        async with self._guard("update_message_body"):
            result = await self._coll(COLL_MESSAGES).update_one(
                {"_id": self._oid(message_id), "roomId": room_id},
                {"$set": {"body": body, "editedAt": edited_at}},
            )
        return result.matched_count > 0

    async def delete_message(self, message_id: str, room_id: str) -> int:
        async with self._guard("delete_message"):
            result = await self._coll(COLL_MESSAGES).delete_one(
                {"_id": self._oid(message_id), "roomId": room_id}
            )
        return int(result.deleted_count)

    async def list_messages(
        self, room_id: str, *, kind: str | None = None, newest_first: bool = False
    ) -> list[Message]:
        query: dict[str, Any] = {"roomId": room_id}
        if kind is not None:
            query["attachment.kind"] = kind
        direction = -1 if newest_first else 1
        async with self._guard("list_messages"):
            cursor = self._coll(COLL_MESSAGES).find(query).sort(
                [("createdAt", direction), ("_id", direction)]
            )
            docs = await cursor.to_list()
        return [self._message_from_doc(d) for d in docs]

    async def delete_messages_for_room(self, room_id: str) -> int:
        async with self._guard("delete_messages_for_room"):
            result = await self._coll(COLL_MESSAGES).delete_many({"roomId": room_id})
        return int(result.deleted_count)

    async def find_principal_doc(
        self, collection: str, principal_id: str
    ) -> dict[str, Any] | None:
        async with self._guard("find_principal_doc"):
            doc = await self._coll(collection).find_one(
                {"_id": self._oid(principal_id)}
            )
        return self._principal_doc(doc) if doc else None

    async def find_principal_docs(
        self, collection: str, principal_ids: list[str], tenant_id: str
    ) -> list[dict[str, Any]]:
        ids = [self._oid(p) for p in principal_ids]
        async with self._guard("find_principal_docs"):
            docs = await self._coll(collection).find(
                {"_id": {"$in": ids}, "companyId": {"$in": self._id_variants(tenant_id)}}
            ).to_list()
        return [self._principal_doc(d) for d in docs]

    async def list_principal_docs(
        self, collection: str, tenant_id: str
    ) -> list[dict[str, Any]]:
        projection = {
            "_id": 1,
            "firstName": 1,
            "name": 1,
            "fullName": 1,
            "email": 1,
            "position": 1,
            "companyId": 1,
        }
        async with self._guard("list_principal_docs"):
            docs = await self._coll(collection).find(
                {"companyId": {"$in": self._id_variants(tenant_id)}}, projection
            ).to_list()
        return [self._principal_doc(d) for d in docs]

    async def find_tenant_name(self, tenant_id: str) -> str | None:
        async with self._guard("find_tenant_name"):
            doc = await self._coll(COLL_TENANTS).find_one(
                {"_id": self._oid(tenant_id)},
                {"companyInfo.companyName": 1, "companyName": 1},
            )
        return tenant_name_from_doc(doc)


def build_store(config: ChatRuntimeConfig) -> ChatStore:
    if config.mongo_uri:
        return MongoStore(config.mongo_uri, config.mongo_db)
    return MemoryStore()
