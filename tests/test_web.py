import asyncio
import json
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketDisconnect

from conftest import ACME, ADA, ALICE, BOB, CARL, make_token
from tenantchat.attachments import UPLOAD_CHUNK_BYTES, read_upload, upload_limit
from tenantchat.config import ChatRuntimeConfig
from tenantchat.constants import NS_VOICE
from tenantchat.envelope import make_request
from tenantchat.errors import ValidationError
from tenantchat.service import ChatService
from tenantchat.util import tenant_room_id
from tenantchat.web import create_app

TENANT_ROOM = tenant_room_id(ACME)


def _auth(pid: str, claim: str = "userId") -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(pid, claim=claim)}"}


@pytest.fixture
def client(config, hub):
    with TestClient(create_app(config, hub)) as c:
        yield c


def test_requests_without_credentials_are_refused(client) -> None:
    r = client.get("/api/user")
    assert r.status_code == 401
    assert r.json() == {"error": "Authentication required"}

    r = client.get("/api/user", headers={"Authorization": "Bearer nonsense"})
    assert r.status_code == 401
    assert r.json() == {"error": "Invalid token"}


def test_current_user(client) -> None:
    r = client.get("/api/user", headers=_auth(ALICE))
    assert r.status_code == 200
    user = r.json()["user"]
    assert user["userId"] == ALICE
    assert user["companyId"] == ACME


def test_token_cookie_is_accepted(client) -> None:
    cookie = f"clientToken={make_token(CARL, claim='clientId')}"
    r = client.get("/api/user", headers={"Cookie": cookie})
    assert r.status_code == 200
    assert r.json()["user"]["userId"] == CARL


def test_company_users_hidden_from_clients(client) -> None:
    r = client.get("/api/companyUsers", headers=_auth(CARL, "clientId"))
    assert r.json() == {"users": []}

    r = client.get("/api/companyUsers", headers=_auth(ALICE))
    ids = sorted(u["userId"] for u in r.json()["users"])
    assert ids == sorted([ALICE, BOB, ADA, CARL])


def test_stats_are_admin_only(client) -> None:
    r = client.get("/api/stats", headers=_auth(ALICE))
    assert r.status_code == 403
    assert r.json() == {"error": "Admin access required"}

    r = client.get("/api/stats", headers=_auth(ADA, "adminId"))
    assert r.status_code == 200
    body = r.json()
    assert "counters" in body
    assert body["report"].startswith("tenantchat ")


def test_websocket_rejects_bad_token(client) -> None:
    with pytest.raises(WebSocketDisconnect) as info:
        with client.websocket_connect("/ws?token=garbage") as ws:
            ws.receive_text()
    assert info.value.code == 4401


def test_websocket_message_flow(client, hub) -> None:
    alice_token = make_token(ALICE)
    bob_token = make_token(BOB)
    with client.websocket_connect(f"/ws?token={alice_token}") as alice:
        with client.websocket_connect(
            "/ws", headers={"Authorization": f"Bearer {bob_token}"}
        ) as bob:
            alice.send_text(json.dumps(make_request("sendMessage", "hi bob")))
            got = bob.receive_json()
            assert got["event"] == "newMessage"
            assert got["data"]["message"] == "hi bob"
            assert got["data"]["userId"] == ALICE
            echo = alice.receive_json()
            assert echo["data"]["_id"] == got["data"]["_id"]

    r = client.get("/api/messages", params={"roomId": TENANT_ROOM}, headers=_auth(BOB))
    assert [m["message"] for m in r.json()["messages"]] == ["hi bob"]
    assert hub.session_manager.get_stats()["total"] == 0


def test_file_upload_download_delete(client) -> None:
    r = client.post(
        "/api/upload",
        headers=_auth(ALICE),
        data={"roomId": TENANT_ROOM},
        files={"file": ("plan.pdf", b"%PDF-1.4 plan", "application/pdf")},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["message"] == "Upload successful"
    message = body["data"]
    assert message["message"] == "plan.pdf"
    assert message["file"]["size"] == len(b"%PDF-1.4 plan")

    r = client.get(f"/api/get/file/{TENANT_ROOM}", headers=_auth(BOB))
    assert [f["_id"] for f in r.json()["files"]] == [message["_id"]]

    r = client.get(f"/api/download/{message['_id']}", headers=_auth(BOB))
    assert r.status_code == 200
    assert r.content == b"%PDF-1.4 plan"
    assert "plan.pdf" in r.headers["content-disposition"]

    r = client.delete(f"/api/delete/file/{message['_id']}", headers=_auth(BOB))
    assert r.status_code == 403
    assert r.json() == {"error": "You can only delete your own files"}

    r = client.delete(f"/api/delete/file/{message['_id']}", headers=_auth(ALICE))
    assert r.json() == {"message": "File deleted", "messageId": message["_id"]}

    r = client.get(f"/api/download/{message['_id']}", headers=_auth(ALICE))
    assert r.status_code == 404


def test_upload_refuses_wrong_type(client) -> None:
    r = client.post(
        "/api/upload/voice",
        headers=_auth(ALICE),
        data={"roomId": TENANT_ROOM},
        files={"voice": ("notes.pdf", b"%PDF", "application/pdf")},
    )
    assert r.status_code == 400
    assert r.json() == {"error": "Only audio files are allowed!"}


def test_delete_room_reports_cascade_counts(client, hub) -> None:
    room = asyncio.run(hub.room_directory.create_room(ACME, ALICE, "Ops", [BOB]))

    r = client.post(
        "/api/upload/voice",
        headers=_auth(BOB),
        data={"roomId": room.room_id},
        files={"voice": ("hello.ogg", b"OggS....", "audio/ogg")},
    )
    assert r.status_code == 200

    r = client.get("/api/rooms", headers=_auth(BOB))
    assert [x["roomId"] for x in r.json()["rooms"]] == [room.room_id]

    r = client.delete(f"/api/delete/room/{room.room_id}", headers=_auth(BOB))
    assert r.status_code == 403
    assert r.json() == {"error": "Only the room creator can delete this room"}

    r = client.delete(f"/api/delete/room/{room.room_id}", headers=_auth(ALICE))
    assert r.status_code == 200
    assert r.json() == {
        "message": "Room deleted successfully",
        "deletedRoomCount": 1,
        "deletedVoiceCount": 1,
        "deletedFileCount": 0,
        "deletedMessageCount": 1,
    }

    r = client.get("/api/rooms", headers=_auth(BOB))
    assert r.json() == {"rooms": []}

    r = client.delete(f"/api/delete/room/{TENANT_ROOM}", headers=_auth(ALICE))
    assert r.status_code == 403


def test_oversize_upload_is_refused_before_it_is_buffered(config, store, monkeypatch) -> None:
    seen: list[int] = []

    def spy_check(cfg, namespace, *, filename, mime, size):
        seen.append(size)

    monkeypatch.setattr("tenantchat.relay.check_upload", spy_check)
    small = replace(config, max_file_bytes=1024)
    with TestClient(create_app(small, ChatService(small, store=store))) as c:
        r = c.post(
            "/api/upload",
            headers=_auth(ALICE),
            data={"roomId": TENANT_ROOM},
            files={"file": ("big.pdf", b"x" * (256 * 1024), "application/pdf")},
        )
    assert r.status_code == 400
    assert r.json() == {"error": "File is too large."}
    assert seen == []


class _ChunkedUpload:
    """An upload of unknown size that counts what was read from it."""

    def __init__(self, total: int) -> None:
        self.size = None
        self.remaining = total
        self.consumed = 0

    async def read(self, n: int = -1) -> bytes:
        n = self.remaining if n < 0 else min(n, self.remaining)
        self.remaining -= n
        self.consumed += n
        return b"v" * n


def test_upload_reader_stops_at_limit_without_declared_size() -> None:
    limit, too_large = upload_limit(ChatRuntimeConfig(), NS_VOICE)
    upload = _ChunkedUpload(limit * 4)
    with pytest.raises(ValidationError) as exc:
        asyncio.run(read_upload(upload, limit, too_large))
    assert exc.value.message == "Voice file is too large."
    assert upload.consumed <= limit + UPLOAD_CHUNK_BYTES

    fits = _ChunkedUpload(1000)
    assert asyncio.run(read_upload(fits, limit, too_large)) == b"v" * 1000
