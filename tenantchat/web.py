"""HTTP and WebSocket surface.

`create_app` wires a `ChatService` into a FastAPI application: one
WebSocket endpoint at `/ws` and the REST routes under `/api`. Both resolve
the caller through the same `IdentityResolver`.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import quote

from fastapi import APIRouter, Depends, FastAPI, File, Form, Query, Request, UploadFile, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.websockets import WebSocketDisconnect

from . import __version__
from .config import ChatRuntimeConfig
from .attachments import read_upload, upload_limit
from .constants import NS_FILE, NS_VOICE, WS_CLOSE_UNAUTHORIZED
from .errors import ChatError, Unauthorized
from .identity import extract_credential
from .models import Principal
from .service import ChatService

log = logging.getLogger("tenantchat.web")


def _hub(request: Request) -> ChatService:
    return request.app.state.hub


async def current_principal(request: Request) -> Principal:
    hub = _hub(request)
    credential = extract_credential(
        headers=request.headers,
        query=request.query_params,
        cookies=request.cookies,
    )
    return await hub.authenticate(credential)


def _download(attachment, data: bytes) -> Response:
    disposition = f"attachment; filename*=UTF-8''{quote(attachment.name or attachment.key)}"
    return Response(
        content=data,
        media_type=attachment.mime,
        headers={"Content-Disposition": disposition},
    )


def build_api_router() -> APIRouter:
    api = APIRouter(prefix="/api")

    @api.get("/user")
    async def get_user(principal: Principal = Depends(current_principal)) -> dict[str, Any]:
        return {"user": principal.to_wire()}

    @api.get("/companyUsers")
    async def company_users(
        request: Request, principal: Principal = Depends(current_principal)
    ) -> dict[str, Any]:
        users = await _hub(request).list_company_users(principal)
        return {"users": users}

    @api.get("/rooms")
    async def list_rooms(
        request: Request, principal: Principal = Depends(current_principal)
    ) -> dict[str, Any]:
        rooms = await _hub(request).list_rooms(principal)
        return {"rooms": [r.to_wire() for r in rooms]}

    @api.get("/messages")
    async def list_messages(
        request: Request,
        roomId: str | None = Query(default=None),
        principal: Principal = Depends(current_principal),
    ) -> dict[str, Any]:
        messages = await _hub(request).relay.history(principal, roomId)
        return {"messages": messages}

    @api.delete("/delete/room/{room_id}")
    async def delete_room(
        room_id: str, request: Request, principal: Principal = Depends(current_principal)
    ) -> dict[str, Any]:
        hub = _hub(request)
        result = await hub.dispatch(
            lambda out: hub.lifecycle.delete_room(principal, room_id, out)
        )
        return result.to_wire()

    async def _upload(
        request: Request, principal: Principal, upload: UploadFile, room_id: str, namespace: str
    ) -> dict[str, Any]:
        hub = _hub(request)
        limit, too_large = upload_limit(hub.config, namespace)
        data = await read_upload(upload, limit, too_large)
        message = await hub.dispatch(
            lambda out: hub.relay.post_attachment(
                principal,
                room_id,
                namespace,
                filename=upload.filename or "",
                mime=upload.content_type,
                data=data,
                outgoing=out,
            )
        )
        return {"message": "Upload successful", "data": message.to_wire()}

    @api.post("/upload")
    async def upload_file(
        request: Request,
        file: UploadFile = File(...),
        roomId: str = Form(...),
        principal: Principal = Depends(current_principal),
    ) -> dict[str, Any]:
        return await _upload(request, principal, file, roomId, NS_FILE)

    @api.post("/upload/voice")
    async def upload_voice(
        request: Request,
        voice: UploadFile = File(...),
        roomId: str = Form(...),
        principal: Principal = Depends(current_principal),
    ) -> dict[str, Any]:
        return await _upload(request, principal, voice, roomId, NS_VOICE)

    @api.get("/download/voice/{message_id}")
    async def download_voice(
        message_id: str, request: Request, principal: Principal = Depends(current_principal)
    ) -> Response:
        attachment, data = await _hub(request).relay.open_attachment(
            principal, message_id, NS_VOICE
        )
        return _download(attachment, data)

    @api.get("/download/{message_id}")
    async def download_file(
        message_id: str, request: Request, principal: Principal = Depends(current_principal)
    ) -> Response:
        attachment, data = await _hub(request).relay.open_attachment(
            principal, message_id, NS_FILE
        )
        return _download(attachment, data)

    async def _delete_attachment(
        request: Request, principal: Principal, message_id: str, namespace: str
    ) -> dict[str, Any]:
        hub = _hub(request)
        message = await hub.dispatch(
            lambda out: hub.relay.delete_attachment(principal, message_id, namespace, out)
        )
        return {"message": f"{namespace.capitalize()} deleted", "messageId": message.id}

    @api.delete("/delete/file/{message_id}")
    async def delete_file(
        message_id: str, request: Request, principal: Principal = Depends(current_principal)
    ) -> dict[str, Any]:
        return await _delete_attachment(request, principal, message_id, NS_FILE)

    @api.delete("/delete/voice/{message_id}")
    async def delete_voice(
        message_id: str, request: Request, principal: Principal = Depends(current_principal)
    ) -> dict[str, Any]:
        return await _delete_attachment(request, principal, message_id, NS_VOICE)

    @api.get("/get/file/{room_id}")
    async def room_files(
        room_id: str, request: Request, principal: Principal = Depends(current_principal)
    ) -> dict[str, Any]:
        files = await _hub(request).relay.attachment_history(principal, room_id, NS_FILE)
        return {"files": files}

    @api.get("/get/voice/{room_id}")
    async def room_voices(
        room_id: str, request: Request, principal: Principal = Depends(current_principal)
    ) -> dict[str, Any]:
        voices = await _hub(request).relay.attachment_history(principal, room_id, NS_VOICE)
        return {"voices": voices}

    @api.get("/stats")
    async def stats(
        request: Request, principal: Principal = Depends(current_principal)
    ) -> dict[str, Any]:
        hub = _hub(request)
        hub.require_admin(principal)
        return {**hub.stats_manager.snapshot(), "report": hub.stats_manager.format_stats()}

    return api


async def websocket_endpoint(websocket: WebSocket) -> None:
    hub: ChatService = websocket.app.state.hub
    credential = extract_credential(
        headers=websocket.headers,
        query=websocket.query_params,
        cookies=websocket.cookies,
    )
    try:
        principal = await hub.authenticate(credential)
    except Unauthorized as e:
        # The close code only reaches the client after the handshake completes.
        await websocket.accept()
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED, reason=e.message)
        return

    await websocket.accept()
    conn = await hub.on_connect(principal, websocket)
    try:
        while True:
            msg = await websocket.receive()
            if msg.get("type") == "websocket.disconnect":
                break
            data = msg.get("bytes")
            if data is None:
                data = msg.get("text")
            if data is None:
                continue
            await hub.on_frame(conn, data)
    except WebSocketDisconnect:
        pass
    finally:
        await hub.on_close(conn)


def create_app(config: ChatRuntimeConfig, hub: ChatService | None = None) -> FastAPI:
    hub = hub if hub is not None else ChatService(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await hub.start()
        try:
            yield
        finally:
            await hub.stop()

    app = FastAPI(title="tenantchat", version=__version__, lifespan=lifespan)
    app.state.hub = hub

    if config.allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(config.allowed_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        if exc.status >= 500:
            log.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            log.info(
                "%s %s refused status=%s: %s",
                request.method,
                request.url.path,
                exc.status,
                exc.message,
            )
        return JSONResponse({"error": exc.message}, status_code=exc.status)

    app.include_router(build_api_router())
    app.add_api_websocket_route("/ws", websocket_endpoint)
    return app
