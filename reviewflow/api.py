"""HTTP and WebSocket transport for the conversation service.

Business-rule failures travel inside the response envelope with HTTP 200;
only storage failures change the status code.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import logging
from typing import Any

from fastapi import FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .broadcast import ConversationBroadcaster, Subscription
from .config import settings
from .db import init_db
from .errors import NotFoundError, StorageFailure
from .service import ConversationService

_log = logging.getLogger(__name__)


class CreateConversationRequest(BaseModel):
    file_path: str
    line_number: int
    side: str
    initial_message: str
    code_line: str | None = Field(default=None)


class AddMessageRequest(BaseModel):
    content: str


class ResolveConversationRequest(BaseModel):
    summary: str = Field(default="")


class UpdateTaskStatusRequest(BaseModel):
    status: str


def _storage_failure_payload(exc: StorageFailure) -> dict[str, Any]:
    return {
        "success": False,
        "data": None,
        "error_data": {"type": "storage_failure"},
        "message": str(exc),
    }


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    async for payload in subscription:
        try:
            await websocket.send_text(payload)
        except (WebSocketDisconnect, RuntimeError):
            return


async def _sweep_idle_channels(broadcaster: ConversationBroadcaster, idle_seconds: float) -> None:
    """Every ``idle_seconds``, drop channels unused for at least that long."""
    while True:
        await asyncio.sleep(idle_seconds)
        evicted = broadcaster.evict_idle(idle_seconds)
        if evicted:
            _log.debug("evicted %d idle workspace channel(s)", evicted)


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


def create_app(
    service: ConversationService | None = None,
    *,
    init_schema: bool = False,
    idle_seconds: float | None = None,
) -> FastAPI:
    service = service or ConversationService()
    if idle_seconds is None:
        idle_seconds = settings.broadcast_idle_seconds

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if init_schema:
            await init_db()
        sweeper = asyncio.create_task(_sweep_idle_channels(service.broadcaster, idle_seconds))
        try:
            yield
        finally:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)
            service.broadcaster.evict_idle(idle_seconds)

    app = FastAPI(title="reviewflow api", version=__version__, lifespan=lifespan)
    app.state.service = service

    @app.exception_handler(StorageFailure)
    async def handle_storage_failure(request: Request, exc: StorageFailure):  # noqa: ARG001
        _log.error("storage failure on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=503, content=_storage_failure_payload(exc))

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "channels": service.broadcaster.channel_count(),
        }

    # -------------------------------------------------------------------------
    # conversations
    # -------------------------------------------------------------------------

    @app.get("/workspaces/{workspace_id}/conversations")
    async def list_conversations(workspace_id: str) -> dict[str, Any]:
        return (await service.list_conversations(workspace_id)).to_dict()

    @app.get("/workspaces/{workspace_id}/conversations/unresolved")
    async def list_unresolved_conversations(workspace_id: str) -> dict[str, Any]:
        return (await service.list_unresolved_conversations(workspace_id)).to_dict()

    @app.websocket("/workspaces/{workspace_id}/conversations/ws")
    async def stream_conversation_events(websocket: WebSocket, workspace_id: str) -> None:
        try:
            subscription = service.subscribe(workspace_id)
        except NotFoundError:
            await websocket.close(code=1008)
            return

        try:
            await websocket.accept()
            pump = asyncio.create_task(_pump(websocket, subscription))
            watcher = asyncio.create_task(_wait_for_disconnect(websocket))
            done, pending = await asyncio.wait(
                {pump, watcher}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                exc = task.exception()
                if exc is not None and not isinstance(exc, WebSocketDisconnect):
                    _log.warning("event stream for workspace %s ended: %s", workspace_id, exc)
        finally:
            subscription.close()

    @app.post("/workspaces/{workspace_id}/conversations")
    async def create_conversation(
        workspace_id: str,
        body: CreateConversationRequest,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        response = await service.create_conversation(
            workspace_id,
            file_path=body.file_path,
            line_number=body.line_number,
            side=body.side,
            initial_message=body.initial_message,
            code_line=body.code_line,
            user_id=x_user_id,
        )
        return response.to_dict()

    @app.get("/workspaces/{workspace_id}/conversations/{conversation_id}")
    async def get_conversation(workspace_id: str, conversation_id: str) -> dict[str, Any]:
        return (await service.get_conversation(workspace_id, conversation_id)).to_dict()

    @app.delete("/workspaces/{workspace_id}/conversations/{conversation_id}")
    async def delete_conversation(workspace_id: str, conversation_id: str) -> dict[str, Any]:
        return (await service.delete_conversation(workspace_id, conversation_id)).to_dict()

    @app.post("/workspaces/{workspace_id}/conversations/{conversation_id}/messages")
    async def add_message(
        workspace_id: str,
        conversation_id: str,
        body: AddMessageRequest,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        response = await service.add_message(
            workspace_id, conversation_id, body.content, user_id=x_user_id
        )
        return response.to_dict()

    @app.delete("/workspaces/{workspace_id}/conversations/{conversation_id}/messages/{message_id}")
    async def delete_message(
        workspace_id: str, conversation_id: str, message_id: str
    ) -> dict[str, Any]:
        response = await service.delete_message(workspace_id, conversation_id, message_id)
        return response.to_dict()

    @app.post("/workspaces/{workspace_id}/conversations/{conversation_id}/resolve")
    async def resolve_conversation(
        workspace_id: str,
        conversation_id: str,
        body: ResolveConversationRequest,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        response = await service.resolve_conversation(
            workspace_id, conversation_id, body.summary, user_id=x_user_id
        )
        return response.to_dict()

    @app.post("/workspaces/{workspace_id}/conversations/{conversation_id}/unresolve")
    async def unresolve_conversation(workspace_id: str, conversation_id: str) -> dict[str, Any]:
        return (await service.unresolve_conversation(workspace_id, conversation_id)).to_dict()

    # -------------------------------------------------------------------------
    # approvals
    # -------------------------------------------------------------------------

    @app.get("/tasks/{task_id}/approvals")
    async def list_approvers(task_id: str) -> dict[str, Any]:
        return (await service.list_approvers(task_id)).to_dict()

    @app.get("/tasks/{task_id}/approvals/count")
    async def approval_count(task_id: str) -> dict[str, Any]:
        return (await service.approval_count(task_id)).to_dict()

    @app.post("/tasks/{task_id}/approvals")
    async def approve_task(
        task_id: str, x_user_id: str | None = Header(default=None)
    ) -> dict[str, Any]:
        return (await service.approve_task(task_id, x_user_id)).to_dict()

    @app.delete("/tasks/{task_id}/approvals")
    async def unapprove_task(
        task_id: str, x_user_id: str | None = Header(default=None)
    ) -> dict[str, Any]:
        return (await service.unapprove_task(task_id, x_user_id)).to_dict()

    @app.put("/tasks/{task_id}/status")
    async def update_task_status(task_id: str, body: UpdateTaskStatusRequest) -> dict[str, Any]:
        return (await service.update_task_status(task_id, body.status)).to_dict()

    return app
