"""Conversation service: the operations exposed to the transport layer.

Every operation follows the same order: check the conversation belongs to the
calling workspace, validate the payload, mutate, commit, reload the hydrated
aggregate, publish the matching event and record telemetry. Business-rule
failures come back as an error envelope; ``StorageFailure`` propagates.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
import logging
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from . import approvals, conversations
from .broadcast import ConversationBroadcaster, Subscription
from .config import settings
from .conversations import ConversationWithMessages
from .db import get_project_by_id, get_session, get_task_by_id, get_user_by_id
from .errors import MessageNotFoundError, NotFoundError, ReviewError, ValidationError
from .events import (
    ConversationAutoDeleted,
    ConversationCreated,
    ConversationDeleted,
    ConversationResolved,
    ConversationUnresolved,
    MessageAdded,
    MessageDeleted,
)
from .models import ReviewConversation, Task
from .relay import RedisEventRelay
from .telemetry import Telemetry, default_telemetry

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


def _serialize(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


@dataclass
class ApiResponse:
    """Response envelope shared by every operation."""

    success: bool
    data: Any = None
    error_data: dict[str, Any] | None = None
    message: str | None = None

    @classmethod
    def ok(cls, data: Any = None) -> ApiResponse:
        return cls(success=True, data=data)

    @classmethod
    def error(cls, exc: ReviewError) -> ApiResponse:
        return cls(success=False, error_data=exc.to_payload(), message=str(exc))

    @property
    def error_type(self) -> str | None:
        return self.error_data["type"] if self.error_data else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": _serialize(self.data),
            "error_data": self.error_data,
            "message": self.message,
        }


def _normalize_id(value: str | UUID | None, missing: str = "Conversation not found") -> str:
    """Canonical string form of an identifier; malformed ids are simply not found."""
    try:
        return str(UUID(str(value)))
    except ValueError:
        raise NotFoundError(missing) from None


def _message_id(value: str | UUID) -> str:
    try:
        return str(UUID(str(value)))
    except ValueError:
        raise MessageNotFoundError() from None


def task_to_dict(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "project_id": task.project_id,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "created_at": task.created_at.isoformat(),
        "updated_at": task.updated_at.isoformat(),
    }


class ConversationService:
    def __init__(
        self,
        session_factory: SessionFactory = get_session,
        broadcaster: ConversationBroadcaster | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        self._session = session_factory
        if broadcaster is None:
            relay = RedisEventRelay() if settings.redis_broadcast_enabled else None
            broadcaster = ConversationBroadcaster(relay=relay)
        self.broadcaster = broadcaster
        self.telemetry = telemetry or default_telemetry()

    # -------------------------------------------------------------------------
    # helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _rejected(operation: str, exc: ReviewError) -> ApiResponse:
        logger.debug("%s rejected: %s", operation, exc.to_payload())
        return ApiResponse.error(exc)

    @staticmethod
    async def _scoped(
        session: AsyncSession, workspace_id: str, conversation_id: str
    ) -> ReviewConversation:
        # A conversation in another workspace is reported exactly like a missing one.
        conversation = await conversations.get_conversation(session, conversation_id)
        if conversation is None or conversation.workspace_id != workspace_id:
            raise NotFoundError()
        return conversation

    @staticmethod
    async def _known_user(session: AsyncSession, user_id: str | UUID | None) -> str | None:
        """Callers the user directory does not know act anonymously."""
        if user_id is None:
            return None
        try:
            uid = str(UUID(str(user_id)))
        except ValueError:
            return None
        return uid if await get_user_by_id(session, uid) is not None else None

    @staticmethod
    async def _hydrated(session: AsyncSession, conversation_id: str) -> ConversationWithMessages:
        full = await conversations.load_conversation_with_messages(session, conversation_id)
        if full is None:
            raise NotFoundError()
        return full

    # -------------------------------------------------------------------------
    # reads
    # -------------------------------------------------------------------------

    async def list_conversations(self, workspace_id: str | UUID) -> ApiResponse:
        try:
            workspace = _normalize_id(workspace_id)
        except NotFoundError:
            return ApiResponse.ok([])
        async with self._session() as session:
            items = await conversations.load_conversations_with_messages(session, workspace)
        return ApiResponse.ok(items)

    async def list_unresolved_conversations(self, workspace_id: str | UUID) -> ApiResponse:
        try:
            workspace = _normalize_id(workspace_id)
        except NotFoundError:
            return ApiResponse.ok([])
        async with self._session() as session:
            items = await conversations.load_conversations_with_messages(
                session, workspace, unresolved_only=True
            )
        return ApiResponse.ok(items)

    async def get_conversation(
        self, workspace_id: str | UUID, conversation_id: str | UUID
    ) -> ApiResponse:
        try:
            workspace = _normalize_id(workspace_id)
            cid = _normalize_id(conversation_id)
            async with self._session() as session:
                await self._scoped(session, workspace, cid)
                full = await self._hydrated(session, cid)
        except ReviewError as exc:
            return self._rejected("get_conversation", exc)
        return ApiResponse.ok(full)

    def subscribe(self, workspace_id: str | UUID) -> Subscription:
        """Open a receive handle on the workspace's event stream."""
        return self.broadcaster.subscribe(_normalize_id(workspace_id))

    # -------------------------------------------------------------------------
    # conversation mutations
    # -------------------------------------------------------------------------

    async def create_conversation(
        self,
        workspace_id: str | UUID,
        *,
        file_path: str,
        line_number: int,
        side: str,
        initial_message: str,
        code_line: str | None = None,
        user_id: str | UUID | None = None,
    ) -> ApiResponse:
        try:
            workspace = _normalize_id(workspace_id)
            async with self._session() as session:
                conversation = await conversations.create_conversation(
                    session,
                    workspace,
                    file_path,
                    line_number,
                    side,
                    code_line,
                    initial_message,
                    await self._known_user(session, user_id),
                )
                await session.commit()
                full = await self._hydrated(session, conversation.id)
        except ReviewError as exc:
            return self._rejected("create_conversation", exc)

        await self.broadcaster.publish(workspace, ConversationCreated(full))
        await self.telemetry.record(
            "review_conversation_created",
            {"workspace_id": workspace, "file_path": file_path, "line_number": line_number},
        )
        return ApiResponse.ok({"conversation": full})

    async def add_message(
        self,
        workspace_id: str | UUID,
        conversation_id: str | UUID,
        content: str,
        user_id: str | UUID | None = None,
    ) -> ApiResponse:
        try:
            workspace = _normalize_id(workspace_id)
            cid = _normalize_id(conversation_id)
            if not content or not content.strip():
                raise ValidationError("Message content cannot be empty")
            async with self._session() as session:
                await self._scoped(session, workspace, cid)
                author = await self._known_user(session, user_id)
                await conversations.add_message(session, cid, content, author)
                await session.commit()
                full = await self._hydrated(session, cid)
        except ReviewError as exc:
            return self._rejected("add_message", exc)

        await self.broadcaster.publish(workspace, MessageAdded(full))
        await self.telemetry.record(
            "review_conversation_message_added",
            {"workspace_id": workspace, "conversation_id": cid},
        )
        return ApiResponse.ok({"conversation": full})

    async def resolve_conversation(
        self,
        workspace_id: str | UUID,
        conversation_id: str | UUID,
        summary: str,
        user_id: str | UUID | None = None,
    ) -> ApiResponse:
        try:
            workspace = _normalize_id(workspace_id)
            cid = _normalize_id(conversation_id)
            async with self._session() as session:
                await self._scoped(session, workspace, cid)
                await conversations.resolve_conversation(
                    session, cid, summary, await self._known_user(session, user_id)
                )
                await session.commit()
                full = await self._hydrated(session, cid)
        except ReviewError as exc:
            return self._rejected("resolve_conversation", exc)

        await self.broadcaster.publish(workspace, ConversationResolved(full))
        await self.telemetry.record(
            "review_conversation_resolved",
            {"workspace_id": workspace, "conversation_id": cid},
        )
        return ApiResponse.ok({"conversation": full})

    async def unresolve_conversation(
        self, workspace_id: str | UUID, conversation_id: str | UUID
    ) -> ApiResponse:
        try:
            workspace = _normalize_id(workspace_id)
            cid = _normalize_id(conversation_id)
            async with self._session() as session:
                await self._scoped(session, workspace, cid)
                await conversations.unresolve_conversation(session, cid)
                await session.commit()
                full = await self._hydrated(session, cid)
        except ReviewError as exc:
            return self._rejected("unresolve_conversation", exc)

        await self.broadcaster.publish(workspace, ConversationUnresolved(full))
        await self.telemetry.record(
            "review_conversation_unresolved",
            {"workspace_id": workspace, "conversation_id": cid},
        )
        return ApiResponse.ok({"conversation": full})

    async def delete_conversation(
        self, workspace_id: str | UUID, conversation_id: str | UUID
    ) -> ApiResponse:
        try:
            workspace = _normalize_id(workspace_id)
            cid = _normalize_id(conversation_id)
            async with self._session() as session:
                await self._scoped(session, workspace, cid)
                await conversations.delete_conversation(session, cid)
        except ReviewError as exc:
            return self._rejected("delete_conversation", exc)

        await self.broadcaster.publish(workspace, ConversationDeleted(conversation_id=cid))
        await self.telemetry.record(
            "review_conversation_deleted",
            {"workspace_id": workspace, "conversation_id": cid},
        )
        return ApiResponse.ok()

    async def delete_message(
        self,
        workspace_id: str | UUID,
        conversation_id: str | UUID,
        message_id: str | UUID,
    ) -> ApiResponse:
        """Delete a message.

        Removing the last message deletes the conversation; the caller then
        gets a ``not_found`` envelope and subscribers get
        ``conversation_auto_deleted``.
        """
        try:
            workspace = _normalize_id(workspace_id)
            cid = _normalize_id(conversation_id)
            async with self._session() as session:
                await self._scoped(session, workspace, cid)
                mid = _message_id(message_id)
                conversation_deleted = await conversations.delete_message(session, cid, mid)
                await session.commit()
                full = None if conversation_deleted else await self._hydrated(session, cid)
        except ReviewError as exc:
            return self._rejected("delete_message", exc)

        if full is None:
            await self.broadcaster.publish(workspace, ConversationAutoDeleted(conversation_id=cid))
            return ApiResponse.error(NotFoundError())

        await self.broadcaster.publish(workspace, MessageDeleted(full))
        return ApiResponse.ok(full)

    # -------------------------------------------------------------------------
    # approvals
    # -------------------------------------------------------------------------

    async def approve_task(self, task_id: str | UUID, user_id: str | UUID | None) -> ApiResponse:
        try:
            if user_id is None:
                raise ValidationError("Approving a task requires an authenticated user")
            tid = _normalize_id(task_id, "Task not found")
            uid = _normalize_id(user_id, "User not found")
            async with self._session() as session:
                await approvals.approve(session, tid, uid)
                count = await approvals.count_approvals(session, tid)
        except ReviewError as exc:
            return self._rejected("approve_task", exc)

        await self.telemetry.record("task_approved", {"task_id": tid, "user_id": uid})
        return ApiResponse.ok({"task_id": tid, "approval_count": count})

    async def unapprove_task(self, task_id: str | UUID, user_id: str | UUID | None) -> ApiResponse:
        try:
            if user_id is None:
                raise ValidationError("Removing an approval requires an authenticated user")
            tid = _normalize_id(task_id, "Task not found")
            uid = _normalize_id(user_id, "User not found")
            async with self._session() as session:
                removed = await approvals.unapprove(session, tid, uid)
                count = await approvals.count_approvals(session, tid)
        except ReviewError as exc:
            return self._rejected("unapprove_task", exc)

        if removed:
            await self.telemetry.record("task_unapproved", {"task_id": tid, "user_id": uid})
        return ApiResponse.ok({"task_id": tid, "removed": removed, "approval_count": count})

    async def approval_count(self, task_id: str | UUID) -> ApiResponse:
        try:
            tid = _normalize_id(task_id, "Task not found")
            async with self._session() as session:
                task = await get_task_by_id(session, tid)
                if task is None:
                    raise NotFoundError("Task not found")
                project = await get_project_by_id(session, task.project_id)
                count = await approvals.count_approvals(session, tid)
        except ReviewError as exc:
            return self._rejected("approval_count", exc)

        required = project.min_approvals_required if project else 0
        return ApiResponse.ok(
            {
                "task_id": tid,
                "approval_count": count,
                "min_approvals_required": required,
                "can_complete": approvals.can_complete(count, required),
            }
        )

    async def list_approvers(self, task_id: str | UUID) -> ApiResponse:
        try:
            tid = _normalize_id(task_id, "Task not found")
            async with self._session() as session:
                items = await approvals.list_approvals(session, tid)
        except ReviewError as exc:
            return self._rejected("list_approvers", exc)
        return ApiResponse.ok(items)

    async def update_task_status(self, task_id: str | UUID, status: str) -> ApiResponse:
        try:
            tid = _normalize_id(task_id, "Task not found")
            async with self._session() as session:
                task = await approvals.transition_task_status(session, tid, status)
                data = task_to_dict(task)
        except ReviewError as exc:
            return self._rejected("update_task_status", exc)
        return ApiResponse.ok(data)
