"""Task approvals and the quorum gate on the review -> done transition."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .conversations import ConversationUser
from .db import get_project_by_id, get_task_by_id, get_user_by_id
from .errors import ApprovalRequiredError, DuplicateApprovalError, NotFoundError, ValidationError
from .models import Project, Task, TaskApproval, TaskStatus, User, utcnow

GATED_FROM = TaskStatus.IN_REVIEW
GATED_TO = TaskStatus.DONE

APPROVAL_UNIQUE_CONSTRAINT = "uq_task_approvals_task_user"


@dataclass(frozen=True)
class ApprovalWithUser:
    task_id: str
    user_id: str
    created_at: datetime
    user: ConversationUser | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "user": self.user.to_dict() if self.user else None,
        }


def is_gated_transition(old_status: str | TaskStatus, new_status: str | TaskStatus) -> bool:
    """Only pending review -> completion is subject to the quorum."""
    return TaskStatus(old_status) is GATED_FROM and TaskStatus(new_status) is GATED_TO


def can_complete(approval_count: int, min_approvals_required: int) -> bool:
    return approval_count >= min_approvals_required


async def approve(session: AsyncSession, task_id: str, user_id: str) -> TaskApproval:
    """Record ``user_id``'s approval of ``task_id``.

    Relies on the (task_id, user_id) unique constraint so that concurrent
    duplicate approvals resolve to exactly one row.
    """
    if await get_task_by_id(session, task_id) is None:
        raise NotFoundError("Task not found")
    if await get_user_by_id(session, user_id) is None:
        raise NotFoundError("User not found")

    try:
        await session.execute(
            insert(TaskApproval).values(task_id=task_id, user_id=user_id, created_at=utcnow())
        )
    except IntegrityError as exc:
        await session.rollback()
        if _is_duplicate_approval(exc):
            raise DuplicateApprovalError() from exc
        # Task or user removed between the existence checks and the insert.
        raise NotFoundError("Task or user not found") from exc

    result = await session.execute(
        select(TaskApproval).where(TaskApproval.task_id == task_id, TaskApproval.user_id == user_id)
    )
    return result.scalar_one()


def _is_duplicate_approval(exc: IntegrityError) -> bool:
    """True when ``exc`` came from the (task_id, user_id) unique constraint.

    PostgreSQL names the constraint; SQLite only lists the columns.
    """
    message = str(exc.orig)
    if APPROVAL_UNIQUE_CONSTRAINT in message:
        return True
    return "UNIQUE constraint failed" in message and "task_approvals.user_id" in message


async def unapprove(session: AsyncSession, task_id: str, user_id: str) -> int:
    """Remove an approval. Returns rows removed (0 or 1); absence is not an error."""
    result = await session.execute(
        delete(TaskApproval).where(TaskApproval.task_id == task_id, TaskApproval.user_id == user_id)
    )
    return result.rowcount


async def count_approvals(session: AsyncSession, task_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(TaskApproval).where(TaskApproval.task_id == task_id)
    )
    return int(result.scalar_one())


async def has_approved(session: AsyncSession, task_id: str, user_id: str) -> bool:
    result = await session.execute(
        select(func.count())
        .select_from(TaskApproval)
        .where(TaskApproval.task_id == task_id, TaskApproval.user_id == user_id)
    )
    return int(result.scalar_one()) >= 1


async def list_approvals(session: AsyncSession, task_id: str) -> list[ApprovalWithUser]:
    """Approvals for a task with the approver projection, oldest first."""
    result = await session.execute(
        select(TaskApproval, User)
        .outerjoin(User, User.id == TaskApproval.user_id)
        .where(TaskApproval.task_id == task_id)
        .order_by(TaskApproval.created_at)
    )
    return [
        ApprovalWithUser(
            task_id=approval.task_id,
            user_id=approval.user_id,
            created_at=approval.created_at,
            user=ConversationUser.from_user(user) if user else None,
        )
        for approval, user in result.all()
    ]


async def transition_task_status(
    session: AsyncSession, task_id: str, new_status: str | TaskStatus
) -> Task:
    """Move a task to ``new_status``, enforcing the approval quorum.

    For review -> done the quorum is part of the UPDATE's WHERE clause, so the
    count is read at the instant of transition rather than beforehand.
    """
    try:
        target = TaskStatus(new_status)
    except ValueError:
        raise ValidationError(f"Invalid task status: {new_status}") from None

    task = await get_task_by_id(session, task_id)
    if task is None:
        raise NotFoundError("Task not found")
    current = task.status

    if not is_gated_transition(current, target):
        result = await session.execute(
            update(Task)
            .where(Task.id == task_id, Task.status == current)
            .values(status=target.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return await _reload_task(session, task_id)
        # Status changed since it was read; decide again against the new one.
        return await transition_task_status(session, task_id, target)

    approval_count = (
        select(func.count())
        .select_from(TaskApproval)
        .where(TaskApproval.task_id == Task.id)
        .correlate(Task)
        .scalar_subquery()
    )
    min_required = (
        select(Project.min_approvals_required)
        .where(Project.id == Task.project_id)
        .correlate(Task)
        .scalar_subquery()
    )
    result = await session.execute(
        update(Task)
        .where(
            and_(
                Task.id == task_id,
                Task.status == GATED_FROM.value,
                approval_count >= min_required,
            )
        )
        .values(status=target.value, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return await _reload_task(session, task_id)

    # Explain the refusal from a fresh read.
    task = await get_task_by_id(session, task_id)
    if task is None:
        raise NotFoundError("Task not found")
    if task.status != GATED_FROM.value:
        # Someone else moved the task first; retry against its new status.
        return await transition_task_status(session, task_id, target)

    project = await get_project_by_id(session, task.project_id)
    required = project.min_approvals_required if project else 0
    raise ApprovalRequiredError(await count_approvals(session, task_id), required)


async def _reload_task(session: AsyncSession, task_id: str) -> Task:
    task = await get_task_by_id(session, task_id)
    if task is None:
        raise NotFoundError("Task not found")
    return task
