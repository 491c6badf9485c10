"""Error types and helpers for the review workflow."""

from __future__ import annotations

import re
from typing import Any

import click


class ReviewflowError(Exception):
    """Base class for every error raised by this package."""


class ReviewError(ReviewflowError):
    """A business-rule outcome the caller is expected to branch on.

    These are returned to clients as tagged ``error_data`` payloads inside a
    successful response envelope rather than as transport-level failures.
    """

    error_type = "review_error"

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.error_type}


class NotFoundError(ReviewError):
    """Conversation, task or approval is absent or outside the caller's workspace."""

    error_type = "not_found"

    def __init__(self, message: str = "Conversation not found") -> None:
        super().__init__(message)


class MessageNotFoundError(ReviewError):
    error_type = "message_not_found"

    def __init__(self, message: str = "Message not found") -> None:
        super().__init__(message)


class AlreadyResolvedError(ReviewError):
    """Mutation attempted against a resolved conversation."""

    error_type = "already_resolved"

    def __init__(self, message: str = "Conversation already resolved") -> None:
        super().__init__(message)


class ValidationError(ReviewError):
    error_type = "validation_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.error_type, "message": self.message}


class DuplicateApprovalError(ReviewError):
    """The user has already approved this task."""

    error_type = "duplicate_approval"

    def __init__(self, message: str = "Task already approved by this user") -> None:
        super().__init__(message)


class ApprovalRequiredError(ReviewError):
    """Raised when a task cannot be completed because its quorum is not met."""

    error_type = "approval_required"

    def __init__(self, approval_count: int, min_approvals_required: int) -> None:
        super().__init__(
            f"Task has {approval_count} approval(s); {min_approvals_required} required"
        )
        self.approval_count = approval_count
        self.min_approvals_required = min_approvals_required

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.error_type,
            "approval_count": self.approval_count,
            "min_approvals_required": self.min_approvals_required,
        }


class StorageFailure(ReviewflowError):
    """Infrastructure-level failure of the storage engine. Never retried here."""


class SchemaNotInitializedError(StorageFailure, click.ClickException):
    """Raised when the database schema/migrations have not been applied."""


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        message = str(e)
        match = _PG_MISSING_RELATION_RE.search(message) or _SQLITE_MISSING_TABLE_RE.search(message)
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table / missing-schema error."""
    if missing_table_name(exc):
        return True

    # Fallback for drivers that don't format errors consistently.
    for e in _unwrap_exception_chain(exc):
        message = str(e).lower()
        if "undefinedtableerror" in message:
            return True
        if "does not exist" in message and "relation" in message:
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""

    lines: list[str] = [
        f"Database schema is not initialized{table_hint}.",
        "Run: `alembic upgrade head` or `reviewflow init-db`",
        "Or validate with: `reviewflow schema-check`",
    ]
    return "\n".join(lines)
