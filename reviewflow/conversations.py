"""Review conversation store.

Conversations are anchored to one line/side of one file inside a workspace and
always carry at least one message. Resolution is a reversible toggle guarded by
a conditional update, so concurrent resolvers race on the database rather than
in application code.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_user_by_id
from .errors import AlreadyResolvedError, MessageNotFoundError, NotFoundError, ValidationError
from .models import DiffSide, ReviewConversation, ReviewConversationMessage, User, utcnow


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# =============================================================================
# Hydrated views
# =============================================================================


@dataclass(frozen=True)
class ConversationUser:
    """Compact user projection exposed alongside messages and resolutions."""

    id: str
    username: str
    display_name: str | None = None
    avatar_url: str | None = None

    @classmethod
    def from_user(cls, user: User) -> ConversationUser:
        return cls(
            id=user.id,
            username=user.username,
            display_name=user.display_name,
            avatar_url=user.avatar_url,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "display_name": self.display_name,
            "avatar_url": self.avatar_url,
        }


@dataclass(frozen=True)
class MessageWithAuthor:
    id: str
    conversation_id: str
    user_id: str | None
    content: str
    created_at: datetime
    updated_at: datetime
    author: ConversationUser | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "content": self.content,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "author": self.author.to_dict() if self.author else None,
        }


@dataclass(frozen=True)
class ConversationWithMessages:
    """A conversation with its ordered messages and user projections."""

    id: str
    workspace_id: str
    file_path: str
    line_number: int
    side: str
    code_line: str | None
    is_resolved: bool
    resolved_at: datetime | None
    resolved_by_user_id: str | None
    resolution_summary: str | None
    created_at: datetime
    updated_at: datetime
    messages: tuple[MessageWithAuthor, ...] = ()
    resolved_by: ConversationUser | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "file_path": self.file_path,
            "line_number": self.line_number,
            "side": self.side,
            "code_line": self.code_line,
            "is_resolved": self.is_resolved,
            "resolved_at": _iso(self.resolved_at),
            "resolved_by_user_id": self.resolved_by_user_id,
            "resolution_summary": self.resolution_summary,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "messages": [m.to_dict() for m in self.messages],
            "resolved_by": self.resolved_by.to_dict() if self.resolved_by else None,
        }


# =============================================================================
# Validation
# =============================================================================


def _require_text(value: str | None, message: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(message)
    return value


def parse_side(side: str | DiffSide) -> DiffSide:
    if isinstance(side, DiffSide):
        return side
    try:
        return DiffSide(side)
    except ValueError:
        raise ValidationError(f"Invalid diff side: {side}") from None


# =============================================================================
# Queries
# =============================================================================


async def get_conversation(
    session: AsyncSession, conversation_id: str
) -> ReviewConversation | None:
    result = await session.execute(
        select(ReviewConversation)
        .where(ReviewConversation.id == conversation_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_conversations(session: AsyncSession, workspace_id: str) -> list[ReviewConversation]:
    """All conversations for a workspace, oldest first."""
    result = await session.execute(
        select(ReviewConversation)
        .where(ReviewConversation.workspace_id == workspace_id)
        .order_by(ReviewConversation.created_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_unresolved_conversations(
    session: AsyncSession, workspace_id: str
) -> list[ReviewConversation]:
    result = await session.execute(
        select(ReviewConversation)
        .where(
            ReviewConversation.workspace_id == workspace_id,
            ReviewConversation.is_resolved.is_(False),
        )
        .order_by(ReviewConversation.created_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_conversations_by_file_path(
    session: AsyncSession, workspace_id: str, file_path: str
) -> list[ReviewConversation]:
    """Conversations on one file, ordered by line number."""
    result = await session.execute(
        select(ReviewConversation)
        .where(
            ReviewConversation.workspace_id == workspace_id,
            ReviewConversation.file_path == file_path,
        )
        .order_by(ReviewConversation.line_number)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_message(session: AsyncSession, message_id: str) -> ReviewConversationMessage | None:
    result = await session.execute(
        select(ReviewConversationMessage)
        .where(ReviewConversationMessage.id == message_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_messages(
    session: AsyncSession, conversation_id: str
) -> list[ReviewConversationMessage]:
    result = await session.execute(
        select(ReviewConversationMessage)
        .where(ReviewConversationMessage.conversation_id == conversation_id)
        .order_by(ReviewConversationMessage.created_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def count_messages(session: AsyncSession, conversation_id: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(ReviewConversationMessage)
        .where(ReviewConversationMessage.conversation_id == conversation_id)
    )
    return int(result.scalar_one())


# =============================================================================
# Mutations
# =============================================================================


async def create_conversation(
    session: AsyncSession,
    workspace_id: str,
    file_path: str,
    line_number: int,
    side: str | DiffSide,
    code_line: str | None,
    initial_message: str,
    user_id: str | None = None,
) -> ReviewConversation:
    """Create a conversation together with its first message in one flush."""
    _require_text(initial_message, "Initial message cannot be empty")
    _require_text(file_path, "File path cannot be empty")
    if line_number < 1:
        raise ValidationError("Line number must be >= 1")
    diff_side = parse_side(side)

    conversation = ReviewConversation(
        workspace_id=workspace_id,
        file_path=file_path,
        line_number=line_number,
        side=diff_side.value,
        code_line=code_line,
        is_resolved=False,
    )
    session.add(conversation)
    await session.flush()

    session.add(
        ReviewConversationMessage(
            conversation_id=conversation.id,
            user_id=user_id,
            content=initial_message,
        )
    )
    await session.flush()
    return conversation


async def add_message(
    session: AsyncSession,
    conversation_id: str,
    content: str,
    user_id: str | None = None,
) -> ReviewConversationMessage:
    """Append a message to an unresolved conversation."""
    _require_text(content, "Message content cannot be empty")

    conversation = await get_conversation(session, conversation_id)
    if conversation is None:
        raise NotFoundError()
    if conversation.is_resolved:
        raise AlreadyResolvedError()

    message = ReviewConversationMessage(
        conversation_id=conversation_id,
        user_id=user_id,
        content=content,
    )
    session.add(message)
    await session.flush()
    return message


async def update_message(
    session: AsyncSession,
    conversation_id: str,
    message_id: str,
    content: str,
) -> ReviewConversationMessage:
    """Edit a message's content. Resolved conversations are read-only."""
    _require_text(content, "Message content cannot be empty")
    message = await _require_mutable_message(session, conversation_id, message_id)

    message.content = content
    message.updated_at = utcnow()
    await session.flush()
    return message


async def resolve_conversation(
    session: AsyncSession,
    conversation_id: str,
    summary: str,
    user_id: str | None = None,
) -> ReviewConversation:
    """Mark a conversation resolved.

    The update only matches while ``is_resolved`` is false, so among concurrent
    resolvers exactly one changes the row; the rest see ``NotFoundError``.
    """
    now = utcnow()
    result = await session.execute(
        update(ReviewConversation)
        .where(
            ReviewConversation.id == conversation_id,
            ReviewConversation.is_resolved.is_(False),
        )
        .values(
            is_resolved=True,
            resolved_at=now,
            resolved_by_user_id=user_id,
            resolution_summary=summary,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError()

    conversation = await get_conversation(session, conversation_id)
    if conversation is None:
        raise NotFoundError()
    return conversation


async def unresolve_conversation(session: AsyncSession, conversation_id: str) -> ReviewConversation:
    """Re-open a conversation, clearing every resolution field."""
    result = await session.execute(
        update(ReviewConversation)
        .where(ReviewConversation.id == conversation_id)
        .values(
            is_resolved=False,
            resolved_at=None,
            resolved_by_user_id=None,
            resolution_summary=None,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError()

    conversation = await get_conversation(session, conversation_id)
    if conversation is None:
        raise NotFoundError()
    return conversation


async def delete_conversation(session: AsyncSession, conversation_id: str) -> None:
    """Delete a conversation; its messages follow via ON DELETE CASCADE."""
    result = await session.execute(
        delete(ReviewConversation)
        .where(ReviewConversation.id == conversation_id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError()


async def delete_message(session: AsyncSession, conversation_id: str, message_id: str) -> bool:
    """Delete one message.

    Returns True when it was the last message and the conversation was removed
    with it.
    """
    await _require_mutable_message(session, conversation_id, message_id)

    result = await session.execute(
        delete(ReviewConversationMessage)
        .where(ReviewConversationMessage.id == message_id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise MessageNotFoundError()

    if await count_messages(session, conversation_id) == 0:
        await delete_conversation(session, conversation_id)
        return True
    return False


async def _require_mutable_message(
    session: AsyncSession, conversation_id: str, message_id: str
) -> ReviewConversationMessage:
    conversation = await get_conversation(session, conversation_id)
    if conversation is None:
        raise NotFoundError()
    if conversation.is_resolved:
        raise AlreadyResolvedError()

    message = await get_message(session, message_id)
    if message is None or message.conversation_id != conversation_id:
        raise MessageNotFoundError()
    return message


# =============================================================================
# Hydration
# =============================================================================


class _UserCache:
    """Memoises user-directory lookups for the duration of one hydration."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._users: dict[str, ConversationUser | None] = {}

    async def get(self, user_id: str | None) -> ConversationUser | None:
        if user_id is None:
            return None
        if user_id not in self._users:
            user = await get_user_by_id(self._session, user_id)
            self._users[user_id] = ConversationUser.from_user(user) if user else None
        return self._users[user_id]


async def _hydrate(
    session: AsyncSession, conversation: ReviewConversation, users: _UserCache
) -> ConversationWithMessages:
    messages = []
    for msg in await get_messages(session, conversation.id):
        messages.append(
            MessageWithAuthor(
                id=msg.id,
                conversation_id=msg.conversation_id,
                user_id=msg.user_id,
                content=msg.content,
                created_at=msg.created_at,
                updated_at=msg.updated_at,
                author=await users.get(msg.user_id),
            )
        )

    return ConversationWithMessages(
        id=conversation.id,
        workspace_id=conversation.workspace_id,
        file_path=conversation.file_path,
        line_number=conversation.line_number,
        side=conversation.side,
        code_line=conversation.code_line,
        is_resolved=conversation.is_resolved,
        resolved_at=conversation.resolved_at,
        resolved_by_user_id=conversation.resolved_by_user_id,
        resolution_summary=conversation.resolution_summary,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
        messages=tuple(messages),
        resolved_by=await users.get(conversation.resolved_by_user_id),
    )


async def load_conversation_with_messages(
    session: AsyncSession, conversation_id: str
) -> ConversationWithMessages | None:
    conversation = await get_conversation(session, conversation_id)
    if conversation is None:
        return None
    return await _hydrate(session, conversation, _UserCache(session))


async def load_conversations_with_messages(
    session: AsyncSession, workspace_id: str, *, unresolved_only: bool = False
) -> list[ConversationWithMessages]:
    if unresolved_only:
        conversations = await get_unresolved_conversations(session, workspace_id)
    else:
        conversations = await get_conversations(session, workspace_id)

    users = _UserCache(session)
    return [await _hydrate(session, conv, users) for conv in conversations]
