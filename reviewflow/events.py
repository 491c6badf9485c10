"""
Conversation events pushed to workspace subscribers.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import json
from typing import Any, ClassVar, Union

from .conversations import ConversationWithMessages


class ConversationEventType(str, Enum):
    CONVERSATION_CREATED = "conversation_created"
    MESSAGE_ADDED = "message_added"
    CONVERSATION_RESOLVED = "conversation_resolved"
    CONVERSATION_UNRESOLVED = "conversation_unresolved"
    CONVERSATION_DELETED = "conversation_deleted"
    MESSAGE_DELETED = "message_deleted"
    CONVERSATION_AUTO_DELETED = "conversation_auto_deleted"
    REFRESH = "refresh"


@dataclass(frozen=True)
class _ConversationSnapshotEvent:
    """Carries the full hydrated conversation so clients need no follow-up fetch."""

    type: ClassVar[ConversationEventType]

    conversation: ConversationWithMessages

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "conversation": self.conversation.to_dict()}


@dataclass(frozen=True)
class _ConversationRemovedEvent:
    type: ClassVar[ConversationEventType]

    conversation_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "conversation_id": self.conversation_id}


@dataclass(frozen=True)
class ConversationCreated(_ConversationSnapshotEvent):
    type: ClassVar[ConversationEventType] = ConversationEventType.CONVERSATION_CREATED


@dataclass(frozen=True)
class MessageAdded(_ConversationSnapshotEvent):
    type: ClassVar[ConversationEventType] = ConversationEventType.MESSAGE_ADDED


@dataclass(frozen=True)
class ConversationResolved(_ConversationSnapshotEvent):
    type: ClassVar[ConversationEventType] = ConversationEventType.CONVERSATION_RESOLVED


@dataclass(frozen=True)
class ConversationUnresolved(_ConversationSnapshotEvent):
    type: ClassVar[ConversationEventType] = ConversationEventType.CONVERSATION_UNRESOLVED


@dataclass(frozen=True)
class MessageDeleted(_ConversationSnapshotEvent):
    type: ClassVar[ConversationEventType] = ConversationEventType.MESSAGE_DELETED


@dataclass(frozen=True)
class ConversationDeleted(_ConversationRemovedEvent):
    type: ClassVar[ConversationEventType] = ConversationEventType.CONVERSATION_DELETED


@dataclass(frozen=True)
class ConversationAutoDeleted(_ConversationRemovedEvent):
    """The last message was removed, taking the conversation with it."""

    type: ClassVar[ConversationEventType] = ConversationEventType.CONVERSATION_AUTO_DELETED


@dataclass(frozen=True)
class Refresh:
    """Sent in place of dropped events: the subscriber should re-fetch state."""

    type: ClassVar[ConversationEventType] = ConversationEventType.REFRESH

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value}


ConversationEvent = Union[
    ConversationCreated,
    MessageAdded,
    ConversationResolved,
    ConversationUnresolved,
    MessageDeleted,
    ConversationDeleted,
    ConversationAutoDeleted,
    Refresh,
]


def encode_event(event: ConversationEvent) -> str:
    """Serialize an event to the JSON text sent over the wire."""
    return json.dumps(event.to_dict(), default=str)


REFRESH_PAYLOAD = encode_event(Refresh())
