"""
Review Workflow Engine

Line-anchored review conversations on code diffs, live per-workspace event
fan-out, and approval-gated task completion backed by an async SQL store.
"""

__version__ = "0.1.0"

# Configuration
from reviewflow.config import Settings

# Errors
from reviewflow.errors import (
    AlreadyResolvedError,
    ApprovalRequiredError,
    DuplicateApprovalError,
    MessageNotFoundError,
    NotFoundError,
    ReviewError,
    StorageFailure,
    ValidationError,
)

# Core models
from reviewflow.models import (
    DiffSide,
    Project,
    ReviewConversation,
    ReviewConversationMessage,
    Task,
    TaskApproval,
    TaskStatus,
    User,
)

# Live updates
from reviewflow.broadcast import ConversationBroadcaster, Subscription

# Service
from reviewflow.service import ApiResponse, ConversationService

__all__ = [
    # Version
    "__version__",
    # Config
    "Settings",
    # Errors
    "ReviewError",
    "NotFoundError",
    "MessageNotFoundError",
    "AlreadyResolvedError",
    "ValidationError",
    "DuplicateApprovalError",
    "ApprovalRequiredError",
    "StorageFailure",
    # Models
    "User",
    "Project",
    "Task",
    "TaskStatus",
    "TaskApproval",
    "DiffSide",
    "ReviewConversation",
    "ReviewConversationMessage",
    # Live updates
    "ConversationBroadcaster",
    "Subscription",
    # Service
    "ApiResponse",
    "ConversationService",
]
