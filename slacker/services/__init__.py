"""Slacker services.

- identity: Canonical users and duplicate merges
- ingestion: Chat messages into action items, with time-window grouping
- issues: Forge issues and pull requests into action items
- action_items: The lifecycle state machine
- participants: Who engaged with an item
- side_effects: Search documents, activity log and notifications
- commands: `/slacker` admin commands
"""

from .action_items import ActionItemService, TransitionResult
from .commands import CommandRouter
from .exceptions import (
    ActionItemNotFoundError,
    IdentityMergeError,
    IdentityUnresolvedError,
    InvalidTransitionError,
    SlackerError,
    UserNotFoundError,
    ValidationError,
    failure_message,
)
from .identity import IdentityResolver
from .ingestion import IngestionEngine, IngestionResult, noise_reason
from .issues import IssueIngestionService
from .participants import ParticipantTracker
from .side_effects import SideEffects, build_document, item_url, load_item

__all__ = [
    "ActionItemService",
    "TransitionResult",
    "CommandRouter",
    "ActionItemNotFoundError",
    "IdentityMergeError",
    "IdentityUnresolvedError",
    "InvalidTransitionError",
    "SlackerError",
    "UserNotFoundError",
    "ValidationError",
    "failure_message",
    "IdentityResolver",
    "IngestionEngine",
    "IngestionResult",
    "noise_reason",
    "IssueIngestionService",
    "ParticipantTracker",
    "SideEffects",
    "build_document",
    "item_url",
    "load_item",
]
