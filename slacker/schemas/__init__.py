"""Slacker schemas.

Schemas are organized by boundary:
- events: Normalized inbound chat and forge events
- api: Request and response bodies of the HTTP surface
"""

from .api import (
    ActionItemResponse,
    ActionRequest,
    ActionResult,
    CommandResponse,
    ErrorResponse,
    FollowUpRef,
    ItemAction,
    LinkRequest,
    LinkResponse,
    SlackerBaseModel,
    UserRef,
)
from .events import (
    ChatEvent,
    ChatMessage,
    IssueEvent,
    MessageDeleted,
    parse_issue_webhook,
    parse_message_event,
)

__all__ = [
    "ActionItemResponse",
    "ActionRequest",
    "ActionResult",
    "CommandResponse",
    "ErrorResponse",
    "FollowUpRef",
    "ItemAction",
    "LinkRequest",
    "LinkResponse",
    "SlackerBaseModel",
    "UserRef",
    "ChatEvent",
    "ChatMessage",
    "IssueEvent",
    "MessageDeleted",
    "parse_issue_webhook",
    "parse_message_event",
]
