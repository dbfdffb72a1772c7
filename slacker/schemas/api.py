"""Request and response schemas of the HTTP surface."""

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ..models import ActionStatus, ResolutionFlag


class SlackerBaseModel(BaseModel):
    """Base model with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,  # Enable ORM mode
        populate_by_name=True,
        use_enum_values=True,
    )


# =============================================================================
# REFERENCES
# =============================================================================


class UserRef(SlackerBaseModel):
    id: UUID
    slack_id: str | None = None
    github_username: str | None = None


class FollowUpRef(SlackerBaseModel):
    parent_id: UUID
    next_item_id: UUID
    date: datetime
    fired_at: datetime | None = None
    completed_at: datetime | None = None


# =============================================================================
# ACTION ITEMS
# =============================================================================


class ActionItemResponse(SlackerBaseModel):
    """Snapshot of an action item."""

    id: UUID
    status: ActionStatus
    flag: ResolutionFlag | None = None
    assignee: UserRef | None = None
    assigned_on: datetime | None = None
    snoozed_until: datetime | None = None
    snooze_count: int = 0
    snoozed_by: UserRef | None = None
    notes: str = ""
    reason: str = ""
    first_reply_on: datetime | None = None
    last_reply_on: datetime | None = None
    total_replies: int = 0
    resolved_at: datetime | None = None
    created_at: datetime
    url: str | None = None
    follow_ups: list[FollowUpRef] = Field(default_factory=list)


ItemAction = Literal[
    "assign", "unassign", "snooze", "unsnooze", "resolve", "irrelevant", "reopen",
    "follow-up", "notes",
]


class ActionRequest(SlackerBaseModel):
    """Body of a lifecycle action; which fields matter depends on the action."""

    actor: str | None = Field(default=None, description="Chat handle of the acting user")
    channel_id: str | None = Field(default=None, description="Channel to answer in, ephemerally")
    assignee: str | None = Field(default=None, description="Maintainer id or chat handle")
    until: datetime | None = None
    on: datetime | None = None
    reason: str = ""
    notes: str = ""


class ActionResult(SlackerBaseModel):
    message: str
    item: ActionItemResponse


# =============================================================================
# ACCOUNTS
# =============================================================================


class LinkRequest(SlackerBaseModel):
    """Identity linkage, posted once the OAuth exchange has completed."""

    slack_id: str
    github_login: str
    email: str | None = None
    token: str | None = None


class LinkResponse(SlackerBaseModel):
    message: str
    user_id: UUID


# =============================================================================
# COMMANDS & ERRORS
# =============================================================================


class CommandResponse(SlackerBaseModel):
    """Slack slash-command response payload."""

    response_type: Literal["ephemeral", "in_channel"] = "ephemeral"
    text: str


class ErrorResponse(SlackerBaseModel):
    """Standard error response format."""

    error: str
    message: str
