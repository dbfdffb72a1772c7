"""Normalized inbound events.

Raw chat and forge payloads are loosely shaped; they are converted into these
tagged variants at the boundary so the engines never inspect optional fields
ad hoc.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from ..models import IssueKind


# =============================================================================
# CHAT EVENTS
# =============================================================================


class MessageDeleted(BaseModel):
    """Upstream deletion of a message."""

    kind: Literal["deleted"] = "deleted"
    channel: str
    deleted_ts: str


class ChatMessage(BaseModel):
    """A thread root or a thread reply posted in a channel."""

    kind: Literal["message"] = "message"
    channel: str
    ts: str
    thread_ts: str | None = None
    user: str | None = None
    text: str = ""
    subtype: str | None = None
    bot_id: str | None = None

    @property
    def root_ts(self) -> str:
        """Timestamp of the thread this message belongs to."""
        return self.thread_ts or self.ts

    @property
    def is_reply(self) -> bool:
        return self.thread_ts is not None and self.thread_ts != self.ts


ChatEvent = Annotated[Union[MessageDeleted, ChatMessage], Field(discriminator="kind")]

_chat_event_adapter: TypeAdapter[ChatEvent] = TypeAdapter(ChatEvent)


def parse_message_event(raw: dict[str, Any]) -> MessageDeleted | ChatMessage:
    """Normalize a raw chat `message` event into a tagged variant."""
    if raw.get("subtype") == "message_deleted":
        return _chat_event_adapter.validate_python({
            "kind": "deleted",
            "channel": raw.get("channel", ""),
            "deleted_ts": raw.get("deleted_ts") or (raw.get("previous_message") or {}).get("ts", ""),
        })

    return _chat_event_adapter.validate_python({
        "kind": "message",
        "channel": raw.get("channel", ""),
        "ts": raw.get("ts", ""),
        "thread_ts": raw.get("thread_ts"),
        "user": raw.get("user"),
        "text": raw.get("text") or "",
        "subtype": raw.get("subtype"),
        "bot_id": raw.get("bot_id"),
    })


# =============================================================================
# FORGE EVENTS
# =============================================================================


IssueAction = Literal["opened", "reopened", "edited", "closed"]


class IssueEvent(BaseModel):
    """Issue or pull request lifecycle event from the issue tracker."""

    action: IssueAction
    node_id: str
    number: int
    kind: IssueKind = IssueKind.ISSUE
    title: str = ""
    body: str = ""
    author_login: str
    repository_url: str
    labels: list[str] = Field(default_factory=list)
    participants: list[str] = Field(default_factory=list)
    comment_count: int = 0
    first_comment_at: datetime | None = None
    last_comment_at: datetime | None = None
    closed_at: datetime | None = None


def parse_issue_webhook(event_name: str, payload: dict[str, Any]) -> IssueEvent | None:
    """Normalize an `issues` or `pull_request` webhook payload.

    Returns None for events and actions the core does not track.
    """
    if event_name == "issues":
        node = payload.get("issue") or {}
        kind = IssueKind.ISSUE
    elif event_name == "pull_request":
        node = payload.get("pull_request") or {}
        kind = IssueKind.PULL_REQUEST
    else:
        return None

    action = payload.get("action")
    if action not in ("opened", "reopened", "edited", "closed"):
        return None

    repository = payload.get("repository") or {}
    author = (node.get("user") or {}).get("login", "")

    return IssueEvent(
        action=action,
        node_id=node.get("node_id", ""),
        number=node.get("number", 0),
        kind=kind,
        title=node.get("title") or "",
        body=node.get("body") or "",
        author_login=author,
        repository_url=repository.get("html_url", ""),
        labels=[label.get("name", "") for label in node.get("labels") or []],
        participants=[author] if author else [],
        comment_count=node.get("comments") or 0,
        closed_at=node.get("closed_at"),
    )
