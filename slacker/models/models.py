"""SQLAlchemy ORM Models for Slacker.

Five domain tables (users, source messages, tracked issues, action items,
follow-ups) plus the participant join and the sweep lease table.
"""

from datetime import datetime
from enum import Enum as PyEnum
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin, UTCDateTime, UUIDMixin


# =============================================================================
# ENUMS
# =============================================================================


class ActionStatus(str, PyEnum):
    OPEN = "open"
    ASSIGNED = "assigned"
    SNOOZED = "snoozed"
    FOLLOW_UP = "follow_up"  # Spawned child waiting for its follow-up date
    CLOSED = "closed"


class ResolutionFlag(str, PyEnum):
    RESOLVED = "resolved"
    IRRELEVANT = "irrelevant"


class IssueKind(str, PyEnum):
    ISSUE = "issue"
    PULL_REQUEST = "pull_request"


class IssueState(str, PyEnum):
    OPEN = "open"
    CLOSED = "closed"


def _enum(enum_cls: type[PyEnum], name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=lambda x: [e.value for e in x])


# =============================================================================
# USERS
# =============================================================================


class User(Base, UUIDMixin, TimestampMixin):
    """Canonical actor, reconciled across chat handle, forge handle and e-mail."""

    __tablename__ = "users"

    slack_id: Mapped[str | None] = mapped_column(String(50), unique=True)
    github_username: Mapped[str | None] = mapped_column(String(255), unique=True)
    email: Mapped[str | None] = mapped_column(String(255), index=True)
    github_token: Mapped[str | None] = mapped_column(
        Text,
        comment="Forge OAuth access token",
    )
    opt_out: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        comment="Opted out of the weekly status digest",
    )

    @property
    def display_handle(self) -> str:
        return self.github_username or self.slack_id or self.email or str(self.id)


# =============================================================================
# SOURCES
# =============================================================================


class SourceMessage(Base, UUIDMixin, TimestampMixin):
    """Immutable capture of one inbound chat thread root."""

    __tablename__ = "source_messages"

    channel_id: Mapped[str] = mapped_column(String(50), nullable=False)
    ts: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Thread-root timestamp, stable key within a channel",
    )
    text: Mapped[str] = mapped_column(Text, default="", nullable=False)
    reply_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    grouped: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        comment="Attached to an existing item by the grouping window",
    )
    author_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    action_item_id: Mapped[UUID] = mapped_column(
        ForeignKey("action_items.id"), nullable=False
    )

    author: Mapped["User"] = relationship(lazy="selectin")
    action_item: Mapped["ActionItem"] = relationship(back_populates="source_messages")

    __table_args__ = (
        UniqueConstraint("channel_id", "ts"),
        Index("idx_source_messages_channel_created", "channel_id", "created_at"),
    )


class TrackedIssue(Base, UUIDMixin, TimestampMixin):
    """Mirror of a remote issue or pull request."""

    __tablename__ = "tracked_issues"

    node_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[IssueKind] = mapped_column(
        _enum(IssueKind, "issue_kind"), default=IssueKind.ISSUE, nullable=False
    )
    title: Mapped[str] = mapped_column(Text, default="", nullable=False)
    body: Mapped[str] = mapped_column(Text, default="", nullable=False)
    state: Mapped[IssueState] = mapped_column(
        _enum(IssueState, "issue_state"), default=IssueState.OPEN, nullable=False
    )
    repository_url: Mapped[str] = mapped_column(String(500), nullable=False)
    labels: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    author_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    action_item_id: Mapped[UUID] = mapped_column(
        ForeignKey("action_items.id"), unique=True, nullable=False
    )

    author: Mapped["User"] = relationship(lazy="selectin")
    action_item: Mapped["ActionItem"] = relationship(back_populates="tracked_issue")

    @property
    def url(self) -> str:
        path = "pull" if self.kind == IssueKind.PULL_REQUEST else "issues"
        return f"{self.repository_url.rstrip('/')}/{path}/{self.number}"


# =============================================================================
# ACTION ITEMS
# =============================================================================


class ActionItem(Base, UUIDMixin, TimestampMixin):
    """The unit of trackable work."""

    __tablename__ = "action_items"

    status: Mapped[ActionStatus] = mapped_column(
        _enum(ActionStatus, "action_status"), default=ActionStatus.OPEN, nullable=False
    )
    flag: Mapped[ResolutionFlag | None] = mapped_column(
        _enum(ResolutionFlag, "resolution_flag"),
        nullable=True,
        comment="Set when the item is closed",
    )

    assignee_id: Mapped[UUID | None] = mapped_column(ForeignKey("users.id"))
    assigned_on: Mapped[datetime | None] = mapped_column()

    snoozed_until: Mapped[datetime | None] = mapped_column()
    snooze_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    snoozed_by_id: Mapped[UUID | None] = mapped_column(ForeignKey("users.id"))
    last_snoozed_until: Mapped[datetime | None] = mapped_column(
        comment="When the item last left the snoozed state",
    )

    notes: Mapped[str] = mapped_column(Text, default="", nullable=False)
    reason: Mapped[str] = mapped_column(Text, default="", nullable=False)

    first_reply_on: Mapped[datetime | None] = mapped_column()
    last_reply_on: Mapped[datetime | None] = mapped_column()
    total_replies: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    resolved_at: Mapped[datetime | None] = mapped_column()
    escalated_at: Mapped[datetime | None] = mapped_column()

    # Relationships
    source_messages: Mapped[list["SourceMessage"]] = relationship(
        back_populates="action_item",
        order_by="SourceMessage.created_at",
        lazy="selectin",
    )
    tracked_issue: Mapped["TrackedIssue | None"] = relationship(
        back_populates="action_item",
        uselist=False,
        lazy="selectin",
    )
    assignee: Mapped["User | None"] = relationship(
        foreign_keys=[assignee_id], lazy="selectin"
    )
    snoozed_by: Mapped["User | None"] = relationship(
        foreign_keys=[snoozed_by_id], lazy="selectin"
    )
    participants: Mapped[list["Participant"]] = relationship(
        back_populates="action_item", lazy="selectin"
    )
    follow_ups: Mapped[list["FollowUp"]] = relationship(
        back_populates="parent",
        foreign_keys="FollowUp.parent_id",
        order_by="FollowUp.date.desc()",
        lazy="selectin",
    )
    parent_links: Mapped[list["FollowUp"]] = relationship(
        back_populates="next_item",
        foreign_keys="FollowUp.next_item_id",
        order_by="FollowUp.date.desc()",
        lazy="selectin",
    )

    __table_args__ = (
        Index("idx_action_items_status", "status"),
        Index("idx_action_items_assignee", "assignee_id"),
    )

    @property
    def is_closed(self) -> bool:
        return self.status == ActionStatus.CLOSED

    @property
    def is_follow_up(self) -> bool:
        return len(self.parent_links) > 0


class FollowUp(Base, TimestampMixin):
    """Scheduled forward link from a closed parent to a spawned child item."""

    __tablename__ = "follow_ups"

    parent_id: Mapped[UUID] = mapped_column(
        ForeignKey("action_items.id"), primary_key=True
    )
    next_item_id: Mapped[UUID] = mapped_column(
        ForeignKey("action_items.id"), primary_key=True
    )
    date: Mapped[datetime] = mapped_column(nullable=False)
    fired_at: Mapped[datetime | None] = mapped_column()
    completed_at: Mapped[datetime | None] = mapped_column()

    parent: Mapped["ActionItem"] = relationship(
        back_populates="follow_ups", foreign_keys=[parent_id], lazy="selectin"
    )
    next_item: Mapped["ActionItem"] = relationship(
        back_populates="parent_links", foreign_keys=[next_item_id], lazy="selectin"
    )

    __table_args__ = (
        Index("idx_follow_ups_date", "date"),
    )


class Participant(Base, UUIDMixin, TimestampMixin):
    """A resolved user who engaged with an item's thread or issue."""

    __tablename__ = "participants"

    action_item_id: Mapped[UUID] = mapped_column(
        ForeignKey("action_items.id"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), nullable=False)

    action_item: Mapped["ActionItem"] = relationship(back_populates="participants")
    user: Mapped["User"] = relationship(lazy="selectin")

    __table_args__ = (
        UniqueConstraint("action_item_id", "user_id"),
    )


# =============================================================================
# SCHEDULER
# =============================================================================


class SweepLease(Base):
    """Short-lived lease preventing two overlapping runs of the same sweep."""

    __tablename__ = "sweep_leases"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    holder: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
