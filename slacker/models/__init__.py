"""SQLAlchemy ORM Models for Slacker."""

from .base import Base, TimestampMixin, UUIDMixin, utcnow
from .models import (
    # Enums
    ActionStatus,
    IssueKind,
    IssueState,
    ResolutionFlag,
    # Users
    User,
    # Sources
    SourceMessage,
    TrackedIssue,
    # Action items
    ActionItem,
    FollowUp,
    Participant,
    # Scheduler
    SweepLease,
)

__all__ = [
    # Base
    "Base",
    "UUIDMixin",
    "TimestampMixin",
    "utcnow",
    # Enums
    "ActionStatus",
    "ResolutionFlag",
    "IssueKind",
    "IssueState",
    # Users
    "User",
    # Sources
    "SourceMessage",
    "TrackedIssue",
    # Action items
    "ActionItem",
    "FollowUp",
    "Participant",
    # Scheduler
    "SweepLease",
]
