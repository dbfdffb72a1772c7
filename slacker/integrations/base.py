"""Interfaces of the external collaborators.

The core talks to the chat platform and the search index only through these
abstract classes, so handlers and sweeps receive them explicitly and tests
substitute in-memory fakes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


class ExternalServiceError(Exception):
    """A call to an external collaborator failed or timed out."""

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}")
        self.service = service


def ts_to_datetime(ts: str | None) -> datetime | None:
    """Convert a chat timestamp ("1712345678.000200") to an aware datetime."""
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts.split(".")[0]), tz=timezone.utc)


# =============================================================================
# THREAD CONTEXT
# =============================================================================


@dataclass
class ThreadRoot:
    """The root message of a chat thread, as fetched from the channel history."""
    ts: str
    user: str | None
    text: str = ""
    reply_count: int = 0
    reply_users: list[str] = field(default_factory=list)
    latest_reply: str | None = None

    @property
    def created_at(self) -> datetime:
        return ts_to_datetime(self.ts)


@dataclass
class ThreadReply:
    """One reply inside a thread."""
    ts: str
    user: str | None = None


@dataclass
class ChatProfile:
    """Subset of a chat user's profile the core needs."""
    id: str
    email: str | None = None
    display_name: str | None = None


# =============================================================================
# COLLABORATORS
# =============================================================================


class ChatClient(ABC):
    """Outbound notification and thread lookup interface of the chat platform."""

    @abstractmethod
    async def post_message(self, channel: str, text: str, blocks: list[dict] | None = None) -> None:
        pass

    @abstractmethod
    async def post_ephemeral(self, channel: str, user: str, text: str) -> None:
        pass

    @abstractmethod
    async def open_modal(self, trigger_id: str, view: dict) -> None:
        pass

    @abstractmethod
    async def update_message(self, channel: str, ts: str, text: str, blocks: list[dict]) -> None:
        pass

    @abstractmethod
    async def fetch_thread_root(self, channel: str, ts: str) -> ThreadRoot | None:
        pass

    @abstractmethod
    async def fetch_thread_replies(self, channel: str, ts: str) -> list[ThreadReply]:
        pass

    @abstractmethod
    async def user_profile(self, user_id: str) -> ChatProfile | None:
        pass


class SearchIndex(ABC):
    """Search document store; accumulates monotonic counters per document."""

    @abstractmethod
    async def upsert_document(
        self,
        item_id: str,
        document: dict[str, Any],
        counters: dict[str, int] | None = None,
    ) -> None:
        pass
