"""Test fixtures: in-memory SQLite, fake collaborators and a project config."""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from slacker.core.config import Settings
from slacker.core.database import create_session_factory
from slacker.core.metrics import Metrics
from slacker.core.projects import ProjectConfigService
from slacker.integrations import (
    ChatClient,
    ChatProfile,
    ExternalServiceError,
    SearchIndex,
    ThreadReply,
    ThreadRoot,
)
from slacker.models import ActionItem, ActionStatus, Base, SourceMessage, User
from slacker.schemas.events import ChatMessage
from slacker.services.side_effects import SideEffects

# ---------------------------------------------------------------------------
# Constants shared by the tests
# ---------------------------------------------------------------------------

CHANNEL = "C0HELP"
QUIET_CHANNEL = "C0QUIET"
REPO = "https://github.com/hackclub/arcade"
MAINTAINER_SLACK = "U0MAINT"
MANAGER_SLACK = "U0MANAGER"

PROJECT_YAML = f"""
name: arcade
description: Arcade support
maintainers: [zrl, max]
slack-channels:
  - id: {CHANNEL}
    name: arcade-help
    grouping: {{minutes: 5}}
  - id: {QUIET_CHANNEL}
    name: arcade-quiet
repos:
  - uri: {REPO}
slack-managers: [{MANAGER_SLACK}]
"""

MAINTAINERS_YAML = f"""
- id: zrl
  slack: {MAINTAINER_SLACK}
  github: zachlatta
- id: max
  slack: U0MAX
  github: maxwofford
"""


# Monday morning
T0 = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)


def ts_of(moment: datetime) -> str:
    """Chat timestamp of an aware datetime."""
    return f"{int(moment.timestamp())}.000100"


def post_thread(
    chat: "FakeChatClient",
    channel: str,
    at: datetime,
    user: str = "U0AUTHOR",
    replies: int = 0,
    reply_users: tuple[str, ...] = (),
    text: str = "My project does not build, can someone help?",
) -> ChatMessage:
    """Register a thread with the fake chat client and return its root event."""
    reply_list = [
        ThreadReply(ts=ts_of(at + timedelta(minutes=i + 1)), user=reply_users[0] if reply_users else None)
        for i in range(replies)
    ]
    root = ThreadRoot(
        ts=ts_of(at),
        user=user,
        text=text,
        reply_count=replies,
        reply_users=list(reply_users),
        latest_reply=reply_list[-1].ts if reply_list else None,
    )
    chat.add_thread(channel, root, reply_list)
    return ChatMessage(channel=channel, ts=root.ts, user=user, text=text)


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------


class FakeChatClient(ChatClient):
    """Records outbound calls and serves thread context from memory."""

    def __init__(self):
        self.messages: list[tuple[str, str]] = []
        self.ephemerals: list[tuple[str, str, str]] = []
        self.roots: dict[tuple[str, str], ThreadRoot] = {}
        self.replies: dict[tuple[str, str], list[ThreadReply]] = {}
        self.profiles: dict[str, ChatProfile] = {}
        self.fail_posts = False
        self.fail_fetches = False

    def add_thread(
        self,
        channel: str,
        root: ThreadRoot,
        replies: list[ThreadReply] | None = None,
    ) -> None:
        self.roots[(channel, root.ts)] = root
        self.replies[(channel, root.ts)] = replies or []

    async def post_message(self, channel: str, text: str, blocks: list[dict] | None = None) -> None:
        if self.fail_posts:
            raise ExternalServiceError("slack", "chat.postMessage: timeout")
        self.messages.append((channel, text))

    async def post_ephemeral(self, channel: str, user: str, text: str) -> None:
        if self.fail_posts:
            raise ExternalServiceError("slack", "chat.postEphemeral: timeout")
        self.ephemerals.append((channel, user, text))

    async def open_modal(self, trigger_id: str, view: dict) -> None:
        pass

    async def update_message(self, channel: str, ts: str, text: str, blocks: list[dict]) -> None:
        pass

    async def fetch_thread_root(self, channel: str, ts: str) -> ThreadRoot | None:
        if self.fail_fetches:
            raise ExternalServiceError("slack", "conversations.history: timeout")
        return self.roots.get((channel, ts))

    async def fetch_thread_replies(self, channel: str, ts: str) -> list[ThreadReply]:
        if self.fail_fetches:
            raise ExternalServiceError("slack", "conversations.replies: timeout")
        return self.replies.get((channel, ts), [])

    async def user_profile(self, user_id: str) -> ChatProfile | None:
        return self.profiles.get(user_id)

    def sent_to(self, channel: str) -> list[str]:
        return [text for target, text in self.messages if target == channel]


class FakeSearchIndex(SearchIndex):
    """Keeps the last document and the accumulated counters per item."""

    def __init__(self):
        self.documents: dict[str, dict[str, Any]] = {}
        self.counters: dict[str, dict[str, int]] = {}
        self.fail = False

    async def upsert_document(
        self,
        item_id: str,
        document: dict[str, Any],
        counters: dict[str, int] | None = None,
    ) -> None:
        if self.fail:
            raise ExternalServiceError("search", "index unavailable")
        self.documents[item_id] = document
        totals = self.counters.setdefault(item_id, {})
        for name, value in (counters or {}).items():
            totals[name] = totals.get(name, 0) + value


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    (tmp_path / "arcade.yaml").write_text(PROJECT_YAML)
    (tmp_path / "maintainers.yaml").write_text(MAINTAINERS_YAML)
    return tmp_path


@pytest.fixture
def settings(config_dir: Path) -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        config_dir=str(config_dir),
        slack_workspace_url="https://hackclub.slack.com",
        slack_activity_channel="C0ACTIVITY",
        timezone="UTC",
        escalation_reply_threshold=10,
    )


@pytest.fixture
def chat() -> FakeChatClient:
    return FakeChatClient()


@pytest.fixture
def search() -> FakeSearchIndex:
    return FakeSearchIndex()


@pytest.fixture
def effects(settings: Settings, chat: FakeChatClient, search: FakeSearchIndex) -> SideEffects:
    return SideEffects(
        chat=chat,
        search=search,
        metrics=Metrics(),
        settings=settings,
        projects=ProjectConfigService(settings.config_dir),
    )


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; take it over
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def make_item(session: AsyncSession):
    """Create a message-derived action item directly in the database."""

    async def _make(
        status: ActionStatus = ActionStatus.OPEN,
        author_slack: str = "U0AUTHOR",
        channel: str = CHANNEL,
        created_at: datetime | None = None,
        **fields,
    ) -> ActionItem:
        created_at = created_at or T0
        author = (
            await session.execute(select(User).where(User.slack_id == author_slack))
        ).scalar_one_or_none()
        if author is None:
            author = User(slack_id=author_slack)
            session.add(author)
            await session.flush()

        item = ActionItem(status=status, **fields)
        session.add(item)
        await session.flush()
        session.add(
            SourceMessage(
                channel_id=channel,
                ts=ts_of(created_at),
                text="My project does not build, can someone help?",
                author_id=author.id,
                action_item_id=item.id,
                created_at=created_at,
            )
        )
        await session.commit()
        return item

    return _make
