"""
Best-effort side effects of a committed state change.

State is the source of truth: every transition is committed before any of
these run, and each one is isolated so a failing search upsert does not stop
the activity log line or the notification that follows it.
"""

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..core.config import Settings
from ..core.metrics import Metrics
from ..core.projects import ProjectConfigService
from ..integrations import ChatClient, SearchIndex
from ..models import ActionItem, ActionStatus, FollowUp, IssueKind, ResolutionFlag, User

logger = logging.getLogger(__name__)


# =============================================================================
# LOADING
# =============================================================================


async def load_item(session: AsyncSession, item_id: UUID) -> ActionItem | None:
    """Load an action item with everything its document and cards need.

    Always re-reads the row, so a caller holding a stale copy from before a
    bulk update sees current state.
    """
    query = (
        select(ActionItem)
        .where(ActionItem.id == item_id)
        .options(
            selectinload(ActionItem.source_messages),
            selectinload(ActionItem.tracked_issue),
            selectinload(ActionItem.participants),
            selectinload(ActionItem.follow_ups).selectinload(FollowUp.next_item),
            selectinload(ActionItem.parent_links)
            .selectinload(FollowUp.parent)
            .selectinload(ActionItem.source_messages),
            selectinload(ActionItem.parent_links)
            .selectinload(FollowUp.parent)
            .selectinload(ActionItem.tracked_issue),
        )
        .execution_options(populate_existing=True)
    )
    result = await session.execute(query)
    return result.scalar_one_or_none()


# =============================================================================
# DOCUMENT
# =============================================================================


def origin_of(item: ActionItem) -> ActionItem:
    """The item that owns the source; follow-up children reach it via their link."""
    if item.parent_links:
        return item.parent_links[0].parent
    return item


def item_url(item: ActionItem, workspace_url: str) -> str | None:
    """Permalink of the thread or issue an item was derived from."""
    origin = origin_of(item)
    if origin.tracked_issue is not None:
        return origin.tracked_issue.url
    if origin.source_messages:
        message = origin.source_messages[0]
        return f"{workspace_url.rstrip('/')}/archives/{message.channel_id}/p{message.ts.replace('.', '')}"
    return None


def project_of(item: ActionItem, projects: ProjectConfigService) -> str | None:
    origin = origin_of(item)
    if origin.source_messages:
        return projects.project_for_channel(origin.source_messages[0].channel_id)
    if origin.tracked_issue is not None:
        return projects.project_for_repo(origin.tracked_issue.repository_url)
    return None


def item_type(item: ActionItem) -> str:
    if item.parent_links:
        return "follow_up"
    if item.tracked_issue is not None:
        return "pull" if item.tracked_issue.kind == IssueKind.PULL_REQUEST else "issue"
    return "message"


def _actor(user: User, projects: ProjectConfigService) -> dict[str, Any]:
    maintainer = projects.maintainer_by_handle(
        chat_id=user.slack_id, forge_login=user.github_username
    )
    return {
        "display_name": maintainer.id if maintainer else user.display_handle,
        "slack": user.slack_id,
        "github": user.github_username,
    }


def _seconds_between(start: datetime | None, end: datetime | None) -> int | None:
    if start is None or end is None:
        return None
    return int((end - start).total_seconds())


def build_document(
    item: ActionItem,
    projects: ProjectConfigService,
    workspace_url: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Full search snapshot of an action item."""
    now = now or datetime.now(timezone.utc)
    origin = origin_of(item)

    actors = [_actor(p.user, projects) for p in item.participants]
    known = {(a["slack"], a["github"]) for a in actors}
    for extra in (item.assignee, item.snoozed_by):
        if extra is not None and (extra.slack_id, extra.github_username) not in known:
            actors.append(_actor(extra, projects))
            known.add((extra.slack_id, extra.github_username))

    if origin.tracked_issue is not None:
        created = origin.tracked_issue.created_at
        author = origin.tracked_issue.author
        text = origin.tracked_issue.title
        source = origin.tracked_issue.repository_url.rstrip("/").split("github.com/")[-1]
    elif origin.source_messages:
        created = origin.source_messages[0].created_at
        author = origin.source_messages[0].author
        text = origin.source_messages[0].text
        channel = projects.channel(origin.source_messages[0].channel_id)
        source = f"#{channel.name}" if channel and channel.name else origin.source_messages[0].channel_id
    else:
        created, author, text, source = item.created_at, None, "", None

    if item.snoozed_until and item.snoozed_until > now:
        state = "snoozed"
    elif item.status == ActionStatus.CLOSED:
        state = "irrelevant" if item.flag == ResolutionFlag.IRRELEVANT else "resolved"
    else:
        state = "open"

    document: dict[str, Any] = {
        "id": str(item.id),
        "action_item_type": item_type(item),
        "project": project_of(item, projects),
        "source": source,
        "url": item_url(item, workspace_url),
        "text": text,
        "status": item.status.value,
        "flag": item.flag.value if item.flag else None,
        "state": state,
        "reason": item.reason,
        "notes": item.notes,
        "created_time": created.isoformat() if created else None,
        "resolved_time": item.resolved_at.isoformat() if item.resolved_at else None,
        "first_response_time": item.first_reply_on.isoformat() if item.first_reply_on else None,
        "last_modified_time": (item.last_reply_on or item.updated_at or item.created_at).isoformat(),
        "snoozed_until": item.snoozed_until.isoformat() if item.snoozed_until else None,
        "snooze_count": item.snooze_count,
        "times_commented": item.total_replies,
        "first_response_time_in_s": _seconds_between(created, item.first_reply_on),
        "resolution_time_in_s": _seconds_between(created, item.resolved_at),
        "actors": actors,
        "author": _actor(author, projects) if author else None,
        "assignee": _actor(item.assignee, projects) if item.assignee else None,
        "snoozed_by": _actor(item.snoozed_by, projects) if item.snoozed_by else None,
    }

    if item.parent_links:
        link = item.parent_links[0]
        document["follow_up_to"] = str(link.parent_id)
        document["follow_up_duration_minutes"] = int(
            (link.date - (link.parent.resolved_at or link.created_at)).total_seconds() // 60
        )

    return document


# =============================================================================
# SIDE EFFECTS
# =============================================================================


class SideEffects:
    """Isolated, best-effort calls to the external collaborators."""

    def __init__(
        self,
        chat: ChatClient,
        search: SearchIndex,
        metrics: Metrics,
        settings: Settings,
        projects: ProjectConfigService,
    ):
        self.chat = chat
        self.search = search
        self.metrics = metrics
        self.settings = settings
        self.projects = projects

    def _failed(self, service: str, action: str, error: Exception) -> None:
        service = getattr(error, "service", service)
        logger.error(f"{service} {action} failed: {error}")
        self.metrics.increment(f"errors.{service}.{action}")

    async def index(self, item: ActionItem, counters: dict[str, int] | None = None) -> bool:
        """Refresh the search document of an item."""
        try:
            document = build_document(item, self.projects, self.settings.slack_workspace_url)
            await self.search.upsert_document(str(item.id), document, counters)
        except Exception as e:
            self._failed("search", "index", e)
            return False
        return True

    async def log_activity(
        self,
        actor: str | None,
        item_id: UUID,
        action: str,
        target: str | None = None,
    ) -> bool:
        """Append one line to the activity channel, when one is configured."""
        channel = self.settings.slack_activity_channel
        if not channel:
            return False

        who = f"<@{actor}>" if actor else "Slacker"
        text = f"{who} {action} action item (id={item_id})"
        if target:
            text += f" <@{target}>"

        try:
            await self.chat.post_message(channel, text)
        except Exception as e:
            self._failed("slack", "activity", e)
            return False
        return True

    async def notify(self, channel: str, text: str, action: str = "notify") -> bool:
        """Post a message (or a DM when `channel` is a user id)."""
        try:
            await self.chat.post_message(channel, text)
        except Exception as e:
            self._failed("slack", action, e)
            return False
        return True

    async def notify_ephemeral(self, channel: str, user: str, text: str) -> bool:
        try:
            await self.chat.post_ephemeral(channel, user, text)
        except Exception as e:
            self._failed("slack", "ephemeral", e)
            return False
        return True
