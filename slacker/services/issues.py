"""
Tracked issue ingestion.

Issue and pull-request webhooks may be redelivered, so every event is an
upsert keyed by the forge node id: replaying `opened` leaves exactly one
Tracked Issue and one Action Item behind.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import ActionItem, ActionStatus, IssueState, ResolutionFlag, TrackedIssue
from ..schemas.events import IssueEvent
from .identity import IdentityResolver
from .ingestion import IngestionResult
from .participants import ParticipantTracker
from .side_effects import SideEffects, load_item

logger = logging.getLogger(__name__)


class IssueIngestionService:
    """Mirrors forge issues and pull requests into Action Items."""

    def __init__(self, session: AsyncSession, effects: SideEffects):
        self._session = session
        self._effects = effects
        self._projects = effects.projects
        self._identity = IdentityResolver(session, effects.projects, effects.chat)
        self._participants = ParticipantTracker(session, self._identity)

    async def handle_event(self, event: IssueEvent, now: datetime | None = None) -> IngestionResult:
        now = now or datetime.now(timezone.utc)

        if self._projects.project_for_repo(event.repository_url) is None:
            return IngestionResult("ignored", reason="untracked repository")

        if event.action == "closed":
            result = await self._close(event, now)
        else:
            result = await self._upsert(event)

        self._effects.metrics.increment(f"github.{event.action}")
        return result

    async def _find(self, node_id: str) -> TrackedIssue | None:
        result = await self._session.execute(
            select(TrackedIssue).where(TrackedIssue.node_id == node_id)
        )
        return result.scalar_one_or_none()

    def _apply(self, issue: TrackedIssue, event: IssueEvent) -> None:
        issue.number = event.number
        issue.kind = event.kind
        issue.title = event.title
        issue.body = event.body
        issue.labels = list(event.labels)
        issue.repository_url = event.repository_url
        issue.state = IssueState.OPEN

    def _apply_comments(self, item: ActionItem, event: IssueEvent) -> None:
        item.total_replies = event.comment_count
        if event.first_comment_at:
            item.first_reply_on = event.first_comment_at
        if event.last_comment_at:
            item.last_reply_on = event.last_comment_at

    async def _upsert(self, event: IssueEvent) -> IngestionResult:
        issue = await self._find(event.node_id)
        counters = None

        if issue is None:
            maintainer_logins = {
                m.github for m in self._projects.resolve_maintainers(repo_url=event.repository_url)
                if m.github
            }
            if event.author_login in maintainer_logins:
                return IngestionResult(
                    "skipped_maintainer", reason=f"{event.author_login} is a maintainer"
                )

            author = await self._identity.resolve(forge_login=event.author_login)
            try:
                async with self._session.begin_nested():
                    item = ActionItem(status=ActionStatus.OPEN)
                    self._session.add(item)
                    await self._session.flush()

                    issue = TrackedIssue(
                        node_id=event.node_id,
                        author_id=author.id,
                        action_item_id=item.id,
                        number=event.number,
                        repository_url=event.repository_url,
                    )
                    self._apply(issue, event)
                    self._session.add(issue)
                    await self._session.flush()
                outcome = "created"
            except IntegrityError:
                # Redelivery raced us to the insert
                issue = await self._find(event.node_id)
                if issue is None:
                    raise
                self._apply(issue, event)
                outcome = "updated"
        else:
            self._apply(issue, event)
            outcome = "updated"

        # load_item re-reads with populate_existing; pending edits must be written first
        await self._session.flush()
        item = await load_item(self._session, issue.action_item_id)
        self._apply_comments(item, event)

        if event.action == "reopened" and item.is_closed:
            item.status = ActionStatus.ASSIGNED if item.assignee_id else ActionStatus.OPEN
            item.flag = None
            item.resolved_at = None
            counters = {"times_reopened": 1}
            outcome = "reopened"

        await self._participants.sync(item.id, forge_logins=event.participants)
        await self._session.commit()
        logger.info(f"Issue {event.repository_url}#{event.number} {outcome} (item {item.id})")

        item = await load_item(self._session, item.id)
        await self._effects.index(item, counters)
        return IngestionResult(outcome, item_id=item.id)

    async def _close(self, event: IssueEvent, now: datetime) -> IngestionResult:
        issue = await self._find(event.node_id)
        if issue is None:
            return IngestionResult("ignored", reason="issue not tracked")

        issue.state = IssueState.CLOSED
        await self._session.flush()
        item = await load_item(self._session, issue.action_item_id)
        self._apply_comments(item, event)

        counters = None
        if not item.is_closed:
            item.status = ActionStatus.CLOSED
            item.flag = ResolutionFlag.RESOLVED
            item.resolved_at = event.closed_at or now
            item.snoozed_until = None
            item.snoozed_by_id = None
            counters = {"times_resolved": 1}

        await self._participants.sync(item.id, forge_logins=event.participants)
        await self._session.commit()
        logger.info(f"Issue {event.repository_url}#{event.number} closed (item {item.id})")

        item = await load_item(self._session, item.id)
        await self._effects.index(item, counters)
        return IngestionResult("closed", item_id=item.id)
