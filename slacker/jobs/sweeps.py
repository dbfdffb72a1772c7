"""
Scheduler Sweeps: time-based reconciliation of action items.

Four sweeps run independently of the event path:
1. Unsnooze: remind the snoozing user once the snooze is due
2. Follow-up: open the spawned child item once its date is due
3. Auto-unassign: release items that sat assigned for two business days
4. Weekly digest: one status summary per maintainer

Due-time sweeps act only inside a grace window of one hour past the due
timestamp, so a late run never catches up on very stale rows. Each sweep
continues past a failing item; failures are logged, counted and returned.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.business_days import auto_unassign_deadline, within_grace_window
from ..models import ActionItem, ActionStatus, FollowUp, SweepLease, User
from ..services.action_items import ActionItemService
from ..services.side_effects import (
    SideEffects,
    item_type,
    item_url,
    load_item,
    origin_of,
    project_of,
)

logger = logging.getLogger(__name__)

CLOSED_WINDOW = timedelta(days=7)


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class SweepResult:
    """Summary of one sweep pass."""
    name: str
    candidates: int = 0
    acted: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class ProjectDigest:
    """Per-project numbers of the weekly digest."""
    project: str
    open_by_type: dict[str, int]
    closed_by_type: dict[str, int]
    contributors: list[str]

    @classmethod
    def empty(cls, project: str) -> "ProjectDigest":
        return cls(project, defaultdict(int), defaultdict(int), [])

    @property
    def open_total(self) -> int:
        return sum(self.open_by_type.values())

    @property
    def closed_total(self) -> int:
        return sum(self.closed_by_type.values())


# =============================================================================
# SWEEPS
# =============================================================================


class SweepService:
    """Periodic reconciliation of time-based transitions."""

    def __init__(self, session: AsyncSession, effects: SideEffects):
        self._session = session
        self._effects = effects
        self._settings = effects.settings
        self._projects = effects.projects
        self._tz = effects.settings.tz
        self._grace = timedelta(minutes=effects.settings.sweep_grace_minutes)

    async def _failed(self, result: SweepResult, item_id, error: Exception) -> None:
        await self._session.rollback()
        message = f"{result.name} failed for {item_id}: {error}"
        logger.error(message)
        result.failed += 1
        result.errors.append(message)
        self._effects.metrics.increment(f"errors.sweeps.{result.name}")

    def _finish(self, result: SweepResult) -> SweepResult:
        self._effects.metrics.increment(f"sweeps.{result.name}.acted", result.acted)
        logger.info(
            f"Sweep {result.name}: {result.candidates} candidates, "
            f"{result.acted} acted, {result.failed} failed"
        )
        return result

    def _url(self, item: ActionItem) -> str | None:
        return item_url(item, self._settings.slack_workspace_url)

    # =========================================================================
    # UNSNOOZE
    # =========================================================================

    async def unsnooze_sweep(self, now: datetime | None = None) -> SweepResult:
        """Remind snoozing users of due snoozes; optionally wake the items too."""
        now = now or datetime.now(timezone.utc)
        result = SweepResult(name="unsnooze")

        query = select(ActionItem.id).where(
            ActionItem.status == ActionStatus.SNOOZED,
            ActionItem.snoozed_until.is_not(None),
            ActionItem.snoozed_until <= now,
            ActionItem.snoozed_until > now - self._grace,
        )
        item_ids = list((await self._session.execute(query)).scalars().all())
        result.candidates = len(item_ids)

        for item_id in item_ids:
            try:
                item = await load_item(self._session, item_id)
                if item is None or not within_grace_window(item.snoozed_until, now, self._grace):
                    continue

                snoozer = item.snoozed_by.slack_id if item.snoozed_by else None
                url = self._url(item)

                if self._settings.unsnooze_reactivates:
                    await ActionItemService(self._session, self._effects).unsnooze(item_id, None, now=now)

                if snoozer:
                    await self._effects.notify(
                        snoozer,
                        f":wave: Hey, we unsnoozed <{url}|{item_id}> for you. Feel free to pick it up again!",
                        action="unsnooze",
                    )
                result.acted += 1
            except Exception as e:
                await self._failed(result, item_id, e)

        return self._finish(result)

    # =========================================================================
    # FOLLOW-UPS
    # =========================================================================

    async def follow_up_sweep(self, now: datetime | None = None) -> SweepResult:
        """Open due follow-up children and point their assignee at the original."""
        now = now or datetime.now(timezone.utc)
        result = SweepResult(name="follow_up")

        query = select(FollowUp.parent_id, FollowUp.next_item_id).where(
            FollowUp.fired_at.is_(None),
            FollowUp.date <= now,
            FollowUp.date > now - self._grace,
        )
        links = list((await self._session.execute(query)).all())
        result.candidates = len(links)

        for parent_id, child_id in links:
            try:
                child = await load_item(self._session, child_id)
                link = next(
                    (f for f in child.parent_links if f.parent_id == parent_id), None
                ) if child else None
                if link is None or not within_grace_window(link.date, now, self._grace):
                    continue

                link.fired_at = now
                if child.status == ActionStatus.FOLLOW_UP:
                    child.status = ActionStatus.OPEN
                    if child.assignee_id is not None:
                        child.assigned_on = now
                await self._session.commit()

                child = await load_item(self._session, child_id)
                await self._effects.index(child)

                assignee = child.assignee.slack_id if child.assignee else None
                if assignee:
                    await self._effects.notify(
                        assignee,
                        f":wave: Hey, you asked us to follow up on <{self._url(child)}|{parent_id}>. "
                        "Take a look at it again!",
                        action="follow_up",
                    )
                else:
                    logger.info(f"Follow-up {child_id} fired with nobody assigned")
                result.acted += 1
            except Exception as e:
                await self._failed(result, child_id, e)

        return self._finish(result)

    # =========================================================================
    # AUTO-UNASSIGN
    # =========================================================================

    @staticmethod
    def _snooze_expired(item: ActionItem, now: datetime) -> bool:
        """A snooze whose time has passed counts as not snoozed."""
        return (
            item.status == ActionStatus.SNOOZED
            and item.snoozed_until is not None
            and item.snoozed_until <= now
        )

    async def auto_unassign_sweep(self, now: datetime | None = None) -> SweepResult:
        """Release items assigned for more than two business days.

        Items still marked snoozed whose snooze has expired are candidates
        too; their deadline counts from the end of the snooze.
        """
        now = now or datetime.now(timezone.utc)
        result = SweepResult(name="unassign")

        query = select(ActionItem.id).where(
            ActionItem.assignee_id.is_not(None),
            ActionItem.assigned_on.is_not(None),
            or_(
                ActionItem.status.in_([ActionStatus.OPEN, ActionStatus.ASSIGNED]),
                and_(
                    ActionItem.status == ActionStatus.SNOOZED,
                    ActionItem.snoozed_until <= now,
                ),
            ),
        )
        item_ids = list((await self._session.execute(query)).scalars().all())
        result.candidates = len(item_ids)

        for item_id in item_ids:
            try:
                item = await load_item(self._session, item_id)
                if item is None or item.assigned_on is None:
                    continue

                expired = self._snooze_expired(item, now)
                if item.status == ActionStatus.SNOOZED and not expired:
                    continue

                last_snooze = item.last_snoozed_until
                if expired and (last_snooze is None or item.snoozed_until > last_snooze):
                    last_snooze = item.snoozed_until

                deadline = auto_unassign_deadline(item.assigned_on, last_snooze, self._tz)
                if now < deadline:
                    continue

                former = item.assignee.slack_id if item.assignee else None
                item.assignee_id = None
                item.assigned_on = None
                item.status = ActionStatus.OPEN
                if expired:
                    item.last_snoozed_until = last_snooze
                    item.snoozed_until = None
                    item.snoozed_by_id = None
                await self._session.commit()
                logger.info(f"Auto-unassigned action item {item_id} (deadline {deadline.isoformat()})")

                item = await load_item(self._session, item_id)
                await self._effects.index(item)
                await self._effects.log_activity(None, item_id, "auto-unassigned", former)
                if former:
                    await self._effects.notify(
                        former,
                        f":warning: Hey, we unassigned <{self._url(item)}|{item_id}> from you because "
                        "you didn't resolve it in time. Feel free to pick it up again!",
                        action="unassign",
                    )
                result.acted += 1
            except Exception as e:
                await self._failed(result, item_id, e)

        return self._finish(result)

    # =========================================================================
    # WEEKLY DIGEST
    # =========================================================================

    async def _project_digests(self, now: datetime) -> dict[str, ProjectDigest]:
        result = await self._session.execute(
            select(ActionItem.id).where(ActionItem.status != ActionStatus.FOLLOW_UP)
        )
        digests: dict[str, ProjectDigest] = {}
        contributors: dict[str, dict[str, None]] = defaultdict(dict)

        for item_id in result.scalars().all():
            item = await load_item(self._session, item_id)
            project = project_of(item, self._projects)
            if project is None:
                continue

            digest = digests.setdefault(project, ProjectDigest.empty(project))
            kind = item_type(origin_of(item))

            if (
                item.status in (ActionStatus.OPEN, ActionStatus.ASSIGNED)
                or self._snooze_expired(item, now)
            ):
                digest.open_by_type[kind] += 1
                if item.assignee is not None:
                    maintainer = self._projects.maintainer_by_handle(
                        chat_id=item.assignee.slack_id,
                        forge_login=item.assignee.github_username,
                    )
                    name = maintainer.id if maintainer else item.assignee.display_handle
                    contributors[project][name] = None
            elif (
                item.status == ActionStatus.CLOSED
                and item.resolved_at is not None
                and item.resolved_at >= now - CLOSED_WINDOW
            ):
                digest.closed_by_type[kind] += 1

        for project, names in contributors.items():
            digests[project].contributors = list(names)
        return digests

    @staticmethod
    def _digest_text(maintainer_id: str, digests: list[ProjectDigest]) -> str:
        text = f":wave: Hey {maintainer_id}, here's your weekly status report!"
        for digest in digests:
            opened, closed = digest.open_by_type, digest.closed_by_type
            text += f"\n\nProject: *{digest.project}*"
            text += (
                f"\nOpen action items: {digest.open_total} ({opened['message']} slack messages, "
                f"{opened['pull']} pull requests, {opened['issue']} issues)"
            )
            text += (
                f"\nTriaged this week: {digest.closed_total} ({closed['message']} slack messages, "
                f"{closed['pull']} pull requests, {closed['issue']} issues)"
            )
            text += f"\nTotal contributors: {len(digest.contributors)}"
            if digest.contributors:
                text += f" ({', '.join(digest.contributors)})"
        text += "\n\nYou can opt out of these status reports by running `/slacker opt-out`."
        return text

    async def weekly_digest_sweep(self, now: datetime | None = None) -> SweepResult:
        """One summary DM per known, opted-in maintainer."""
        now = now or datetime.now(timezone.utc)
        result = SweepResult(name="digest")
        digests = await self._project_digests(now)

        for maintainer in self._projects.all_maintainers():
            result.candidates += 1
            try:
                if not maintainer.slack:
                    continue

                conditions = [User.slack_id == maintainer.slack]
                if maintainer.github:
                    conditions.append(User.github_username == maintainer.github)
                user = (
                    await self._session.execute(
                        select(User).where(or_(*conditions)).order_by(User.created_at).limit(1)
                    )
                ).scalar_one_or_none()
                if user is None or user.opt_out:
                    continue

                projects = self._projects.projects_for_maintainer(maintainer.id)
                text = self._digest_text(
                    maintainer.id,
                    [digests.get(p) or ProjectDigest.empty(p) for p in projects],
                )
                if await self._effects.notify(maintainer.slack, text, action="digest"):
                    result.acted += 1
            except Exception as e:
                await self._failed(result, maintainer.id, e)

        return self._finish(result)

    # =========================================================================
    # LEASES
    # =========================================================================

    async def acquire_lease(
        self,
        name: str,
        holder: str,
        ttl: timedelta,
        now: datetime | None = None,
    ) -> bool:
        """Take the named lease unless another holder has an unexpired one."""
        now = now or datetime.now(timezone.utc)
        expires_at = now + ttl

        taken = await self._session.execute(
            update(SweepLease)
            .where(
                SweepLease.name == name,
                or_(SweepLease.expires_at <= now, SweepLease.holder == holder),
            )
            .values(holder=holder, expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        if taken.rowcount == 1:
            await self._session.commit()
            return True

        existing = await self._session.execute(
            select(SweepLease.name).where(SweepLease.name == name)
        )
        if existing.scalar_one_or_none() is not None:
            await self._session.rollback()
            return False

        try:
            async with self._session.begin_nested():
                self._session.add(SweepLease(name=name, holder=holder, expires_at=expires_at))
                await self._session.flush()
        except IntegrityError:
            # Another runner created it first
            await self._session.rollback()
            return False

        await self._session.commit()
        return True

    async def release_lease(self, name: str, holder: str) -> None:
        await self._session.execute(
            delete(SweepLease)
            .where(SweepLease.name == name, SweepLease.holder == holder)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
