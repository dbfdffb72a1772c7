"""
Action Item State Machine.

States and the moves between them:

    open      -> assigned, snoozed, closed(resolved|irrelevant)
    assigned  -> open (unassign), snoozed, closed(resolved|irrelevant)
    snoozed   -> open/assigned (unsnooze), assigned, closed(resolved|irrelevant)
    closed    -> open/assigned (reopen)
    closed(resolved) -> spawns a follow_up child that opens on its due date

The pending follow-up is a separate child item, never a flag on the parent:
the parent stays closed while a FollowUp row points forward.

Every user-visible transition is committed first; the search refresh, the
activity-log line and the counter metric run afterwards and never roll it
back.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.business_days import next_business_day_noon, roll_to_business_day
from ..models import ActionItem, ActionStatus, FollowUp, ResolutionFlag, User
from .exceptions import (
    ActionItemNotFoundError,
    InvalidTransitionError,
    ValidationError,
)
from .identity import IdentityResolver
from .side_effects import SideEffects, load_item

logger = logging.getLogger(__name__)

OPEN_LIKE = (ActionStatus.OPEN, ActionStatus.ASSIGNED, ActionStatus.SNOOZED)


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class TransitionResult:
    """A committed transition and the confirmation shown to the actor."""
    item: ActionItem
    action: str
    message: str


# =============================================================================
# STATE MACHINE
# =============================================================================


class ActionItemService:
    """Owns the lifecycle of action items and enforces transition legality."""

    def __init__(self, session: AsyncSession, effects: SideEffects):
        self._session = session
        self._effects = effects
        self._projects = effects.projects
        self._tz = effects.settings.tz
        self._identity = IdentityResolver(session, effects.projects, effects.chat)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def get(self, item_id: UUID) -> ActionItem:
        """Get an action item or raise ActionItemNotFoundError."""
        item = await load_item(self._session, item_id)
        if item is None:
            raise ActionItemNotFoundError(f"Action item {item_id} not found")
        return item

    async def _actor(self, actor: str | None) -> User | None:
        if not actor:
            return None
        return await self._identity.resolve_chat_user(actor)

    async def _resolve_assignee(self, ref: str) -> User:
        """A configured maintainer id, or else a chat handle."""
        if self._projects.maintainer(ref) is not None:
            return await self._identity.resolve_maintainer(ref)
        return await self._identity.resolve_chat_user(ref)

    @staticmethod
    def _require(item: ActionItem, allowed: tuple[ActionStatus, ...], action: str) -> None:
        if item.status not in allowed:
            raise InvalidTransitionError(
                f"cannot {action} an item that is {item.status.value}"
            )

    @staticmethod
    def _clear_snooze(item: ActionItem, now: datetime) -> None:
        if item.snoozed_until is not None:
            item.last_snoozed_until = min(item.snoozed_until, now)
        item.snoozed_until = None
        item.snoozed_by_id = None

    async def _commit(
        self,
        item_id: UUID,
        action: str,
        message: str,
        actor: str | None,
        counters: dict[str, int] | None = None,
        target: str | None = None,
    ) -> TransitionResult:
        await self._session.commit()
        logger.info(f"Action item {item_id} {action} by {actor or 'system'}")

        item = await load_item(self._session, item_id)
        await self._effects.index(item, counters)
        await self._effects.log_activity(actor, item_id, action, target)
        self._effects.metrics.increment(f"slack.{action}")
        return TransitionResult(item=item, action=action, message=message)

    # =========================================================================
    # ASSIGNMENT
    # =========================================================================

    async def assign(
        self,
        item_id: UUID,
        actor: str | None,
        assignee: str,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Assign an open-like item; assigning a snoozed item wakes it up."""
        now = now or datetime.now(timezone.utc)
        item = await self.get(item_id)
        self._require(item, OPEN_LIKE, "assign")

        user = await self._resolve_assignee(assignee)
        item.assignee_id = user.id
        item.assigned_on = now
        self._clear_snooze(item, now)
        item.status = ActionStatus.ASSIGNED
        await self._session.flush()

        return await self._commit(
            item_id,
            "assigned",
            f":white_check_mark: Action item (id={item_id}) assigned to <@{user.slack_id or user.display_handle}>",
            actor,
            counters={"times_assigned": 1},
            target=user.slack_id,
        )

    async def unassign(self, item_id: UUID, actor: str | None) -> TransitionResult:
        item = await self.get(item_id)
        self._require(item, (ActionStatus.OPEN, ActionStatus.ASSIGNED), "unassign")

        item.assignee_id = None
        item.assigned_on = None
        item.status = ActionStatus.OPEN
        await self._session.flush()

        return await self._commit(
            item_id,
            "unassigned",
            f":white_check_mark: Action item (id={item_id}) unassigned.",
            actor,
        )

    # =========================================================================
    # SNOOZING
    # =========================================================================

    async def snooze(
        self,
        item_id: UUID,
        actor: str,
        until: datetime | None = None,
        reason: str = "",
        now: datetime | None = None,
    ) -> TransitionResult:
        """
        Snooze an open-like item.

        Without a target the item sleeps until the next business day at local
        noon. An explicit target must be in the future; one landing on a
        weekend is moved to Monday.
        """
        now = now or datetime.now(timezone.utc)
        item = await self.get(item_id)
        self._require(item, OPEN_LIKE, "snooze")

        snoozer = await self._actor(actor)
        if snoozer is None:
            raise ValidationError("a snoozing user is required")

        if until is None:
            target = next_business_day_noon(now, self._tz)
        else:
            if until.tzinfo is None:
                raise ValidationError("snooze date must include a timezone")
            if until <= now:
                raise ValidationError("snooze date must be in the future")
            target = roll_to_business_day(until, self._tz)

        item.snoozed_until = target
        item.snooze_count += 1
        item.snoozed_by_id = snoozer.id
        item.status = ActionStatus.SNOOZED
        if reason:
            item.reason = reason
        await self._session.flush()

        return await self._commit(
            item_id,
            "snoozed",
            f":white_check_mark: Action item (id={item_id}) snoozed until {target.isoformat()} "
            f"by <@{actor}> (Snooze count: {item.snooze_count})",
            actor,
            counters={"times_snoozed": 1},
        )

    async def unsnooze(
        self,
        item_id: UUID,
        actor: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Wake a snoozed item; it returns to assigned when an assignee remains."""
        now = now or datetime.now(timezone.utc)
        item = await self.get(item_id)
        self._require(item, (ActionStatus.SNOOZED,), "unsnooze")

        self._clear_snooze(item, now)
        item.snooze_count = max(0, item.snooze_count - 1)
        item.status = ActionStatus.ASSIGNED if item.assignee_id else ActionStatus.OPEN
        await self._session.flush()

        who = f" by <@{actor}>" if actor else ""
        return await self._commit(
            item_id,
            "unsnoozed",
            f":white_check_mark: Action item (id={item_id}) unsnoozed{who}",
            actor,
        )

    # =========================================================================
    # CLOSING
    # =========================================================================

    async def _close(
        self,
        item_id: UUID,
        reason: str,
        flag: ResolutionFlag,
        now: datetime | None,
    ) -> ActionItem:
        now = now or datetime.now(timezone.utc)
        if not reason or not reason.strip():
            raise ValidationError("reason is required")

        item = await self.get(item_id)
        self._require(item, OPEN_LIKE, "close")

        item.status = ActionStatus.CLOSED
        item.flag = flag
        item.reason = reason.strip()
        item.resolved_at = now
        self._clear_snooze(item, now)

        # Closing a follow-up child completes its chain link
        for link in item.parent_links:
            if link.completed_at is None:
                link.completed_at = now

        await self._session.flush()
        return item

    async def resolve(
        self,
        item_id: UUID,
        actor: str | None,
        reason: str,
        now: datetime | None = None,
    ) -> TransitionResult:
        await self._close(item_id, reason, ResolutionFlag.RESOLVED, now)
        return await self._commit(
            item_id,
            "resolved",
            f":white_check_mark: Action item (id={item_id}) resolved.",
            actor,
            counters={"times_resolved": 1},
        )

    async def mark_irrelevant(
        self,
        item_id: UUID,
        actor: str | None,
        reason: str,
        now: datetime | None = None,
    ) -> TransitionResult:
        await self._close(item_id, reason, ResolutionFlag.IRRELEVANT, now)
        return await self._commit(
            item_id,
            "irrelevant",
            f":white_check_mark: Action item (id={item_id}) marked as irrelevant.",
            actor,
            counters={"times_irrelevant": 1},
        )

    async def reopen(self, item_id: UUID, actor: str | None) -> TransitionResult:
        """Move a closed item back to open (or assigned, when it still has an assignee)."""
        item = await self.get(item_id)
        self._require(item, (ActionStatus.CLOSED,), "reopen")

        item.status = ActionStatus.ASSIGNED if item.assignee_id else ActionStatus.OPEN
        item.flag = None
        item.resolved_at = None
        await self._session.flush()

        return await self._commit(
            item_id,
            "reopened",
            f":white_check_mark: Action item (id={item_id}) reopened.",
            actor,
            counters={"times_reopened": 1},
        )

    # =========================================================================
    # FOLLOW-UPS
    # =========================================================================

    async def follow_up(
        self,
        item_id: UUID,
        actor: str | None,
        on: datetime,
        notes: str = "",
        now: datetime | None = None,
    ) -> TransitionResult:
        """
        Schedule a follow-up of a resolved item.

        A parent has at most one live (future-dated, unfired) follow-up: when
        one exists its date, notes and assignee are updated in place;
        otherwise a new child item in status follow_up is spawned.
        """
        now = now or datetime.now(timezone.utc)
        item = await self.get(item_id)
        if item.status != ActionStatus.CLOSED or item.flag != ResolutionFlag.RESOLVED:
            raise InvalidTransitionError("only resolved items can be followed up")
        if on.tzinfo is None:
            raise ValidationError("follow-up date must include a timezone")
        if on <= now:
            raise ValidationError("follow-up date must be in the future")

        live = [f for f in item.follow_ups if f.fired_at is None and f.date > now]
        if live:
            link = live[0]
            link.date = on
            child = link.next_item
            child.status = ActionStatus.FOLLOW_UP
            child.notes = notes
            child.assignee_id = item.assignee_id
            child.assigned_on = now if item.assignee_id else None
            created = False
        else:
            child = ActionItem(
                status=ActionStatus.FOLLOW_UP,
                notes=notes,
                assignee_id=item.assignee_id,
                assigned_on=now if item.assignee_id else None,
            )
            self._session.add(child)
            await self._session.flush()
            self._session.add(FollowUp(parent_id=item.id, next_item_id=child.id, date=on))
            created = True

        await self._session.flush()
        child_id = child.id
        logger.info(
            f"Follow-up of {item_id} {'created' if created else 'moved'} to {on.isoformat()} "
            f"(child {child_id})"
        )

        result = await self._commit(
            item_id,
            "follow_up",
            f":white_check_mark: Action item (id={item_id}) will be followed up on {on.isoformat()}",
            actor,
        )
        await self._effects.index(await load_item(self._session, child_id))
        return result

    # =========================================================================
    # NOTES
    # =========================================================================

    async def update_notes(self, item_id: UUID, actor: str | None, notes: str) -> TransitionResult:
        item = await self.get(item_id)
        item.notes = notes
        await self._session.flush()

        return await self._commit(
            item_id,
            "notes",
            f":white_check_mark: Notes of action item (id={item_id}) updated.",
            actor,
        )
