"""
Tests for the Scheduler Sweeps.

These tests verify:
1. AUTO-UNASSIGN: two business days, weekends not counted
2. FOLLOW-UP: due children open and ping their assignee inside the grace window
3. UNSNOOZE: due snoozes remind the snoozing user, optionally waking the item
4. DIGEST: one summary per opted-in maintainer
5. LEASES: overlapping runs of one sweep are refused
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from slacker.jobs.scheduler import SweepScheduler
from slacker.jobs.sweeps import SweepService
from slacker.models import ActionStatus
from slacker.services.action_items import ActionItemService
from slacker.services.identity import IdentityResolver
from slacker.services.side_effects import load_item

from conftest import MAINTAINER_SLACK

# Friday afternoon
FRIDAY = datetime(2024, 3, 8, 15, 0, tzinfo=timezone.utc)
# Monday morning
MONDAY = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)


# =============================================================================
# TEST: AUTO-UNASSIGN
# =============================================================================


class TestAutoUnassign:

    async def test_weekend_is_not_counted(self, session: AsyncSession, effects, make_item, chat):
        item = await make_item()
        await ActionItemService(session, effects).assign(item.id, None, "zrl", now=FRIDAY)
        sweeps = SweepService(session, effects)

        # Monday 15:00 is only one business day later
        early = await sweeps.auto_unassign_sweep(now=FRIDAY + timedelta(days=3))
        assert early.acted == 0
        assert (await load_item(session, item.id)).status == ActionStatus.ASSIGNED

        # Tuesday 15:00 is the second business day
        due = await sweeps.auto_unassign_sweep(now=FRIDAY + timedelta(days=4))
        assert due.acted == 1

        refreshed = await load_item(session, item.id)
        assert refreshed.status == ActionStatus.OPEN
        assert refreshed.assignee_id is None
        assert refreshed.assigned_on is None
        assert any("unassigned" in text for text in chat.sent_to(MAINTAINER_SLACK))
        assert effects.metrics.get("sweeps.unassign.acted") == 1

    async def test_recent_snooze_extends_deadline(self, session: AsyncSession, effects, make_item):
        item = await make_item()
        service = ActionItemService(session, effects)
        await service.assign(item.id, None, "zrl", now=MONDAY)
        await service.snooze(item.id, MAINTAINER_SLACK, now=MONDAY)
        await service.unsnooze(item.id, MAINTAINER_SLACK, now=MONDAY + timedelta(days=1, hours=3))

        # Assigned Monday 10:00, snooze ended Tuesday 12:00: deadline is Thursday 12:00
        result = await SweepService(session, effects).auto_unassign_sweep(
            now=datetime(2024, 3, 7, 11, 0, tzinfo=timezone.utc)
        )

        assert result.acted == 0

    async def test_expired_snooze_does_not_shield_assignment(
        self, session: AsyncSession, effects, make_item, chat
    ):
        item = await make_item()
        service = ActionItemService(session, effects)
        await service.assign(item.id, None, "zrl", now=MONDAY)
        await service.snooze(item.id, MAINTAINER_SLACK, now=MONDAY)
        snooze_end = datetime(2024, 3, 5, 12, 0, tzinfo=timezone.utc)
        sweeps = SweepService(session, effects)

        # Reminder only: the item stays marked snoozed
        await sweeps.unsnooze_sweep(now=snooze_end + timedelta(minutes=30))
        assert (await load_item(session, item.id)).status == ActionStatus.SNOOZED

        # Two business days after the snooze ended is Thursday 12:00
        early = await sweeps.auto_unassign_sweep(now=datetime(2024, 3, 7, 11, 0, tzinfo=timezone.utc))
        assert early.acted == 0

        late = await sweeps.auto_unassign_sweep(now=datetime(2024, 3, 7, 12, 30, tzinfo=timezone.utc))
        assert late.acted == 1

        refreshed = await load_item(session, item.id)
        assert refreshed.status == ActionStatus.OPEN
        assert refreshed.assignee_id is None
        assert refreshed.snoozed_until is None
        assert refreshed.snoozed_by_id is None
        assert refreshed.last_snoozed_until == snooze_end
        assert any("unassigned" in text for text in chat.sent_to(MAINTAINER_SLACK))

    async def test_active_snooze_is_left_alone(self, session: AsyncSession, effects, make_item):
        item = await make_item()
        service = ActionItemService(session, effects)
        await service.assign(item.id, None, "zrl", now=MONDAY)
        await service.snooze(
            item.id, MAINTAINER_SLACK, until=MONDAY + timedelta(days=14), now=MONDAY
        )

        result = await SweepService(session, effects).auto_unassign_sweep(now=MONDAY + timedelta(days=7))

        assert result.candidates == 0
        assert (await load_item(session, item.id)).status == ActionStatus.SNOOZED


# =============================================================================
# TEST: FOLLOW-UPS
# =============================================================================


class TestFollowUpSweep:

    async def _scheduled(self, session, effects, make_item):
        item = await make_item()
        service = ActionItemService(session, effects)
        await service.assign(item.id, None, "zrl", now=MONDAY)
        await service.resolve(item.id, None, "Done", now=MONDAY)
        on = MONDAY + timedelta(days=2)
        result = await service.follow_up(item.id, None, on, now=MONDAY)
        return item, result.item.follow_ups[0].next_item_id, on

    async def test_due_follow_up_opens_child(self, session: AsyncSession, effects, make_item, chat):
        item, child_id, on = await self._scheduled(session, effects, make_item)

        result = await SweepService(session, effects).follow_up_sweep(now=on + timedelta(minutes=10))

        assert result.acted == 1
        child = await load_item(session, child_id)
        assert child.status == ActionStatus.OPEN
        assert child.parent_links[0].fired_at == on + timedelta(minutes=10)
        assert child.assigned_on == on + timedelta(minutes=10)
        assert any("follow up" in text for text in chat.sent_to(MAINTAINER_SLACK))

        # Already fired: a second pass does nothing
        again = await SweepService(session, effects).follow_up_sweep(now=on + timedelta(minutes=20))
        assert again.candidates == 0

    async def test_stale_follow_up_is_skipped(self, session: AsyncSession, effects, make_item):
        item, child_id, on = await self._scheduled(session, effects, make_item)

        result = await SweepService(session, effects).follow_up_sweep(now=on + timedelta(hours=2))

        assert result.acted == 0
        assert (await load_item(session, child_id)).status == ActionStatus.FOLLOW_UP

    async def test_closing_child_completes_link(self, session: AsyncSession, effects, make_item):
        item, child_id, on = await self._scheduled(session, effects, make_item)
        await SweepService(session, effects).follow_up_sweep(now=on)

        await ActionItemService(session, effects).resolve(child_id, None, "Checked", now=on + timedelta(hours=1))

        child = await load_item(session, child_id)
        assert child.parent_links[0].completed_at == on + timedelta(hours=1)


# =============================================================================
# TEST: UNSNOOZE
# =============================================================================


class TestUnsnoozeSweep:

    async def test_reminds_snoozer_and_keeps_item_snoozed(
        self, session: AsyncSession, effects, make_item, chat
    ):
        item = await make_item()
        await ActionItemService(session, effects).snooze(item.id, "U0HELPER", now=MONDAY)
        due = datetime(2024, 3, 5, 12, 0, tzinfo=timezone.utc)

        result = await SweepService(session, effects).unsnooze_sweep(now=due + timedelta(minutes=5))

        assert result.acted == 1
        assert any("unsnoozed" in text for text in chat.sent_to("U0HELPER"))
        assert (await load_item(session, item.id)).status == ActionStatus.SNOOZED

    async def test_reactivating_policy_wakes_item(
        self, session: AsyncSession, effects, make_item, settings
    ):
        settings.unsnooze_reactivates = True
        item = await make_item()
        await ActionItemService(session, effects).snooze(item.id, "U0HELPER", now=MONDAY)
        due = datetime(2024, 3, 5, 12, 0, tzinfo=timezone.utc)

        await SweepService(session, effects).unsnooze_sweep(now=due + timedelta(minutes=5))

        refreshed = await load_item(session, item.id)
        assert refreshed.status == ActionStatus.OPEN
        assert refreshed.snooze_count == 0

    async def test_stale_snooze_is_skipped(self, session: AsyncSession, effects, make_item, chat):
        item = await make_item()
        await ActionItemService(session, effects).snooze(item.id, "U0HELPER", now=MONDAY)
        due = datetime(2024, 3, 5, 12, 0, tzinfo=timezone.utc)

        result = await SweepService(session, effects).unsnooze_sweep(now=due + timedelta(hours=3))

        assert result.acted == 0
        assert chat.sent_to("U0HELPER") == []


# =============================================================================
# TEST: WEEKLY DIGEST
# =============================================================================


class TestDigest:

    async def test_digest_skips_opted_out_maintainers(
        self, session: AsyncSession, effects, make_item, chat
    ):
        resolver = IdentityResolver(session, effects.projects, effects.chat)
        await resolver.resolve_maintainer("zrl")
        max_user = await resolver.resolve_maintainer("max")
        max_user.opt_out = True
        await session.commit()

        await make_item()
        closed = await make_item(created_at=MONDAY - timedelta(days=1))
        await ActionItemService(session, effects).resolve(closed.id, None, "Done", now=MONDAY)

        result = await SweepService(session, effects).weekly_digest_sweep(now=MONDAY + timedelta(days=4))

        assert result.acted == 1
        assert chat.sent_to("U0MAX") == []
        [text] = chat.sent_to(MAINTAINER_SLACK)
        assert "Project: *arcade*" in text
        assert "Open action items: 1 (1 slack messages, 0 pull requests, 0 issues)" in text
        assert "Triaged this week: 1 (1 slack messages, 0 pull requests, 0 issues)" in text

    async def test_expired_snooze_counts_as_open(
        self, session: AsyncSession, effects, make_item, chat
    ):
        await IdentityResolver(session, effects.projects, effects.chat).resolve_maintainer("zrl")
        await session.commit()
        item = await make_item()
        await ActionItemService(session, effects).snooze(item.id, "U0HELPER", now=MONDAY)
        sweeps = SweepService(session, effects)

        await sweeps.weekly_digest_sweep(now=MONDAY + timedelta(hours=1))
        await sweeps.weekly_digest_sweep(now=MONDAY + timedelta(days=4))

        during, after = chat.sent_to(MAINTAINER_SLACK)
        assert "Open action items: 0 " in during
        assert "Open action items: 1 (1 slack messages" in after

    async def test_maintainer_without_user_is_skipped(self, session: AsyncSession, effects, chat):
        result = await SweepService(session, effects).weekly_digest_sweep(now=MONDAY)

        assert result.candidates == 2
        assert result.acted == 0
        assert chat.messages == []


# =============================================================================
# TEST: LEASES & SCHEDULER
# =============================================================================


class TestLeases:

    async def test_second_holder_is_refused_until_expiry(self, session: AsyncSession, effects):
        sweeps = SweepService(session, effects)
        ttl = timedelta(minutes=10)

        assert await sweeps.acquire_lease("unassign", "a", ttl, now=MONDAY)
        assert not await sweeps.acquire_lease("unassign", "b", ttl, now=MONDAY + timedelta(minutes=5))
        assert await sweeps.acquire_lease("unassign", "b", ttl, now=MONDAY + timedelta(minutes=11))

    async def test_release_frees_the_lease(self, session: AsyncSession, effects):
        sweeps = SweepService(session, effects)
        ttl = timedelta(minutes=10)

        await sweeps.acquire_lease("digest", "a", ttl, now=MONDAY)
        await sweeps.release_lease("digest", "a")

        assert await sweeps.acquire_lease("digest", "b", ttl, now=MONDAY)

    async def test_scheduler_skips_sweep_held_elsewhere(
        self, session: AsyncSession, session_factory, effects, settings
    ):
        now = datetime.now(timezone.utc)
        await SweepService(session, effects).acquire_lease("unassign", "other", timedelta(minutes=10), now=now)

        scheduler = SweepScheduler(session_factory, effects, settings, holder="me")

        assert await scheduler.run_once("unassign", now=now) is None
        result = await scheduler.run_once("follow_up", now=now)
        assert result.name == "follow_up"

    async def test_schedules_share_one_cron_loop(self, session_factory, effects, settings):
        scheduler = SweepScheduler(session_factory, effects, settings, holder="me")

        runs = scheduler.next_runs(datetime(2024, 3, 4, 10, 30, tzinfo=timezone.utc))

        assert runs[settings.sweep_cron] == datetime(2024, 3, 4, 11, 0, tzinfo=timezone.utc)
        assert runs[settings.digest_cron] == datetime(2024, 3, 8, 12, 0, tzinfo=timezone.utc)
