"""
Ingestion & Grouping Engine.

Decides what an inbound chat message means for the worklist:

1. Noise (system subtypes, foreign bots, trivial text, lone emoji) is dropped
2. Deletion notices remove the stored Source Message
3. A reply to a tracked thread refreshes that item's reply window and roster
4. A new thread root either folds into a recent unassigned item of the same
   channel (grouping window) or seeds a brand-new open Action Item

The grouping lookup and the insert share one short transaction. Two
near-simultaneous roots may still both create items; that is accepted. A
duplicate delivery of the same root hits the (channel, ts) unique constraint
and is re-routed to the update path.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Sequence
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..integrations import ExternalServiceError, ThreadReply, ThreadRoot, ts_to_datetime
from ..models import ActionItem, ActionStatus, ResolutionFlag, SourceMessage
from ..schemas.events import ChatMessage, MessageDeleted
from .identity import IdentityResolver
from .participants import ParticipantTracker
from .side_effects import SideEffects, load_item

logger = logging.getLogger(__name__)

# Messages this short never start or update an item
MIN_TEXT_LENGTH = 5


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class IngestionResult:
    """Outcome of one inbound event."""
    outcome: str  # ignored, deleted, updated, grouped, created, skipped_maintainer, failed
    item_id: UUID | None = None
    reason: str | None = None


def noise_reason(message: ChatMessage, allowed_bot_ids: Sequence[str]) -> str | None:
    """Why a message is noise, or None when it should be ingested."""
    if message.subtype:
        return f"subtype {message.subtype}"
    if message.bot_id and message.bot_id not in allowed_bot_ids:
        return f"bot {message.bot_id} not allowed"
    text = message.text or ""
    if len(text) < MIN_TEXT_LENGTH:
        return "trivial text"
    if text.startswith(":") and text.endswith(":") and " " not in text:
        return "emoji only"
    return None


# =============================================================================
# ENGINE
# =============================================================================


class IngestionEngine:
    """Turns chat message events into Source Messages and Action Items."""

    def __init__(self, session: AsyncSession, effects: SideEffects):
        self._session = session
        self._effects = effects
        self._settings = effects.settings
        self._projects = effects.projects
        self._chat = effects.chat
        self._identity = IdentityResolver(session, effects.projects, effects.chat)
        self._participants = ParticipantTracker(session, self._identity)

    async def handle_event(
        self,
        event: MessageDeleted | ChatMessage,
        now: datetime | None = None,
    ) -> IngestionResult:
        """Apply one normalized chat event.

        External failures abort the handler without touching stored state;
        they are logged and counted under errors.slack.message.
        """
        now = now or datetime.now(timezone.utc)
        try:
            if isinstance(event, MessageDeleted):
                result = await self._handle_deletion(event, now)
            else:
                result = await self._handle_message(event, now)
        except ExternalServiceError as e:
            await self._session.rollback()
            logger.error(f"Ingestion of message in {event.channel} failed: {e}")
            self._effects.metrics.increment("errors.slack.message")
            return IngestionResult("failed", reason=str(e))

        self._effects.metrics.increment(f"slack.message.{result.outcome}")
        return result

    # =========================================================================
    # MESSAGES
    # =========================================================================

    async def _handle_message(self, message: ChatMessage, now: datetime) -> IngestionResult:
        reason = noise_reason(message, self._settings.allowed_bot_ids)
        if reason:
            return IngestionResult("ignored", reason=reason)

        if not self._projects.is_tracked_channel(message.channel):
            return IngestionResult("ignored", reason="untracked channel")

        root = await self._chat.fetch_thread_root(message.channel, message.root_ts)
        if root is None:
            return IngestionResult("ignored", reason="thread root not found")

        replies = await self._chat.fetch_thread_replies(message.channel, root.ts)

        existing = await self._find_source(message.channel, root.ts)
        if existing is not None:
            item_id = await self._update_existing(existing, root, replies)
            return await self._finish("updated", item_id, now)

        maintainer_handles = {
            m.slack for m in self._projects.resolve_maintainers(channel_id=message.channel) if m.slack
        }
        if root.user in maintainer_handles:
            return IngestionResult("skipped_maintainer", reason=f"{root.user} is a maintainer")
        if not root.user:
            return IngestionResult("ignored", reason="thread root has no author")

        author = await self._identity.resolve_chat_user(root.user)

        grouping = self._projects.resolve_grouping(message.channel)
        target = None
        if grouping > 0:
            target = await self._grouping_candidate(message.channel, root.created_at, grouping)

        try:
            async with self._session.begin_nested():
                if target is None:
                    item = ActionItem(status=ActionStatus.OPEN)
                    self._session.add(item)
                    await self._session.flush()
                    item_id = item.id
                else:
                    item_id = target.action_item_id

                self._session.add(
                    SourceMessage(
                        channel_id=message.channel,
                        ts=root.ts,
                        text=root.text,
                        reply_count=root.reply_count,
                        grouped=target is not None,
                        author_id=author.id,
                        action_item_id=item_id,
                        created_at=root.created_at,
                    )
                )
                await self._session.flush()
        except IntegrityError:
            # Concurrent delivery of the same root already stored it
            logger.info(f"Source message {message.channel}/{root.ts} already stored, updating")
            existing = await self._find_source(message.channel, root.ts)
            if existing is None:
                raise
            item_id = await self._update_existing(existing, root, replies)
            return await self._finish("updated", item_id, now)

        item = await load_item(self._session, item_id)
        await self._apply_reply_window(item, root, replies)
        known = await self._participants.chat_handles(item_id)
        await self._participants.sync(item_id, chat_ids=[*root.reply_users, *known])
        await self._session.commit()

        outcome = "grouped" if target is not None else "created"
        logger.info(f"Message {message.channel}/{root.ts} {outcome} action item {item_id}")
        return await self._finish(outcome, item_id, now)

    async def _find_source(self, channel_id: str, ts: str) -> SourceMessage | None:
        result = await self._session.execute(
            select(SourceMessage).where(
                SourceMessage.channel_id == channel_id,
                SourceMessage.ts == ts,
            )
        )
        return result.scalar_one_or_none()

    async def _grouping_candidate(
        self,
        channel_id: str,
        root_time: datetime,
        minutes: int,
    ) -> SourceMessage | None:
        """Most recent ungrouped message of an open, unassigned item in the window."""
        result = await self._session.execute(
            select(SourceMessage)
            .join(ActionItem, SourceMessage.action_item_id == ActionItem.id)
            .where(
                SourceMessage.channel_id == channel_id,
                SourceMessage.grouped.is_(False),
                SourceMessage.created_at >= root_time - timedelta(minutes=minutes),
                SourceMessage.created_at <= root_time,
                ActionItem.status == ActionStatus.OPEN,
                ActionItem.assignee_id.is_(None),
            )
            .order_by(SourceMessage.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _update_existing(
        self,
        source: SourceMessage,
        root: ThreadRoot,
        replies: list[ThreadReply],
    ) -> UUID:
        """Refresh an already-tracked thread and rebuild its roster."""
        item_id = source.action_item_id
        source.text = root.text
        source.reply_count = root.reply_count
        await self._session.flush()

        item = await load_item(self._session, item_id)
        await self._apply_reply_window(item, root, replies)

        known = await self._participants.user_ids(item_id)
        await self._participants.reset(item_id)
        await self._participants.sync(item_id, chat_ids=root.reply_users, user_ids=known)
        await self._session.commit()
        return item_id

    async def _apply_reply_window(
        self,
        item: ActionItem,
        root: ThreadRoot,
        replies: list[ThreadReply],
    ) -> None:
        """Widen first/last reply times and re-sum replies across grouped messages."""
        first = ts_to_datetime(replies[0].ts) if replies else None
        if first is not None:
            item.first_reply_on = min(item.first_reply_on, first) if item.first_reply_on else first

        latest = ts_to_datetime(root.latest_reply)
        if latest is not None:
            item.last_reply_on = max(item.last_reply_on, latest) if item.last_reply_on else latest

        result = await self._session.execute(
            select(func.coalesce(func.sum(SourceMessage.reply_count), 0))
            .where(SourceMessage.action_item_id == item.id)
        )
        item.total_replies = int(result.scalar_one())
        await self._session.flush()

    async def _finish(self, outcome: str, item_id: UUID, now: datetime) -> IngestionResult:
        item = await load_item(self._session, item_id)
        if item is not None:
            await self._effects.index(item)
            await self._check_escalation(item, now)
        return IngestionResult(outcome, item_id=item_id)

    async def _check_escalation(self, item: ActionItem, now: datetime) -> None:
        """DM the channel maintainers once when an untouched thread gets busy."""
        if item.status != ActionStatus.OPEN or item.assignee_id is not None:
            return
        if item.escalated_at is not None or not item.source_messages:
            return
        if item.total_replies < self._settings.escalation_reply_threshold:
            return

        channel_id = item.source_messages[0].channel_id
        item.escalated_at = now
        await self._session.commit()

        url = self._effects.settings.slack_workspace_url
        text = (
            f":rotating_light: Action item (id={item.id}) in <#{channel_id}> has "
            f"{item.total_replies} replies and nobody assigned. "
            f"{url.rstrip('/')}/archives/{channel_id}/p{item.source_messages[0].ts.replace('.', '')}"
        )
        for maintainer in self._projects.resolve_maintainers(channel_id=channel_id):
            if maintainer.slack:
                await self._effects.notify(maintainer.slack, text, action="escalation")

    # =========================================================================
    # DELETIONS
    # =========================================================================

    async def _handle_deletion(self, event: MessageDeleted, now: datetime) -> IngestionResult:
        result = await self._session.execute(
            select(SourceMessage.action_item_id).where(
                SourceMessage.channel_id == event.channel,
                SourceMessage.ts == event.deleted_ts,
            )
        )
        item_ids = list(dict.fromkeys(result.scalars().all()))
        if not item_ids:
            return IngestionResult("ignored", reason="message not tracked")

        await self._session.execute(
            delete(SourceMessage).where(
                SourceMessage.channel_id == event.channel,
                SourceMessage.ts == event.deleted_ts,
            )
        )

        closed: list[UUID] = []
        if self._settings.deleted_message_policy == "close":
            for item_id in item_ids:
                remaining = await self._session.execute(
                    select(func.count(SourceMessage.id)).where(SourceMessage.action_item_id == item_id)
                )
                if remaining.scalar_one() > 0:
                    continue
                item = await load_item(self._session, item_id)
                if item is None or item.is_closed:
                    continue
                item.status = ActionStatus.CLOSED
                item.flag = ResolutionFlag.IRRELEVANT
                item.reason = "source message deleted"
                item.resolved_at = now
                item.snoozed_until = None
                item.snoozed_by_id = None
                closed.append(item_id)
                await self._session.flush()

        await self._session.commit()
        logger.info(f"Deleted source message {event.channel}/{event.deleted_ts}")

        for item_id in item_ids:
            item = await load_item(self._session, item_id)
            if item is not None:
                await self._effects.index(item)
            if item_id in closed:
                await self._effects.log_activity(None, item_id, "closed (source deleted)")

        return IngestionResult("deleted", item_id=item_ids[0])
