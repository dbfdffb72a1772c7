"""Participant Tracker: the roster of people who engaged with an item."""

import logging
from typing import Iterable
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Participant, User
from .exceptions import IdentityUnresolvedError
from .identity import IdentityResolver

logger = logging.getLogger(__name__)


class ParticipantTracker:
    """Idempotent upsert of (action item, user) participation rows."""

    def __init__(self, session: AsyncSession, identity: IdentityResolver):
        self._session = session
        self._identity = identity

    async def sync(
        self,
        item_id: UUID,
        chat_ids: Iterable[str] = (),
        forge_logins: Iterable[str] = (),
        user_ids: Iterable[UUID] = (),
    ) -> int:
        """
        Resolve each actor reference and add the missing participants.

        `user_ids` are already-resolved users and are added as they are.

        Returns:
            Number of participation rows inserted
        """
        resolved: list[UUID] = list(user_ids)
        for chat_id in dict.fromkeys(c for c in chat_ids if c):
            user = await self._identity.resolve_chat_user(chat_id)
            resolved.append(user.id)
        for login in dict.fromkeys(f for f in forge_logins if f):
            try:
                user = await self._identity.resolve(forge_login=login)
            except IdentityUnresolvedError:
                continue
            resolved.append(user.id)

        existing = set(await self.user_ids(item_id))
        added = 0
        for user_id in dict.fromkeys(resolved):
            if user_id in existing:
                continue
            self._session.add(Participant(action_item_id=item_id, user_id=user_id))
            existing.add(user_id)
            added += 1

        await self._session.flush()
        if added:
            logger.debug(f"Added {added} participants to action item {item_id}")
        return added

    async def reset(self, item_id: UUID) -> None:
        """Drop the whole roster of an item."""
        await self._session.execute(
            delete(Participant).where(Participant.action_item_id == item_id)
        )

    async def user_ids(self, item_id: UUID) -> list[UUID]:
        result = await self._session.execute(
            select(Participant.user_id).where(Participant.action_item_id == item_id)
        )
        return list(result.scalars().all())

    async def chat_handles(self, item_id: UUID) -> list[str]:
        result = await self._session.execute(
            select(User.slack_id)
            .join(Participant, Participant.user_id == User.id)
            .where(Participant.action_item_id == item_id, User.slack_id.is_not(None))
        )
        return list(result.scalars().all())
