"""
Identity Resolver: one canonical User per human.

Actors reach the system under three loosely-related identifiers: a chat
handle, a forge login and an e-mail address. This module maps any
combination of them to a single User row and, when the OAuth linkage flow
reveals that several rows describe the same person, merges them.

Key guarantees:
1. At most one User per chat handle and one per forge handle
2. Handles are only filled in on a match when no other row owns them
3. A merge re-points every owned relation before deleting the losers, inside
   one SAVEPOINT, so a failure leaves no partial merge behind
"""

import logging
from typing import Sequence
from uuid import UUID

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.projects import ProjectConfigService
from ..integrations import ChatClient, ExternalServiceError
from ..models import ActionItem, Participant, SourceMessage, TrackedIssue, User
from .exceptions import IdentityMergeError, IdentityUnresolvedError, UserNotFoundError

logger = logging.getLogger(__name__)


class IdentityResolver:
    """Maps actor references to canonical users and merges duplicates."""

    def __init__(
        self,
        session: AsyncSession,
        projects: ProjectConfigService | None = None,
        chat: ChatClient | None = None,
    ):
        self._session = session
        self._projects = projects
        self._chat = chat

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def _find_one(self, column, value: str | None) -> User | None:
        if not value:
            return None
        result = await self._session.execute(
            select(User).where(column == value).order_by(User.created_at).limit(1)
        )
        return result.scalar_one_or_none()

    async def resolve(
        self,
        chat_id: str | None = None,
        forge_login: str | None = None,
        email: str | None = None,
    ) -> User:
        """
        Return the canonical User for the given identifiers, creating one when
        nothing matches.

        Lookup order is chat handle, forge handle, then e-mail. Missing
        handles are filled in on the matched row unless another row already
        owns them; such a conflict is left for `link_accounts` to reconcile.
        """
        if not (chat_id or forge_login or email):
            raise IdentityUnresolvedError("No identifier supplied")

        user = (
            await self._find_one(User.slack_id, chat_id)
            or await self._find_one(User.github_username, forge_login)
            or await self._find_one(User.email, email)
        )

        if user is None:
            user = User(slack_id=chat_id, github_username=forge_login, email=email)
            self._session.add(user)
            await self._session.flush()
            logger.info(f"Created user {user.id} ({user.display_handle})")
            return user

        if chat_id and not user.slack_id:
            if await self._find_one(User.slack_id, chat_id) is None:
                user.slack_id = chat_id
        if forge_login and not user.github_username:
            if await self._find_one(User.github_username, forge_login) is None:
                user.github_username = forge_login
        if email and not user.email:
            user.email = email

        await self._session.flush()
        return user

    async def resolve_chat_user(self, chat_id: str) -> User:
        """Resolve a chat handle, fetching the e-mail only for a new user."""
        user = await self._find_one(User.slack_id, chat_id)
        if user is not None:
            return user

        email = None
        if self._chat is not None:
            try:
                profile = await self._chat.user_profile(chat_id)
                email = profile.email if profile else None
            except ExternalServiceError as e:
                logger.warning(f"Could not fetch chat profile for {chat_id}: {e}")

        return await self.resolve(chat_id=chat_id, email=email)

    async def resolve_maintainer(self, maintainer_id: str) -> User:
        """Resolve a configured maintainer alias to its User."""
        maintainer = self._projects.maintainer(maintainer_id) if self._projects else None
        if maintainer is None:
            raise UserNotFoundError(f"Maintainer {maintainer_id} is not configured")
        return await self.resolve(chat_id=maintainer.slack, forge_login=maintainer.github)

    # =========================================================================
    # MERGING
    # =========================================================================

    async def merge_users(self, survivor_id: UUID, loser_ids: Sequence[UUID]) -> User:
        """
        Fold `loser_ids` into `survivor_id` as one transactional unit.

        Re-points authored messages, issue authorship, participation rows and
        assignee/snoozed-by references, then deletes the losers. Participation
        rows that would duplicate an existing (item, survivor) pair are dropped.
        """
        survivor = await self._session.get(User, survivor_id)
        if survivor is None:
            raise UserNotFoundError(f"User {survivor_id} not found")

        losers = [uid for uid in loser_ids if uid != survivor_id]
        if not losers:
            return survivor

        try:
            async with self._session.begin_nested():
                await self._session.execute(
                    update(SourceMessage)
                    .where(SourceMessage.author_id.in_(losers))
                    .values(author_id=survivor_id)
                )
                await self._session.execute(
                    update(TrackedIssue)
                    .where(TrackedIssue.author_id.in_(losers))
                    .values(author_id=survivor_id)
                )
                await self._merge_participants(survivor_id, losers)
                await self._session.execute(
                    update(ActionItem)
                    .where(ActionItem.assignee_id.in_(losers))
                    .values(assignee_id=survivor_id)
                )
                await self._session.execute(
                    update(ActionItem)
                    .where(ActionItem.snoozed_by_id.in_(losers))
                    .values(snoozed_by_id=survivor_id)
                )
                await self._session.execute(delete(User).where(User.id.in_(losers)))
        except IntegrityError as e:
            raise IdentityMergeError(f"Failed to merge users into {survivor_id}: {e}") from e

        logger.info(f"Merged users {[str(uid) for uid in losers]} into {survivor_id}")
        return survivor

    async def _merge_participants(self, survivor_id: UUID, losers: list[UUID]) -> None:
        result = await self._session.execute(
            select(Participant.action_item_id).where(Participant.user_id == survivor_id)
        )
        seen = set(result.scalars().all())

        result = await self._session.execute(
            select(Participant.id, Participant.action_item_id)
            .where(Participant.user_id.in_(losers))
            .order_by(Participant.created_at)
        )
        repoint, duplicates = [], []
        for participant_id, item_id in result.all():
            if item_id in seen:
                duplicates.append(participant_id)
            else:
                seen.add(item_id)
                repoint.append(participant_id)

        if duplicates:
            await self._session.execute(
                delete(Participant).where(Participant.id.in_(duplicates))
            )
        if repoint:
            await self._session.execute(
                update(Participant)
                .where(Participant.id.in_(repoint))
                .values(user_id=survivor_id)
            )

    # =========================================================================
    # ACCOUNT LINKING
    # =========================================================================

    async def link_accounts(
        self,
        chat_id: str,
        forge_login: str,
        email: str | None = None,
        token: str | None = None,
    ) -> User:
        """
        Link a chat handle to a forge account after the OAuth exchange.

        Every User matching any of the identifiers is merged into the
        lowest-created one, which then receives all of them.

        Raises:
            IdentityMergeError: the chat handle belongs to a configured
                maintainer registered under another forge login
            IdentityUnresolvedError: no e-mail from the forge or the chat profile
        """
        chat_id = chat_id.upper()

        maintainer = self._projects.maintainer_by_handle(chat_id=chat_id) if self._projects else None
        if maintainer and maintainer.github and maintainer.github != forge_login:
            raise IdentityMergeError(
                f"You're trying to authenticate as {forge_login}, but you're registered "
                f"as {maintainer.github} in the config. Please authenticate as "
                f"{maintainer.github} instead."
            )

        if not email and self._chat is not None:
            try:
                profile = await self._chat.user_profile(chat_id)
                email = profile.email if profile else None
            except ExternalServiceError as e:
                logger.warning(f"Could not fetch chat profile for {chat_id}: {e}")
        if not email:
            raise IdentityUnresolvedError(f"No email found for user {chat_id}")

        result = await self._session.execute(
            select(User)
            .where(
                or_(
                    User.email == email,
                    User.email == forge_login,
                    User.github_username == forge_login,
                    User.slack_id == chat_id,
                )
            )
            .order_by(User.created_at, User.id)
        )
        users = list(result.scalars().all())

        if not users:
            user = User(slack_id=chat_id, github_username=forge_login, email=email, github_token=token)
            self._session.add(user)
            await self._session.flush()
            logger.info(f"Linked new user {user.id} ({chat_id} / {forge_login})")
            return user

        survivor = await self.merge_users(users[0].id, [u.id for u in users[1:]])
        survivor.email = email
        survivor.github_username = forge_login
        survivor.github_token = token
        survivor.slack_id = chat_id
        await self._session.flush()

        logger.info(f"Linked user {survivor.id} ({chat_id} / {forge_login})")
        return survivor
