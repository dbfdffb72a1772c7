"""
Tests for the Identity Resolver.

These tests verify:
1. RESOLVE: one canonical user per handle, created on first sight
2. MERGE: every owned relation moves to the survivor, losers disappear
3. LINK: the OAuth linkage folds chat-only and forge-only users together
"""

from uuid import uuid4

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from slacker.integrations import ChatProfile
from slacker.models import ActionItem, Participant, SourceMessage, User
from slacker.services.exceptions import (
    IdentityMergeError,
    IdentityUnresolvedError,
    UserNotFoundError,
)
from slacker.services.identity import IdentityResolver
from slacker.services.side_effects import load_item

from conftest import MAINTAINER_SLACK


async def _count_users(session: AsyncSession) -> int:
    return (await session.execute(select(func.count(User.id)))).scalar_one()


# =============================================================================
# TEST: RESOLVE
# =============================================================================


class TestResolve:

    async def test_creates_once_per_chat_handle(self, session: AsyncSession, effects):
        resolver = IdentityResolver(session, effects.projects, effects.chat)

        first = await resolver.resolve(chat_id="U0ALICE")
        second = await resolver.resolve(chat_id="U0ALICE")

        assert first.id == second.id
        assert await _count_users(session) == 1

    async def test_fills_missing_forge_handle(self, session: AsyncSession, effects):
        resolver = IdentityResolver(session, effects.projects, effects.chat)

        user = await resolver.resolve(chat_id="U0ALICE")
        same = await resolver.resolve(chat_id="U0ALICE", forge_login="alice")

        assert same.id == user.id
        assert same.github_username == "alice"

    async def test_does_not_steal_handle_owned_by_another_row(self, session: AsyncSession, effects):
        resolver = IdentityResolver(session, effects.projects, effects.chat)

        forge_only = await resolver.resolve(forge_login="alice")
        chat_only = await resolver.resolve(chat_id="U0ALICE")
        matched = await resolver.resolve(chat_id="U0ALICE", forge_login="alice")

        assert matched.id == chat_only.id
        assert matched.github_username is None
        assert forge_only.github_username == "alice"

    async def test_requires_an_identifier(self, session: AsyncSession, effects):
        resolver = IdentityResolver(session, effects.projects, effects.chat)

        with pytest.raises(IdentityUnresolvedError):
            await resolver.resolve()

    async def test_chat_user_gets_profile_email(self, session: AsyncSession, effects, chat):
        chat.profiles["U0ALICE"] = ChatProfile(id="U0ALICE", email="alice@example.com")
        resolver = IdentityResolver(session, effects.projects, effects.chat)

        user = await resolver.resolve_chat_user("U0ALICE")

        assert user.email == "alice@example.com"

    async def test_maintainer_alias(self, session: AsyncSession, effects):
        resolver = IdentityResolver(session, effects.projects, effects.chat)

        user = await resolver.resolve_maintainer("zrl")
        assert user.slack_id == MAINTAINER_SLACK
        assert user.github_username == "zachlatta"

        with pytest.raises(UserNotFoundError):
            await resolver.resolve_maintainer("nobody")


# =============================================================================
# TEST: MERGE
# =============================================================================


class TestMerge:

    async def test_merge_repoints_everything_and_deletes_losers(
        self,
        session: AsyncSession,
        effects,
        make_item,
    ):
        item = await make_item(author_slack="U0LOSER")
        resolver = IdentityResolver(session, effects.projects, effects.chat)

        loser = await resolver.resolve(chat_id="U0LOSER")
        survivor = await resolver.resolve(forge_login="alice")
        session.add(Participant(action_item_id=item.id, user_id=loser.id))
        session.add(Participant(action_item_id=item.id, user_id=survivor.id))
        loaded = await load_item(session, item.id)
        loaded.assignee_id = loser.id
        loaded.snoozed_by_id = loser.id
        await session.commit()

        await resolver.merge_users(survivor.id, [loser.id])
        await session.commit()

        assert await _count_users(session) == 1
        authors = (await session.execute(select(SourceMessage.author_id))).scalars().all()
        assert set(authors) == {survivor.id}

        participants = (
            await session.execute(
                select(Participant.user_id).where(Participant.action_item_id == item.id)
            )
        ).scalars().all()
        assert participants == [survivor.id]

        refreshed = await load_item(session, item.id)
        assert refreshed.assignee_id == survivor.id
        assert refreshed.snoozed_by_id == survivor.id

    async def test_failed_merge_leaves_every_reference_in_place(
        self,
        session: AsyncSession,
        effects,
        make_item,
        monkeypatch,
    ):
        item = await make_item(author_slack="U0LOSER")
        resolver = IdentityResolver(session, effects.projects, effects.chat)

        loser = await resolver.resolve(chat_id="U0LOSER")
        survivor = await resolver.resolve(forge_login="alice")
        session.add(Participant(action_item_id=item.id, user_id=loser.id))
        session.add(Participant(action_item_id=item.id, user_id=survivor.id))
        loaded = await load_item(session, item.id)
        loaded.assignee_id = loser.id
        loaded.snoozed_by_id = loser.id
        await session.commit()

        async def repoint_without_dedup(survivor_id, losers):
            # Collides with the survivor's own row on the same item
            await session.execute(
                update(Participant)
                .where(Participant.user_id.in_(losers))
                .values(user_id=survivor_id)
            )

        monkeypatch.setattr(resolver, "_merge_participants", repoint_without_dedup)

        with pytest.raises(IdentityMergeError):
            await resolver.merge_users(survivor.id, [loser.id])
        await session.commit()

        assert await _count_users(session) == 2
        authors = (await session.execute(select(SourceMessage.author_id))).scalars().all()
        assert authors == [loser.id]

        participants = (
            await session.execute(
                select(Participant.user_id).where(Participant.action_item_id == item.id)
            )
        ).scalars().all()
        assert set(participants) == {loser.id, survivor.id}

        assignee_id, snoozed_by_id = (
            await session.execute(
                select(ActionItem.assignee_id, ActionItem.snoozed_by_id).where(ActionItem.id == item.id)
            )
        ).one()
        assert (assignee_id, snoozed_by_id) == (loser.id, loser.id)

    async def test_merge_into_missing_survivor_fails(self, session: AsyncSession, effects):
        resolver = IdentityResolver(session, effects.projects, effects.chat)
        user = await resolver.resolve(chat_id="U0ALICE")

        with pytest.raises(UserNotFoundError):
            await resolver.merge_users(uuid4(), [user.id])


# =============================================================================
# TEST: LINK ACCOUNTS
# =============================================================================


class TestLinkAccounts:

    async def test_link_folds_chat_and_forge_users(self, session: AsyncSession, effects):
        resolver = IdentityResolver(session, effects.projects, effects.chat)
        chat_user = await resolver.resolve(chat_id="U0ALICE")
        forge_user = await resolver.resolve(forge_login="alice")
        await session.commit()

        linked = await resolver.link_accounts(
            "u0alice", "alice", email="alice@example.com", token="gho_token"
        )
        await session.commit()

        assert linked.id == chat_user.id
        assert linked.slack_id == "U0ALICE"
        assert linked.github_username == "alice"
        assert linked.email == "alice@example.com"
        assert linked.github_token == "gho_token"
        assert await _count_users(session) == 1
        remaining = (await session.execute(select(User.id))).scalars().all()
        assert forge_user.id not in remaining

    async def test_link_creates_user_when_nothing_matches(self, session: AsyncSession, effects):
        resolver = IdentityResolver(session, effects.projects, effects.chat)

        user = await resolver.link_accounts("U0NEW", "newbie", email="new@example.com")

        assert user.slack_id == "U0NEW"
        assert user.github_username == "newbie"

    async def test_link_falls_back_to_profile_email(self, session: AsyncSession, effects, chat):
        chat.profiles["U0ALICE"] = ChatProfile(id="U0ALICE", email="alice@example.com")
        resolver = IdentityResolver(session, effects.projects, effects.chat)

        user = await resolver.link_accounts("U0ALICE", "alice")

        assert user.email == "alice@example.com"

    async def test_link_without_email_is_unresolved(self, session: AsyncSession, effects):
        resolver = IdentityResolver(session, effects.projects, effects.chat)

        with pytest.raises(IdentityUnresolvedError):
            await resolver.link_accounts("U0ALICE", "alice")

    async def test_maintainer_must_use_registered_login(self, session: AsyncSession, effects):
        resolver = IdentityResolver(session, effects.projects, effects.chat)

        with pytest.raises(IdentityMergeError):
            await resolver.link_accounts(MAINTAINER_SLACK, "someone-else", email="z@example.com")
