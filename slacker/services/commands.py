"""
Admin command routing for `/slacker`.

Supported intents:
- help: Show usage
- opt-out / opt-in: Toggle the weekly digest for the caller
- reopen <id>: Reopen a closed action item
- [list] <project> [all|slack|github|issues|pulls]: List the open items of a
  project (managers and maintainers of that project only)
"""

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import ActionItem, ActionStatus
from ..schemas.api import CommandResponse
from .action_items import ActionItemService
from .exceptions import ActionItemNotFoundError, InvalidTransitionError
from .identity import IdentityResolver
from .side_effects import SideEffects, item_type, item_url, load_item, project_of

logger = logging.getLogger(__name__)

FILTERS = ("all", "slack", "github", "issues", "pulls")

HELP_TEXT = (
    ":wave: Hi there! I'm Slacker, your friendly neighborhood action item manager. "
    "Here's what I can do:\n"
    "• *List action items:* `/slacker [list] <project> [all|slack|github|issues|pulls]`\n"
    "• *Opt out of status report notifications:* `/slacker opt-out`\n"
    "• *Opt in to status report notifications:* `/slacker opt-in`\n"
    "• *Reopen a closed action item:* `/slacker reopen <id>`\n"
    "• *Help:* `/slacker help`"
)

# Longest listing posted back in one ephemeral message
MAX_LISTED = 25


def _matches_filter(kind: str, parent_kind: str, filter_: str) -> bool:
    effective = parent_kind if kind == "follow_up" else kind
    if filter_ == "all":
        return True
    if filter_ == "slack":
        return effective == "message"
    if filter_ == "github":
        return effective in ("issue", "pull")
    if filter_ == "issues":
        return effective == "issue"
    return effective == "pull"


class CommandRouter:
    """Routes `/slacker` command text to its handler."""

    def __init__(self, session: AsyncSession, effects: SideEffects):
        self.session = session
        self._effects = effects
        self._projects = effects.projects
        self._identity = IdentityResolver(session, effects.projects, effects.chat)

    def parse_intent(self, text: str) -> tuple[str, list[str]]:
        """
        Parse the command text to determine intent.

        Returns: (intent, arguments)
        """
        args = text.strip().split()
        if not args or args[0].lower() == "help":
            return ("help", [])

        head = args[0].lower()
        if head in ("opt-out", "optout"):
            return ("opt-out", [])
        if head in ("opt-in", "optin"):
            return ("opt-in", [])
        if head == "reopen":
            return ("reopen", args[1:])
        if head == "list":
            return ("list", args[1:])
        return ("list", args)

    async def route(self, text: str, user_id: str, channel_id: str) -> CommandResponse:
        intent, args = self.parse_intent(text)
        self._effects.metrics.increment(f"command.{intent}.executed")
        self._effects.metrics.increment("command.all.executed")

        if intent == "help":
            return CommandResponse(text=HELP_TEXT)
        if intent in ("opt-out", "opt-in"):
            return await self._set_opt_out(user_id, intent == "opt-out")
        if intent == "reopen":
            return await self._reopen(user_id, args)
        return await self._list(user_id, args)

    async def _set_opt_out(self, user_id: str, opt_out: bool) -> CommandResponse:
        user = await self._identity.resolve_chat_user(user_id)
        user.opt_out = opt_out
        await self.session.commit()

        logger.info(f"User {user_id} opted {'out of' if opt_out else 'in to'} the digest")
        if opt_out:
            return CommandResponse(text=":white_check_mark: You have opted out of status reports.")
        return CommandResponse(text=":white_check_mark: You have opted in to status reports.")

    async def _reopen(self, user_id: str, args: list[str]) -> CommandResponse:
        not_found = CommandResponse(
            text=":warning: Action item not found. Please check your command and try again."
        )
        try:
            item_id = UUID(args[0]) if args else None
        except ValueError:
            item_id = None
        if item_id is None:
            return not_found

        try:
            await ActionItemService(self.session, self._effects).reopen(item_id, user_id)
        except ActionItemNotFoundError:
            return not_found
        except InvalidTransitionError:
            return CommandResponse(text=":warning: Action item is already open.")
        return CommandResponse(text=":white_check_mark: Action item reopened.")

    def _authorized(self, project: str, user_id: str) -> bool:
        if self._projects.is_manager(project, user_id):
            return True
        config = self._projects.project(project)
        for maintainer_id in config.maintainers:
            maintainer = self._projects.maintainer(maintainer_id)
            if maintainer and maintainer.slack == user_id:
                return True
        return False

    async def _list(self, user_id: str, args: list[str]) -> CommandResponse:
        name = args[0] if args else ""
        filter_ = args[1].lower() if len(args) > 1 else "all"

        if self._projects.project(name) is None:
            return CommandResponse(
                text=":warning: Project not found. Please check your command and try again."
            )
        if filter_ not in FILTERS:
            return CommandResponse(
                text=":warning: Invalid filter. Please check your command and try again. "
                f"Available options: {', '.join(FILTERS)}."
            )
        if not self._authorized(name, user_id):
            return CommandResponse(
                text=":no_entry: You are not authorized to list action items of this project."
            )

        result = await self.session.execute(
            select(ActionItem.id)
            .where(ActionItem.status.in_(
                [ActionStatus.OPEN, ActionStatus.ASSIGNED, ActionStatus.SNOOZED]
            ))
            .order_by(ActionItem.created_at)
        )

        lines = []
        workspace = self._effects.settings.slack_workspace_url
        for item_id in result.scalars().all():
            item = await load_item(self.session, item_id)
            if project_of(item, self._projects) != name:
                continue
            parent_kind = item_type(item.parent_links[0].parent) if item.parent_links else ""
            if not _matches_filter(item_type(item), parent_kind, filter_):
                continue

            assignee = f" <@{item.assignee.slack_id}>" if item.assignee and item.assignee.slack_id else ""
            lines.append(f"• <{item_url(item, workspace)}|{item.id}> [{item.status.value}]{assignee}")

        if not lines:
            return CommandResponse(text=f":tada: No open action items for {name}.")

        header = f"*{len(lines)} open action items for {name}*"
        if len(lines) > MAX_LISTED:
            lines = lines[:MAX_LISTED] + [f"…and {len(lines) - MAX_LISTED} more"]
        return CommandResponse(text="\n".join([header, *lines]))
