"""Process wiring and FastAPI dependencies.

Collaborators are built once per process and handed to every component
explicitly; nothing below is a module-level client.
"""

import logging
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..integrations import ElasticSearchIndex, SlackWebClient
from ..services.side_effects import SideEffects
from .config import Settings
from .database import get_session
from .metrics import Metrics
from .projects import ProjectConfigService

logger = logging.getLogger(__name__)


def build_side_effects(settings: Settings) -> SideEffects:
    """Create the chat client, search index, config service and metrics."""
    if not settings.slack_enabled:
        logger.warning("SLACK_BOT_TOKEN is not set; chat calls will fail")

    chat = SlackWebClient(
        settings.slack_bot_token or "",
        timeout=settings.external_timeout_seconds,
    )
    search = ElasticSearchIndex(
        settings.elastic_node,
        settings.elastic_index,
        api_key=settings.elastic_api_key,
        timeout=settings.external_timeout_seconds,
    )
    return SideEffects(
        chat=chat,
        search=search,
        metrics=Metrics(),
        settings=settings,
        projects=ProjectConfigService(settings.config_dir),
    )


async def close_side_effects(effects: SideEffects) -> None:
    for client in (effects.chat, effects.search):
        close = getattr(client, "close", None)
        if close is not None:
            await close()


def get_effects(request: Request) -> SideEffects:
    return request.app.state.effects


SessionDep = Annotated[AsyncSession, Depends(get_session)]
EffectsDep = Annotated[SideEffects, Depends(get_effects)]
