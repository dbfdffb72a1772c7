"""Account linking: ties a Slack handle to a GitHub login after OAuth."""

import logging

from fastapi import APIRouter, HTTPException, status

from ..core.dependencies import EffectsDep, SessionDep
from ..schemas.api import LinkRequest, LinkResponse
from ..services.exceptions import IdentityMergeError, IdentityUnresolvedError
from ..services.identity import IdentityResolver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["authentication"])


@router.post("/link", response_model=LinkResponse)
async def link_accounts(
    request: LinkRequest,
    session: SessionDep,
    effects: EffectsDep,
) -> LinkResponse:
    """
    Link accounts once the OAuth exchange has completed.

    Any users already holding one of the identifiers are merged into one.
    """
    resolver = IdentityResolver(session, effects.projects, effects.chat)
    try:
        user = await resolver.link_accounts(
            request.slack_id,
            request.github_login,
            email=request.email,
            token=request.token,
        )
    except IdentityMergeError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        )
    except IdentityUnresolvedError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )

    effects.metrics.increment("auth.linked")
    return LinkResponse(
        message="OAuth successful, hacker! Go ahead and start using slacker!",
        user_id=user.id,
    )
