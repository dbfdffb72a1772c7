"""
GitHub webhook endpoint.

Issue and pull-request events of tracked repositories become action items.
Deliveries are signed with X-Hub-Signature-256 when a webhook secret is
configured.
"""

import hashlib
import hmac
import json
import logging
from typing import Annotated

from fastapi import APIRouter, Header, HTTPException, Request, status

from ..core.dependencies import EffectsDep, SessionDep
from ..schemas.events import parse_issue_webhook
from ..services.issues import IssueIngestionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/github", tags=["github"])


def verify_github_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Check a `sha256=<hex>` delivery signature."""
    if not signature or not signature.startswith("sha256="):
        return False
    expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


@router.post("/webhook")
async def handle_github_webhook(
    request: Request,
    session: SessionDep,
    effects: EffectsDep,
    x_github_event: Annotated[str | None, Header()] = None,
    x_hub_signature_256: Annotated[str | None, Header()] = None,
):
    """Handle an issues or pull_request delivery; everything else is acknowledged and ignored."""
    body = await request.body()

    secret = effects.settings.github_webhook_secret
    if secret and not verify_github_signature(body, x_hub_signature_256, secret):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid GitHub signature"
        )

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )

    event = parse_issue_webhook(x_github_event or "", payload)
    if event is None:
        return {"outcome": "ignored", "item_id": None}

    result = await IssueIngestionService(session, effects).handle_event(event)
    logger.info(f"GitHub {x_github_event} #{event.number} {event.action}: {result.outcome}")
    return {"outcome": result.outcome, "item_id": str(result.item_id) if result.item_id else None}
