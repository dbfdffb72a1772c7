"""
Slack endpoints.

- POST /slack/events: Events API (URL verification, message events)
- POST /slack/commands: the `/slacker` slash command

Requests are verified with the v0 signing scheme whenever a signing secret is
configured. Message events are acknowledged immediately and ingested in a
background task with a session of their own.
"""

import hashlib
import hmac
import json
import logging
import time
from typing import Annotated, Any

from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.database import session_scope
from ..core.dependencies import EffectsDep, SessionDep
from ..schemas.api import CommandResponse
from ..schemas.events import parse_message_event
from ..services.commands import CommandRouter
from ..services.ingestion import IngestionEngine
from ..services.side_effects import SideEffects

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/slack", tags=["slack"])

# Replay window for signed requests
MAX_REQUEST_AGE_SECONDS = 60 * 5


def verify_slack_signature(
    body: bytes,
    timestamp: str,
    signature: str,
    signing_secret: str | None,
    now: float | None = None,
) -> bool:
    """
    Verify Slack request signature using HMAC-SHA256.

    See: https://api.slack.com/authentication/verifying-requests-from-slack
    """
    if not signing_secret:
        logger.warning("Slack signing secret not configured")
        return False

    # Check timestamp to prevent replay attacks
    try:
        request_timestamp = int(timestamp)
    except ValueError:
        return False
    if abs((now or time.time()) - request_timestamp) > MAX_REQUEST_AGE_SECONDS:
        logger.warning("Slack request timestamp too old")
        return False

    # Compute expected signature
    sig_basestring = f"v0:{timestamp}:{body.decode()}"
    expected_sig = "v0=" + hmac.new(
        signing_secret.encode(),
        sig_basestring.encode(),
        hashlib.sha256
    ).hexdigest()

    return hmac.compare_digest(expected_sig, signature)


async def _verified_body(
    request: Request,
    effects: SideEffects,
    signature: str | None,
    timestamp: str | None,
) -> bytes:
    body = await request.body()

    secret = effects.settings.slack_signing_secret
    if secret:
        if not signature or not timestamp:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing Slack signature headers"
            )
        if not verify_slack_signature(body, timestamp, signature, secret):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid Slack signature"
            )
    return body


async def process_message_event(
    session_factory: async_sessionmaker[AsyncSession],
    effects: SideEffects,
    raw: dict[str, Any],
) -> None:
    """Ingest one message event; failures are logged and counted, never raised."""
    try:
        event = parse_message_event(raw)
        async with session_scope(session_factory) as session:
            result = await IngestionEngine(session, effects).handle_event(event)
        logger.debug(f"Message event in {raw.get('channel')}: {result.outcome}")
    except Exception as e:
        effects.metrics.increment("errors.slack.message")
        logger.error(f"Failed to ingest message event: {e}")


@router.post("/events")
async def handle_slack_events(
    request: Request,
    background_tasks: BackgroundTasks,
    effects: EffectsDep,
    x_slack_signature: Annotated[str | None, Header()] = None,
    x_slack_request_timestamp: Annotated[str | None, Header()] = None,
):
    """Handle Slack Events API callbacks."""
    body = await _verified_body(request, effects, x_slack_signature, x_slack_request_timestamp)

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )

    if payload.get("type") == "url_verification":
        return {"challenge": payload.get("challenge")}

    event = payload.get("event") or {}
    if payload.get("type") == "event_callback" and event.get("type") == "message":
        background_tasks.add_task(
            process_message_event,
            request.app.state.session_factory,
            effects,
            event,
        )

    return {"ok": True}


@router.post("/commands", response_model=CommandResponse)
async def handle_slack_command(
    request: Request,
    session: SessionDep,
    effects: EffectsDep,
    x_slack_signature: Annotated[str | None, Header()] = None,
    x_slack_request_timestamp: Annotated[str | None, Header()] = None,
):
    """
    Handle the `/slacker` slash command.

    Usage examples:
    - /slacker help
    - /slacker opt-out
    - /slacker list hackclub github
    """
    await _verified_body(request, effects, x_slack_signature, x_slack_request_timestamp)

    form_data = await request.form()
    user_id = str(form_data.get("user_id", ""))
    channel_id = str(form_data.get("channel_id", ""))
    text = str(form_data.get("text", "")).strip()

    return await CommandRouter(session, effects).route(text, user_id, channel_id)
