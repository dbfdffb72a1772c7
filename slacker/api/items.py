"""
Action item endpoints.

These back the interactive buttons and modals of the chat surface:
- GET /items/{item_id}: Current snapshot
- POST /items/{item_id}/{action}: Apply one lifecycle action

When the request names a channel and an actor, the confirmation (or the
failure text) is also posted to that actor ephemerally.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from ..core.dependencies import EffectsDep, SessionDep
from ..models import ActionItem
from ..schemas.api import ActionItemResponse, ActionRequest, ActionResult, ItemAction
from ..services.action_items import ActionItemService, TransitionResult
from ..services.exceptions import (
    ActionItemNotFoundError,
    UserNotFoundError,
    ValidationError,
    failure_message,
)
from ..services.side_effects import SideEffects, item_url

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/items", tags=["action-items"])


def _to_response(item: ActionItem, effects: SideEffects) -> ActionItemResponse:
    response = ActionItemResponse.model_validate(item)
    response.url = item_url(item, effects.settings.slack_workspace_url)
    return response


async def _dispatch(
    service: ActionItemService,
    item_id: UUID,
    action: ItemAction,
    request: ActionRequest,
) -> TransitionResult:
    if action == "assign":
        if not request.assignee:
            raise ValidationError("an assignee is required")
        return await service.assign(item_id, request.actor, request.assignee)
    if action == "unassign":
        return await service.unassign(item_id, request.actor)
    if action == "snooze":
        return await service.snooze(item_id, request.actor, request.until, request.reason)
    if action == "unsnooze":
        return await service.unsnooze(item_id, request.actor)
    if action == "resolve":
        return await service.resolve(item_id, request.actor, request.reason)
    if action == "irrelevant":
        return await service.mark_irrelevant(item_id, request.actor, request.reason)
    if action == "reopen":
        return await service.reopen(item_id, request.actor)
    if action == "follow-up":
        if request.on is None:
            raise ValidationError("a follow-up date is required")
        return await service.follow_up(item_id, request.actor, request.on, request.notes)
    return await service.update_notes(item_id, request.actor, request.notes)


@router.get("/{item_id}", response_model=ActionItemResponse)
async def get_item(
    item_id: UUID,
    session: SessionDep,
    effects: EffectsDep,
) -> ActionItemResponse:
    """Get the current snapshot of an action item."""
    try:
        item = await ActionItemService(session, effects).get(item_id)
    except ActionItemNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Action item {item_id} not found",
        )
    return _to_response(item, effects)


@router.post("/{item_id}/{action}", response_model=ActionResult)
async def apply_action(
    item_id: UUID,
    action: ItemAction,
    request: ActionRequest,
    session: SessionDep,
    effects: EffectsDep,
) -> ActionResult:
    """Apply a lifecycle action to an action item."""
    service = ActionItemService(session, effects)
    try:
        result = await _dispatch(service, item_id, action, request)
    except (ActionItemNotFoundError, UserNotFoundError) as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        )
    except ValidationError as e:
        await session.rollback()
        message = failure_message(action, item_id, str(e))
        effects.metrics.increment(f"errors.slack.{action}")
        logger.warning(message)
        if request.channel_id and request.actor:
            await effects.notify_ephemeral(request.channel_id, request.actor, message)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=message,
        )

    if request.channel_id and request.actor:
        await effects.notify_ephemeral(request.channel_id, request.actor, result.message)

    return ActionResult(message=result.message, item=_to_response(result.item, effects))
