"""
Team-scoped outbound messaging endpoints with per-team rate limiting.

Queued sends return 202 with the stored message id; delivery happens in the
background worker and its outcome is visible as the message status. Template
sends are synchronous and return the provider message id.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from teamchat.errors import Failure
from teamchat.messaging import MessagingService
from teamchat.rate_limit import RateLimiter
from teamchat.routers.deps import failure_to_http, get_messaging, get_rate_limiter
from teamchat.schemas import (
    ErrorResponse,
    QueueMessageRequest,
    QueueMessageResponse,
    TemplateSendRequest,
    TemplateSendResponse,
    WindowStatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/tenants/{team_id}",
    tags=["tenant-messages"],
    responses={404: {"description": "Team not found"}},
)


def _enforce_rate_limit(team_id: UUID, limiter: RateLimiter) -> None:
    allowed, retry_after = limiter.check(team_id)
    if not allowed:
        logger.warning("rate limited team_id=%s retry_after=%s", team_id, retry_after)
        raise HTTPException(
            status_code=429,
            detail={
                "error": "rate_limited",
                "message": "Too many send requests. Retry later.",
                "retry_after_seconds": int(retry_after) if retry_after is not None else 60,
            },
        )


@router.post(
    "/messages",
    status_code=202,
    response_model=QueueMessageResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Credentials missing or invalid recipient"},
        404: {"model": ErrorResponse, "description": "Team not found or inactive"},
        409: {"model": ErrorResponse, "description": "24-hour window closed; use a template"},
        413: {"model": ErrorResponse, "description": "Media exceeds the provider limit"},
        429: {"model": ErrorResponse, "description": "Rate limited"},
    },
    summary="Queue outbound message",
    description=(
        "Create a queued message for a conversation, phone number or group and hand it to the "
        "delivery worker. Free-form messages require an open 24-hour window."
    ),
)
async def queue_message(
    team_id: UUID,
    body: QueueMessageRequest,
    messaging: MessagingService = Depends(get_messaging),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> QueueMessageResponse:
    _enforce_rate_limit(team_id, limiter)
    result = await messaging.queue_outbound(team_id, body)
    if isinstance(result, Failure):
        raise failure_to_http(result)
    return QueueMessageResponse(
        message_id=result.id,
        conversation_id=result.conversation_id,
        status=result.status.value,
    )


@router.post(
    "/messages/template",
    response_model=TemplateSendResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Credentials missing or invalid recipient"},
        404: {"model": ErrorResponse, "description": "Team not found or inactive"},
        429: {"model": ErrorResponse, "description": "Rate limited"},
        502: {"model": ErrorResponse, "description": "Provider rejected the send"},
    },
    summary="Send template now",
    description="Send an approved template immediately, regardless of the 24-hour window.",
)
async def send_template(
    team_id: UUID,
    body: TemplateSendRequest,
    messaging: MessagingService = Depends(get_messaging),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> TemplateSendResponse:
    _enforce_rate_limit(team_id, limiter)
    outcome = await messaging.send_template_now(
        team_id,
        body.destination,
        body.template_name,
        parameters=body.parameters,
        language_code=body.language_code,
        conversation_id=body.conversation_id,
    )
    if outcome.failure is not None:
        raise failure_to_http(outcome.failure)
    return TemplateSendResponse(
        message_id=outcome.message_id,
        provider_message_id=outcome.provider_message_id,
        status="sent",
    )


@router.get(
    "/conversations/{conversation_id}/window",
    response_model=WindowStatusResponse,
    responses={404: {"model": ErrorResponse, "description": "Conversation not found"}},
    summary="24-hour window status",
)
async def window_status(
    team_id: UUID,
    conversation_id: UUID,
    messaging: MessagingService = Depends(get_messaging),
) -> WindowStatusResponse:
    status = await messaging.window_status(conversation_id, team_id=team_id)
    if status is None:
        raise HTTPException(
            status_code=404,
            detail={"error": "not_found", "message": "Conversation not found."},
        )
    return WindowStatusResponse(
        conversation_id=conversation_id,
        can_send_freeform=status.can_send_freeform,
        status=status.status,
        message=status.message,
        remaining_seconds=status.remaining_seconds,
        last_inbound_message_at=status.last_inbound_message_at,
        expires_at=status.expires_at,
    )
