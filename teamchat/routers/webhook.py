"""
Provider webhook: GET subscription handshake and POST notifications.

POST returns 200 for every notification whose signature checks out, even if
some messages in it could not be stored; failures are logged instead. Only a
missing or mismatched signature is rejected (400).
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from teamchat.errors import ErrorKind, Failure
from teamchat.routers.deps import failure_to_http, get_ingestor
from teamchat.schemas import ErrorResponse
from teamchat.webhook import SIGNATURE_HEADER, WebhookIngestor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhook"])


@router.get(
    "",
    response_class=PlainTextResponse,
    responses={403: {"model": ErrorResponse, "description": "Verify token mismatch"}},
    summary="Webhook verification handshake",
)
async def verify_webhook(
    hub_mode: str | None = Query(None, alias="hub.mode"),
    hub_verify_token: str | None = Query(None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(None, alias="hub.challenge"),
    ingestor: WebhookIngestor = Depends(get_ingestor),
) -> PlainTextResponse:
    challenge = ingestor.verify_subscription(hub_mode, hub_verify_token, hub_challenge)
    if challenge is None:
        logger.warning("webhook verification refused mode=%s", hub_mode)
        raise HTTPException(
            status_code=403,
            detail={"error": "forbidden", "message": "Webhook verification failed."},
        )
    logger.info("webhook verified")
    return PlainTextResponse(challenge)


@router.post(
    "",
    responses={400: {"model": ErrorResponse, "description": "Missing or invalid signature"}},
    summary="Receive webhook notification",
)
async def receive_webhook(
    request: Request,
    ingestor: WebhookIngestor = Depends(get_ingestor),
) -> dict:
    raw = await request.body()
    if not await ingestor.verify_signature(raw, request.headers.get(SIGNATURE_HEADER)):
        raise failure_to_http(Failure(ErrorKind.SIGNATURE_INVALID, "Missing or invalid webhook signature."))

    try:
        report = await ingestor.ingest(raw)
    except Exception:
        logger.exception("webhook ingestion failed")
        return {"ok": True}
    return {
        "ok": True,
        "stored": report.messages_stored,
        "duplicates": report.duplicates,
        "statuses": report.statuses_updated,
    }
