"""FastAPI dependencies exposing the services built in the app lifespan."""

from fastapi import HTTPException, Request

from teamchat.errors import Failure
from teamchat.messaging import MessagingService
from teamchat.rate_limit import RateLimiter
from teamchat.webhook import WebhookIngestor


def get_messaging(request: Request) -> MessagingService:
    return request.app.state.messaging


def get_ingestor(request: Request) -> WebhookIngestor:
    return request.app.state.ingestor


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def failure_to_http(failure: Failure) -> HTTPException:
    return HTTPException(status_code=failure.http_status, detail=failure.as_detail())
