"""
Outbound sends to the Cloud API for one team at a time.

Every send goes through `_post_message`, which never raises: network errors,
timeouts, non-2xx responses and responses without `messages[0].id` all become
a retryable `provider_request_failed` carrying the provider's error text.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import httpx

from teamchat.config import GRAPH_API_BASE, PROVIDER_TIMEOUT_SEC, GatewayMode
from teamchat.errors import ErrorKind, SendResult
from teamchat.payloads import (
    ContactPayload,
    LocationPayload,
    MediaPayload,
    OutboundPayload,
    TemplatePayload,
    TextPayload,
    build_message_body,
)
from teamchat.phone import canonicalize
from teamchat.tenant_directory import TenantCredentials

logger = logging.getLogger(__name__)


def format_destination(raw: str, credentials: TenantCredentials) -> str:
    """Canonical recipient number; a code detected in the number wins over the team default."""
    return canonicalize(raw, default_country_code=credentials.country_code)


def _provider_error(r: httpx.Response) -> str:
    try:
        data = r.json()
    except ValueError:
        return f"HTTP {r.status_code}: {r.text[:500]}"
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict):
        code = err.get("code")
        message = err.get("message") or err.get("error_user_msg") or ""
        return f"HTTP {r.status_code}: {message} (code {code})" if code is not None else f"HTTP {r.status_code}: {message}"
    return f"HTTP {r.status_code}: {r.text[:500]}"


class OutboundDispatcher:
    def __init__(
        self,
        mode: GatewayMode,
        graph_base: str = GRAPH_API_BASE,
        timeout: float = PROVIDER_TIMEOUT_SEC,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.mode = mode
        self.graph_base = graph_base
        self.timeout = timeout
        self._transport = transport

    async def send(
        self,
        credentials: TenantCredentials,
        destination: str,
        payload: OutboundPayload,
        reply_to: str | None = None,
        is_group: bool = False,
    ) -> SendResult:
        if not credentials.is_configured:
            return SendResult.failed(
                ErrorKind.CREDENTIALS_MISSING,
                f"WhatsApp credentials are not configured for team {credentials.team_id}.",
            )
        if is_group:
            recipient = (destination or "").strip()
        else:
            recipient = format_destination(destination, credentials)
        if not recipient:
            return SendResult.failed(ErrorKind.INVALID_RECIPIENT, f"Invalid destination {destination!r}.")

        body = build_message_body(
            recipient,
            payload,
            reply_to=reply_to,
            recipient_type="group" if is_group else "individual",
        )
        return await self._post_message(credentials, body)

    async def send_text(self, credentials: TenantCredentials, destination: str, text: str, **kw: Any) -> SendResult:
        return await self.send(credentials, destination, TextPayload(body=text), **kw)

    async def send_template(
        self,
        credentials: TenantCredentials,
        destination: str,
        template_name: str,
        parameters: dict[str, str] | None = None,
        language_code: str = "en_US",
        **kw: Any,
    ) -> SendResult:
        payload = TemplatePayload(name=template_name, language_code=language_code, parameters=parameters or {})
        return await self.send(credentials, destination, payload, **kw)

    async def send_media(
        self,
        credentials: TenantCredentials,
        destination: str,
        kind: str,
        media_id: str,
        caption: str | None = None,
        filename: str | None = None,
        **kw: Any,
    ) -> SendResult:
        payload = MediaPayload(type=kind, media_id=media_id, caption=caption, filename=filename)
        return await self.send(credentials, destination, payload, **kw)

    async def send_location(
        self,
        credentials: TenantCredentials,
        destination: str,
        latitude: float,
        longitude: float,
        name: str | None = None,
        address: str | None = None,
        **kw: Any,
    ) -> SendResult:
        payload = LocationPayload(latitude=latitude, longitude=longitude, name=name, address=address)
        return await self.send(credentials, destination, payload, **kw)

    async def send_contact(
        self,
        credentials: TenantCredentials,
        destination: str,
        name: str,
        phone: str,
        **kw: Any,
    ) -> SendResult:
        return await self.send(credentials, destination, ContactPayload(name=name, phone=phone), **kw)

    async def _post_message(self, credentials: TenantCredentials, body: dict[str, Any]) -> SendResult:
        if self.mode.bypass_provider_calls:
            fake_id = f"test_{uuid.uuid4().hex}"
            logger.info(
                "provider call bypassed team_id=%s type=%s provider_id=%s",
                credentials.team_id,
                body.get("type"),
                fake_id,
            )
            return SendResult.success(fake_id)

        url = credentials.messages_url(self.graph_base)
        headers = {
            "Authorization": f"Bearer {credentials.access_token}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.post(url, json=body, headers=headers)
        except httpx.TimeoutException:
            logger.warning("provider timeout team_id=%s type=%s", credentials.team_id, body.get("type"))
            return SendResult.failed(ErrorKind.PROVIDER_REQUEST_FAILED, f"Timed out after {self.timeout}s.")
        except httpx.HTTPError as e:
            logger.warning("provider request error team_id=%s type=%s error=%s", credentials.team_id, body.get("type"), e)
            return SendResult.failed(ErrorKind.PROVIDER_REQUEST_FAILED, str(e) or type(e).__name__)

        if not 200 <= r.status_code < 300:
            detail = _provider_error(r)
            logger.warning(
                "provider rejected send team_id=%s type=%s status=%s detail=%s",
                credentials.team_id,
                body.get("type"),
                r.status_code,
                detail,
            )
            return SendResult.failed(ErrorKind.PROVIDER_REQUEST_FAILED, detail)

        try:
            messages = r.json().get("messages") or []
            provider_id = messages[0].get("id") if messages else None
        except (ValueError, AttributeError):
            provider_id = None
        if not provider_id:
            logger.warning("provider response without message id team_id=%s body=%s", credentials.team_id, r.text[:500])
            return SendResult.failed(ErrorKind.PROVIDER_REQUEST_FAILED, "Provider response has no message id.")

        logger.info(
            "message sent team_id=%s type=%s to=%s provider_id=%s",
            credentials.team_id,
            body.get("type"),
            body.get("to"),
            provider_id,
        )
        return SendResult.success(provider_id)
