"""
Webhook ingestion: signature check, tenant demultiplexing, dedup, persistence.

Inbound messages are written synchronously; there is no queue. Each message
and status event is handled in its own session so one bad sub-event cannot
abort the rest of the notification. Redelivered messages are absorbed by the
unique provider_message_id.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from teamchat.config import WEBHOOK_VERIFY_TOKEN, WHATSAPP_APP_SECRET, GatewayMode
from teamchat.conversations import (
    get_or_create_contact,
    get_or_create_contact_conversation,
    get_or_create_group,
    get_or_create_group_conversation,
)
from teamchat.media import MediaPipeline
from teamchat.models.message import Direction, Message, MessageStatus, MessageType
from teamchat.phone import canonicalize, phone_from_provider_id
from teamchat.tenant_directory import TenantCredentials, resolve_by_sending_number_id
from teamchat.webhook_payloads import ChangeValue, InboundMessage, MediaContent, StatusEvent, WebhookNotification
from teamchat.window import as_utc, record_inbound, utcnow

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"

_STATUS_RANK = {
    MessageStatus.QUEUED: 0,
    MessageStatus.SENDING: 1,
    MessageStatus.SENT: 2,
    MessageStatus.DELIVERED: 3,
    MessageStatus.READ: 4,
}

_MEDIA_KINDS = {
    "image": MessageType.IMAGE,
    "sticker": MessageType.IMAGE,
    "video": MessageType.VIDEO,
    "audio": MessageType.AUDIO,
    "voice": MessageType.AUDIO,
    "document": MessageType.DOCUMENT,
}


@dataclass
class IngestReport:
    messages_stored: int = 0
    duplicates: int = 0
    statuses_updated: int = 0
    statuses_unmatched: int = 0
    skipped_changes: int = 0
    errors: int = 0


def compute_signature(secret: str, raw: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()


def _raw_id(raw: object) -> str | None:
    return raw.get("id") if isinstance(raw, dict) else None


def _phone_number_ids(raw: bytes) -> set[str]:
    try:
        return WebhookNotification.model_validate_json(raw).phone_number_ids()
    except (ValidationError, ValueError):
        return set()


class WebhookIngestor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        media: MediaPipeline,
        mode: GatewayMode,
        app_secret: str = WHATSAPP_APP_SECRET,
        verify_token: str = WEBHOOK_VERIFY_TOKEN,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.media = media
        self.mode = mode
        self.app_secret = app_secret
        self.verify_token = verify_token
        self.clock = clock

    # ---- handshake and signature -----------------------------------------

    def verify_subscription(self, mode: str | None, token: str | None, challenge: str | None) -> str | None:
        """Challenge to echo back, or None when the handshake must be refused."""
        if mode != "subscribe" or not self.verify_token or not token:
            return None
        if not hmac.compare_digest(token.encode("utf-8"), self.verify_token.encode("utf-8")):
            return None
        return challenge or ""

    async def _candidate_secrets(self, raw: bytes) -> list[str]:
        secrets: list[str] = []
        async with self.session_factory() as session:
            for phone_number_id in sorted(_phone_number_ids(raw)):
                credentials = await resolve_by_sending_number_id(session, phone_number_id)
                if credentials and credentials.app_secret and credentials.app_secret not in secrets:
                    secrets.append(credentials.app_secret)
        if self.app_secret and self.app_secret not in secrets:
            secrets.append(self.app_secret)
        return secrets

    async def verify_signature(self, raw: bytes, header: str | None) -> bool:
        if self.mode.bypass_signature_verification:
            logger.warning("webhook signature verification bypassed")
            return True
        if not header or not header.startswith("sha256="):
            logger.warning("webhook rejected: missing or malformed %s", SIGNATURE_HEADER)
            return False
        secrets = await self._candidate_secrets(raw)
        if not secrets:
            logger.error("webhook rejected: no application secret configured")
            return False
        supplied = header.strip().encode("utf-8")
        for secret in secrets:
            if hmac.compare_digest(compute_signature(secret, raw).encode("utf-8"), supplied):
                return True
        logger.warning("webhook rejected: signature mismatch")
        return False

    # ---- ingestion -------------------------------------------------------

    async def ingest(self, raw: bytes) -> IngestReport:
        report = IngestReport()
        try:
            notification = WebhookNotification.model_validate_json(raw)
        except (ValidationError, ValueError) as e:
            logger.warning("webhook payload not parseable error=%s", e)
            report.errors += 1
            return report

        for entry in notification.entry:
            for change in entry.changes:
                value = change.parsed_value()
                if value is None:
                    logger.warning("webhook change not parseable field=%s", change.field)
                    report.errors += 1
                    continue
                await self._ingest_change(value, report)

        logger.info(
            "webhook processed stored=%s duplicates=%s statuses=%s unmatched=%s skipped=%s errors=%s",
            report.messages_stored,
            report.duplicates,
            report.statuses_updated,
            report.statuses_unmatched,
            report.skipped_changes,
            report.errors,
        )
        return report

    async def _ingest_change(self, value: ChangeValue, report: IngestReport) -> None:
        phone_number_id = value.metadata.phone_number_id
        try:
            async with self.session_factory() as session:
                credentials = await resolve_by_sending_number_id(session, phone_number_id)
        except Exception:
            logger.exception("tenant lookup failed phone_number_id=%s", phone_number_id)
            report.errors += 1
            return
        if credentials is None:
            logger.warning("webhook for unknown or inactive team phone_number_id=%s", phone_number_id)
            report.skipped_changes += 1
            return

        for raw in value.messages:
            try:
                message = InboundMessage.model_validate(raw)
            except ValidationError as e:
                logger.warning("inbound message not parseable team_id=%s provider_id=%s error=%s", credentials.team_id, _raw_id(raw), e)
                report.errors += 1
                continue
            try:
                await self._ingest_message(credentials, value, message, report)
            except Exception:
                logger.exception("inbound message failed team_id=%s provider_id=%s", credentials.team_id, message.id)
                report.errors += 1

        for raw in value.statuses:
            try:
                status = StatusEvent.model_validate(raw)
            except ValidationError as e:
                logger.warning("status event not parseable team_id=%s provider_id=%s error=%s", credentials.team_id, _raw_id(raw), e)
                report.errors += 1
                continue
            try:
                await self._apply_status(credentials, status, report)
            except Exception:
                logger.exception("status update failed team_id=%s provider_id=%s", credentials.team_id, status.id)
                report.errors += 1

    async def _ingest_message(
        self,
        credentials: TenantCredentials,
        value: ChangeValue,
        inbound: InboundMessage,
        report: IngestReport,
    ) -> None:
        team_id = credentials.team_id
        if not inbound.id:
            logger.warning("inbound message without id team_id=%s", team_id)
            report.errors += 1
            return

        async with self.session_factory() as session:
            if await self._find_by_provider_id(session, inbound.id) is not None:
                logger.info("duplicate inbound message team_id=%s provider_id=%s", team_id, inbound.id)
                report.duplicates += 1
                return

        now = self.clock()
        at = as_utc(inbound.sent_at) or now
        sender_raw = (inbound.participant or inbound.from_) if inbound.is_group else inbound.from_
        sender_phone = canonicalize(phone_from_provider_id(sender_raw), default_country_code=credentials.country_code)
        sender_name = value.profile_name(inbound.from_) or value.profile_name(sender_raw)
        if not inbound.is_group and not sender_phone:
            logger.warning("inbound message without sender team_id=%s provider_id=%s", team_id, inbound.id)
            report.errors += 1
            return

        message = Message(
            team_id=team_id,
            direction=Direction.FROM_CONTACT,
            status=MessageStatus.DELIVERED,
            provider_message_id=inbound.id,
            sender_phone=sender_phone or None,
            sender_name=sender_name,
            is_group_message=inbound.is_group,
            delivered_at=now,
        )
        media_ref = self._extract_content(inbound, message)
        # Downloaded before any session is opened
        if media_ref is not None:
            await self._attach_media(credentials, media_ref, message)

        async with self.session_factory() as session:
            if inbound.is_group:
                group = await get_or_create_group(session, team_id, inbound.group_id)
                conversation = await get_or_create_group_conversation(session, team_id, group)
                last_activity = as_utc(group.last_activity_at)
                if last_activity is None or at > last_activity:
                    group.last_activity_at = at
            else:
                contact = await get_or_create_contact(session, team_id, sender_phone, name=sender_name)
                conversation = await get_or_create_contact_conversation(session, team_id, contact)
            message.conversation_id = conversation.id

            if inbound.context and inbound.context.id:
                message.context_provider_id = inbound.context.id
                replied = await self._find_by_provider_id(session, inbound.context.id)
                if replied is not None:
                    message.reply_to_message_id = replied.id

            record_inbound(conversation, at)
            session.add(message)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("duplicate inbound message (race) team_id=%s provider_id=%s", team_id, inbound.id)
                report.duplicates += 1
                return

        report.messages_stored += 1
        logger.info(
            "inbound message stored team_id=%s conversation_id=%s provider_id=%s type=%s",
            team_id,
            conversation.id,
            inbound.id,
            message.message_type.value,
        )

    @staticmethod
    async def _find_by_provider_id(session: AsyncSession, provider_id: str) -> Message | None:
        stmt = select(Message).where(Message.provider_message_id == provider_id)
        return (await session.execute(stmt)).scalars().first()

    @staticmethod
    def _extract_content(inbound: InboundMessage, message: Message) -> MediaContent | None:
        """Fill type/content fields on message; return the media reference to download, if any."""
        kind = inbound.type
        if kind in _MEDIA_KINDS:
            media = getattr(inbound, kind)
            message.message_type = _MEDIA_KINDS[kind]
            message.content = (media.caption or "") if media else ""
            if media and media.filename:
                message.file_name = media.filename
            return media if media and media.id else None
        if kind == "location" and inbound.location:
            loc = inbound.location
            message.message_type = MessageType.LOCATION
            message.latitude = loc.latitude
            message.longitude = loc.longitude
            message.location_name = loc.name
            message.location_address = loc.address
            message.content = loc.name or loc.address or f"{loc.latitude},{loc.longitude}"
            return None
        if kind == "contacts" and inbound.contacts:
            shared = inbound.contacts[0]
            name = (shared.name.formatted_name or shared.name.first_name) if shared.name else None
            phone = next((p.phone or p.wa_id for p in shared.phones if p.phone or p.wa_id), None)
            message.message_type = MessageType.CONTACT
            message.contact_name = name
            message.contact_phone = phone
            message.content = name or phone or ""
            return None

        message.message_type = MessageType.TEXT
        if kind == "text" and inbound.text:
            message.content = inbound.text.body
        elif kind == "button" and inbound.button:
            message.content = inbound.button.text or inbound.button.payload or ""
        elif kind == "interactive" and inbound.interactive:
            reply = inbound.interactive.button_reply or inbound.interactive.list_reply
            message.content = (reply.title or reply.id or "") if reply else ""
        else:
            message.content = f"[Unsupported message type: {kind}]"
        return None

    async def _attach_media(self, credentials: TenantCredentials, media: MediaContent, message: Message) -> None:
        stored = await self.media.download_inbound(credentials, media.id, media.mime_type)
        if stored is None:
            logger.warning("inbound media unavailable team_id=%s media_id=%s", credentials.team_id, media.id)
            return
        message.media_url = stored.url
        message.file_name = message.file_name or stored.filename
        message.file_size = stored.size
        message.mime_type = stored.mime_type

    async def _apply_status(self, credentials: TenantCredentials, event: StatusEvent, report: IngestReport) -> None:
        try:
            new_status = MessageStatus(event.status)
        except ValueError:
            logger.info("ignoring status %r provider_id=%s", event.status, event.id)
            return
        at = as_utc(event.at) or self.clock()

        async with self.session_factory() as session:
            stmt = select(Message).where(
                Message.provider_message_id == event.id,
                Message.team_id == credentials.team_id,
            )
            message = (await session.execute(stmt)).scalars().first()
            if message is None:
                logger.info(
                    "status for unknown message team_id=%s provider_id=%s status=%s",
                    credentials.team_id,
                    event.id,
                    event.status,
                )
                report.statuses_unmatched += 1
                return

            current = message.status
            if new_status == MessageStatus.FAILED:
                message.failed_at = message.failed_at or at
                message.last_error = event.error_text() or message.last_error or "Provider reported failure."
                if current not in (MessageStatus.READ, MessageStatus.FAILED):
                    message.status = MessageStatus.FAILED
            else:
                if new_status == MessageStatus.SENT:
                    message.sent_at = message.sent_at or at
                elif new_status == MessageStatus.DELIVERED:
                    message.delivered_at = message.delivered_at or at
                elif new_status == MessageStatus.READ:
                    message.read_at = message.read_at or at
                if current != MessageStatus.FAILED and _STATUS_RANK.get(new_status, 0) > _STATUS_RANK.get(current, 0):
                    message.status = new_status
            await session.commit()

        report.statuses_updated += 1
        logger.info(
            "status updated team_id=%s provider_id=%s %s -> %s",
            credentials.team_id,
            event.id,
            current.value,
            message.status.value,
        )

