"""
Entry points for components that send messages.

Queued sends create a `queued` Message and hand it to the delivery worker.
Template sends bypass the queue so the provider's answer can be returned to
the caller directly.
"""

from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from teamchat.conversations import (
    get_or_create_contact,
    get_or_create_contact_conversation,
    get_or_create_group,
    get_or_create_group_conversation,
)
from teamchat.delivery_queue import DeliveryQueue
from teamchat.dispatcher import OutboundDispatcher
from teamchat.errors import ErrorKind, Failure
from teamchat.media import MediaPipeline, check_size
from teamchat.models.contact import Contact, Group
from teamchat.models.conversation import Conversation
from teamchat.models.message import MEDIA_TYPES, Direction, Message, MessageStatus, MessageType
from teamchat.payloads import DEFAULT_LANGUAGE_CODE
from teamchat.phone import canonicalize
from teamchat.schemas import QueueMessageRequest
from teamchat.tenant_directory import TenantCredentials, resolve_by_id, tenant_failure
from teamchat.window import WindowStatus, as_utc, compute_status, compute_window_status, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TemplateSendOutcome:
    message_id: uuid.UUID | None = None
    provider_message_id: str | None = None
    failure: Failure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None and bool(self.provider_message_id)


def _touch(conversation: Conversation, at: datetime) -> None:
    last = as_utc(conversation.last_message_at)
    if last is None or at > last:
        conversation.last_message_at = at


class MessagingService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: DeliveryQueue,
        dispatcher: OutboundDispatcher,
        media: MediaPipeline,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.queue = queue
        self.dispatcher = dispatcher
        self.media = media
        self.clock = clock

    async def enqueue(self, message_id: uuid.UUID, team_id: uuid.UUID) -> None:
        await self.queue.enqueue(message_id, team_id)

    async def window_status(
        self,
        conversation_id: uuid.UUID,
        team_id: uuid.UUID | None = None,
    ) -> WindowStatus | None:
        """None for an unknown conversation, or one belonging to another team."""
        async with self.session_factory() as session:
            if team_id is not None:
                conversation = await session.get(Conversation, conversation_id)
                if conversation is None or conversation.team_id != team_id:
                    return None
                return compute_status(conversation, self.clock())
            return await compute_window_status(session, conversation_id, self.clock())

    async def _credentials(self, session: AsyncSession, team_id: uuid.UUID) -> TenantCredentials | Failure:
        credentials = await resolve_by_id(session, team_id)
        if credentials is None:
            return await tenant_failure(session, team_id)
        if not credentials.is_configured:
            return Failure(
                ErrorKind.CREDENTIALS_MISSING,
                f"WhatsApp credentials are not configured for team {team_id}.",
            )
        return credentials

    async def _conversation(
        self,
        session: AsyncSession,
        credentials: TenantCredentials,
        conversation_id: uuid.UUID | None = None,
        phone_number: str | None = None,
        group_id: str | None = None,
    ) -> Conversation | Failure:
        team_id = credentials.team_id
        if conversation_id:
            conversation = await session.get(Conversation, conversation_id)
            if conversation is None or conversation.team_id != team_id:
                return Failure(ErrorKind.INVALID_RECIPIENT, f"Conversation {conversation_id} not found for this team.")
            return conversation
        if group_id:
            group = await get_or_create_group(session, team_id, group_id.strip())
            return await get_or_create_group_conversation(session, team_id, group)
        canonical = canonicalize(phone_number, default_country_code=credentials.country_code)
        if not canonical:
            return Failure(ErrorKind.INVALID_RECIPIENT, f"Invalid phone number {phone_number!r}.")
        contact = await get_or_create_contact(session, team_id, canonical)
        return await get_or_create_contact_conversation(session, team_id, contact)

    async def queue_outbound(self, team_id: uuid.UUID, request: QueueMessageRequest) -> Message | Failure:
        """Validate and persist a queued outbound message, then enqueue it.

        Permanent problems (unknown team, closed window, oversize local media)
        are returned immediately and nothing is stored.
        """
        async with self.session_factory() as session:
            credentials = await self._credentials(session, team_id)
            if isinstance(credentials, Failure):
                return credentials
            conversation = await self._conversation(
                session,
                credentials,
                conversation_id=request.conversation_id,
                phone_number=request.phone_number,
                group_id=request.group_id,
            )
            if isinstance(conversation, Failure):
                return conversation

            now = self.clock()
            kind = request.message_type
            if kind != MessageType.TEMPLATE:
                window = compute_status(conversation, now)
                if not window.can_send_freeform:
                    logger.info(
                        "queue rejected, window closed team_id=%s conversation_id=%s status=%s",
                        team_id,
                        conversation.id,
                        window.status,
                    )
                    return Failure(ErrorKind.WINDOW_CLOSED, window.message)

            if kind in MEDIA_TYPES and request.media_url:
                local = self.media.local_path(request.media_url)
                if local:
                    too_large = check_size(kind, os.path.getsize(local))
                    if too_large:
                        return too_large

            context_provider_id = None
            if request.reply_to_message_id:
                original = await session.get(Message, request.reply_to_message_id)
                if original is not None and original.conversation_id == conversation.id:
                    context_provider_id = original.provider_message_id

            message = Message(
                conversation_id=conversation.id,
                team_id=team_id,
                direction=Direction.TO_CONTACT,
                message_type=kind,
                status=MessageStatus.QUEUED,
                retry_count=0,
                content=f"Template: {request.template_name}" if kind == MessageType.TEMPLATE else request.content,
                media_url=request.media_url,
                file_name=request.file_name,
                mime_type=request.mime_type,
                latitude=request.latitude,
                longitude=request.longitude,
                location_name=request.location_name,
                location_address=request.location_address,
                contact_name=request.contact_name,
                contact_phone=request.contact_phone,
                template_name=request.template_name,
                template_parameters=request.template_parameters or None,
                language_code=request.language_code if kind == MessageType.TEMPLATE else None,
                reply_to_message_id=request.reply_to_message_id,
                context_provider_id=context_provider_id,
                is_group_message=conversation.is_group,
            )
            _touch(conversation, now)
            session.add(message)
            await session.commit()

        logger.info(
            "message queued team_id=%s conversation_id=%s message_id=%s type=%s",
            team_id,
            conversation.id,
            message.id,
            kind.value,
        )
        await self.enqueue(message.id, team_id)
        return message

    async def send_template_now(
        self,
        team_id: uuid.UUID,
        destination: str | None,
        template_name: str,
        parameters: dict[str, str] | None = None,
        language_code: str = DEFAULT_LANGUAGE_CODE,
        conversation_id: uuid.UUID | None = None,
    ) -> TemplateSendOutcome:
        """Send a template synchronously and persist it as sent or failed."""
        async with self.session_factory() as session:
            credentials = await self._credentials(session, team_id)
            if isinstance(credentials, Failure):
                return TemplateSendOutcome(failure=credentials)
            conversation = await self._conversation(
                session,
                credentials,
                conversation_id=conversation_id,
                phone_number=destination,
            )
            if isinstance(conversation, Failure):
                return TemplateSendOutcome(failure=conversation)

            if conversation.is_group:
                group = await session.get(Group, conversation.group_id)
                recipient = group.provider_group_id if group else ""
            else:
                contact = await session.get(Contact, conversation.contact_id)
                recipient = contact.phone_number if contact else ""

            result = await self.dispatcher.send_template(
                credentials,
                recipient,
                template_name,
                parameters=parameters,
                language_code=language_code or DEFAULT_LANGUAGE_CODE,
                is_group=conversation.is_group,
            )

            now = self.clock()
            message = Message(
                conversation_id=conversation.id,
                team_id=team_id,
                direction=Direction.TO_CONTACT,
                message_type=MessageType.TEMPLATE,
                content=f"Template: {template_name}",
                template_name=template_name,
                template_parameters=parameters or None,
                language_code=language_code or DEFAULT_LANGUAGE_CODE,
                is_group_message=conversation.is_group,
            )
            if result.ok:
                message.status = MessageStatus.SENT
                message.provider_message_id = result.provider_message_id
                message.sent_at = now
            else:
                message.status = MessageStatus.FAILED
                message.failed_at = now
                message.last_error = str(result.failure)
            _touch(conversation, now)
            session.add(message)
            await session.commit()

        if result.ok:
            logger.info(
                "template sent team_id=%s template=%s message_id=%s provider_id=%s",
                team_id,
                template_name,
                message.id,
                result.provider_message_id,
            )
        else:
            logger.warning(
                "template send failed team_id=%s template=%s message_id=%s error=%s",
                team_id,
                template_name,
                message.id,
                result.failure,
            )
        return TemplateSendOutcome(
            message_id=message.id,
            provider_message_id=result.provider_message_id,
            failure=result.failure,
        )
