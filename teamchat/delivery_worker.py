"""
Background delivery of queued outbound messages.

Workers take (message_id, team_id) items from the DeliveryQueue and claim the
Message row with one conditional UPDATE (queued -> sending). The claim is the
only mutual exclusion: any number of workers may see the same item, exactly
one proceeds.

Outcome of an attempt:
- success: status=sent, provider id stored.
- retryable failure (provider, network, upload, unreachable media source):
  retry_count += 1; while retry_count <= max_retries the row goes back to
  queued with next_retry_at = now + 2**retry_count seconds, otherwise failed.
- permanent failure (window closed, media too large, tenant/credentials,
  bad recipient): failed immediately.

A scanner task re-enqueues due retries every scan interval. On start it also
releases stale `sending` claims left by a previous process and enqueues every
due queued message.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from pydantic import ValidationError
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from teamchat.config import DELIVERY_MAX_RETRIES, DELIVERY_WORKERS, RETRY_SCAN_INTERVAL_SEC
from teamchat.delivery_queue import DeliveryQueue
from teamchat.dispatcher import OutboundDispatcher
from teamchat.errors import ErrorKind, Failure, SendResult
from teamchat.media import MediaPipeline, check_size
from teamchat.models.contact import Contact, Group
from teamchat.models.conversation import Conversation
from teamchat.models.message import MEDIA_TYPES, Message, MessageStatus, MessageType
from teamchat.payloads import ContactPayload, LocationPayload, MediaPayload, OutboundPayload, TemplatePayload, TextPayload
from teamchat.tenant_directory import TenantCredentials, resolve_by_id, tenant_failure
from teamchat.window import compute_status, utcnow

logger = logging.getLogger(__name__)

STALE_CLAIM_AFTER = timedelta(minutes=5)


def backoff_delay(retry_count: int) -> timedelta:
    return timedelta(seconds=2**retry_count)


class DeliveryWorker:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: DeliveryQueue,
        dispatcher: OutboundDispatcher,
        media: MediaPipeline,
        workers: int = DELIVERY_WORKERS,
        max_retries: int = DELIVERY_MAX_RETRIES,
        scan_interval: float = RETRY_SCAN_INTERVAL_SEC,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.queue = queue
        self.dispatcher = dispatcher
        self.media = media
        self.workers = max(1, workers)
        self.max_retries = max_retries
        self.scan_interval = scan_interval
        self.clock = clock
        self._tasks: list[asyncio.Task[None]] = []

    # ---- claim -----------------------------------------------------------

    async def claim(self, message_id: uuid.UUID, now: datetime | None = None) -> bool:
        """queued -> sending for a due message. True iff this caller won the row."""
        now = now or self.clock()
        stmt = (
            update(Message)
            .where(
                Message.id == message_id,
                Message.status == MessageStatus.QUEUED,
                or_(Message.next_retry_at.is_(None), Message.next_retry_at <= now),
            )
            .values(status=MessageStatus.SENDING, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def _release(self, message_id: uuid.UUID) -> None:
        stmt = (
            update(Message)
            .where(Message.id == message_id, Message.status == MessageStatus.SENDING)
            .values(status=MessageStatus.QUEUED, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    # ---- one attempt -----------------------------------------------------

    async def process(self, message_id: uuid.UUID, team_id: uuid.UUID) -> MessageStatus | None:
        """Claim and attempt delivery. Returns the resulting status, or None when not claimed."""
        if not await self.claim(message_id):
            logger.debug("claim skipped message_id=%s team_id=%s", message_id, team_id)
            return None

        try:
            result = await self._deliver(message_id, team_id)
        except asyncio.CancelledError:
            await asyncio.shield(self._release(message_id))
            logger.info("delivery cancelled, claim released message_id=%s", message_id)
            raise
        except Exception as e:
            logger.exception("delivery error message_id=%s team_id=%s", message_id, team_id)
            result = SendResult.failed(ErrorKind.PROVIDER_REQUEST_FAILED, str(e) or type(e).__name__)

        if result is None:
            logger.warning("claimed message vanished message_id=%s", message_id)
            return None
        return await self._record(message_id, result)

    async def _deliver(self, message_id: uuid.UUID, team_id: uuid.UUID) -> SendResult | None:
        async with self.session_factory() as session:
            message = await session.get(Message, message_id)
            if message is None:
                return None
            if message.team_id != team_id:
                logger.warning(
                    "queue team mismatch message_id=%s queued_team=%s row_team=%s",
                    message_id,
                    team_id,
                    message.team_id,
                )

            credentials = await resolve_by_id(session, message.team_id)
            if credentials is None:
                return SendResult(failure=await tenant_failure(session, message.team_id))
            if not credentials.is_configured:
                return SendResult.failed(
                    ErrorKind.CREDENTIALS_MISSING,
                    f"WhatsApp credentials are not configured for team {credentials.team_id}.",
                )

            conversation = await session.get(Conversation, message.conversation_id)
            if conversation is None:
                return SendResult.failed(ErrorKind.INVALID_RECIPIENT, "Conversation not found.")

            if conversation.is_group:
                group = await session.get(Group, conversation.group_id) if conversation.group_id else None
                destination = group.provider_group_id if group else ""
            else:
                contact = await session.get(Contact, conversation.contact_id) if conversation.contact_id else None
                destination = contact.phone_number if contact else ""

            if message.message_type != MessageType.TEMPLATE and not conversation.is_group:
                window = compute_status(conversation, self.clock())
                if not window.can_send_freeform:
                    logger.info(
                        "window closed message_id=%s conversation_id=%s status=%s",
                        message_id,
                        conversation.id,
                        window.status,
                    )
                    return SendResult.failed(ErrorKind.WINDOW_CLOSED, window.message)

            reply_to = message.context_provider_id
            if not reply_to and message.reply_to_message_id:
                original = await session.get(Message, message.reply_to_message_id)
                reply_to = original.provider_message_id if original else None

            payload = await self._payload_for(message, credentials)
            if isinstance(payload, Failure):
                return SendResult(failure=payload)

        return await self.dispatcher.send(
            credentials,
            destination,
            payload,
            reply_to=reply_to,
            is_group=conversation.is_group,
        )

    async def _payload_for(self, message: Message, credentials: TenantCredentials) -> OutboundPayload | Failure:
        kind = message.message_type
        try:
            if kind == MessageType.TEMPLATE:
                return TemplatePayload(
                    name=message.template_name or "",
                    language_code=message.language_code or "en_US",
                    parameters={str(k): str(v) for k, v in (message.template_parameters or {}).items()},
                )
            if kind == MessageType.LOCATION:
                return LocationPayload(
                    latitude=message.latitude,
                    longitude=message.longitude,
                    name=message.location_name,
                    address=message.location_address,
                )
            if kind == MessageType.CONTACT:
                return ContactPayload(name=message.contact_name or "", phone=message.contact_phone or "")
            if kind in MEDIA_TYPES:
                return await self._media_payload(message, credentials)
            return TextPayload(body=message.content)
        except ValidationError as e:
            return Failure(ErrorKind.INVALID_RECIPIENT, f"Message {message.id} is not sendable: {e.errors()[0]['msg']}")

    async def _media_payload(self, message: Message, credentials: TenantCredentials) -> MediaPayload | Failure:
        kind = message.message_type
        if not message.media_url:
            return Failure(ErrorKind.MEDIA_DOWNLOAD_FAILED, "Message has no media source.")
        loaded = await self.media.load_source(message.media_url, message.file_name, message.mime_type)
        if isinstance(loaded, Failure):
            return loaded
        too_large = check_size(kind, loaded.size)
        if too_large:
            return too_large
        upload = await self.media.upload_outbound(credentials, loaded.data, loaded.filename, loaded.mime_type, kind)
        if not upload.ok:
            return upload.failure or Failure(ErrorKind.MEDIA_UPLOAD_FAILED)
        return MediaPayload(
            type=kind.value,
            media_id=upload.media_id,
            caption=message.content or None,
            filename=message.file_name or loaded.filename,
        )

    async def _record(self, message_id: uuid.UUID, result: SendResult) -> MessageStatus | None:
        now = self.clock()
        async with self.session_factory() as session:
            message = await session.get(Message, message_id)
            if message is None:
                return None
            message.updated_at = now
            if result.ok:
                message.status = MessageStatus.SENT
                message.provider_message_id = result.provider_message_id
                message.sent_at = now
                message.next_retry_at = None
                message.last_error = None
            else:
                failure = result.failure or Failure(ErrorKind.PROVIDER_REQUEST_FAILED)
                message.last_error = str(failure)
                if failure.retryable:
                    message.retry_count = (message.retry_count or 0) + 1
                if failure.retryable and message.retry_count <= self.max_retries:
                    message.status = MessageStatus.QUEUED
                    message.next_retry_at = now + backoff_delay(message.retry_count)
                else:
                    message.status = MessageStatus.FAILED
                    message.failed_at = now
                    message.next_retry_at = None
            await session.commit()
            status = message.status

        if result.ok:
            logger.info("delivered message_id=%s provider_id=%s", message_id, result.provider_message_id)
        elif status == MessageStatus.QUEUED:
            logger.warning(
                "delivery failed, will retry message_id=%s retry=%s/%s error=%s",
                message_id,
                message.retry_count,
                self.max_retries,
                result.failure,
            )
        else:
            logger.error("delivery failed permanently message_id=%s error=%s", message_id, result.failure)
        return status

    # ---- scanning --------------------------------------------------------

    async def _enqueue_due(self, session: AsyncSession, now: datetime, include_fresh: bool) -> int:
        due = Message.next_retry_at <= now
        stmt = select(Message.id, Message.team_id).where(
            Message.status == MessageStatus.QUEUED,
            Message.retry_count <= self.max_retries,
            or_(Message.next_retry_at.is_(None), due) if include_fresh else due,
        )
        rows = (await session.execute(stmt)).all()
        for message_id, team_id in rows:
            await self.queue.enqueue(message_id, team_id)
        return len(rows)

    async def requeue_due(self, now: datetime | None = None) -> int:
        """Re-enqueue queued messages whose retry time has come."""
        now = now or self.clock()
        async with self.session_factory() as session:
            count = await self._enqueue_due(session, now, include_fresh=False)
        if count:
            logger.info("retry scan requeued count=%s", count)
        return count

    async def recover(self, now: datetime | None = None) -> int:
        """Release stale claims and enqueue everything deliverable."""
        now = now or self.clock()
        async with self.session_factory() as session:
            released = await session.execute(
                update(Message)
                .where(
                    Message.status == MessageStatus.SENDING,
                    Message.updated_at < now - STALE_CLAIM_AFTER,
                )
                .values(status=MessageStatus.QUEUED, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if released.rowcount:
                logger.warning("released stale claims count=%s", released.rowcount)
            count = await self._enqueue_due(session, now, include_fresh=True)
        logger.info("delivery recovery enqueued count=%s", count)
        return count

    # ---- lifecycle -------------------------------------------------------

    async def _run_worker(self, index: int) -> None:
        logger.info("delivery worker %s started", index)
        while True:
            item = await self.queue.get()
            try:
                await self.process(item.message_id, item.team_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("delivery worker %s error message_id=%s", index, item.message_id)
            finally:
                self.queue.task_done()

    async def _run_scanner(self) -> None:
        try:
            await self.recover()
        except Exception:
            logger.exception("delivery recovery failed")
        while True:
            await asyncio.sleep(self.scan_interval)
            try:
                await self.requeue_due()
            except Exception:
                logger.exception("retry scan failed")

    def start(self) -> None:
        if self._tasks:
            return
        for i in range(self.workers):
            self._tasks.append(asyncio.create_task(self._run_worker(i), name=f"delivery-worker-{i}"))
        self._tasks.append(asyncio.create_task(self._run_scanner(), name="delivery-retry-scanner"))

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("delivery worker stopped")

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)
