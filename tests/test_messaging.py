"""Tests for MessagingService: queued sends and synchronous template sends."""

import json
import os
import uuid
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import func, select

from teamchat.errors import ErrorKind, Failure
from teamchat.media import MB
from teamchat.models import Conversation, Message, MessageStatus, MessageType
from teamchat.schemas import QueueMessageRequest

from conftest import DRIVER_PHONE


async def _message_count(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(Message))).scalar_one()


class TestQueueOutbound:
    @pytest.mark.asyncio
    async def test_open_window_queues_and_enqueues(self, messaging, queue, team, make_conversation, clock):
        conversation = await make_conversation(last_inbound=clock.now - timedelta(hours=2))
        request = QueueMessageRequest(conversation_id=conversation.id, content="Load 14 ready")

        message = await messaging.queue_outbound(team.id, request)

        assert isinstance(message, Message)
        assert message.status == MessageStatus.QUEUED
        assert message.retry_count == 0
        assert message.conversation_id == conversation.id
        assert queue.qsize() == 1
        item = await queue.get()
        assert item.message_id == message.id
        assert item.team_id == team.id

    @pytest.mark.asyncio
    async def test_closed_window_rejected_without_row(self, messaging, queue, session_factory, team, make_conversation, clock):
        conversation = await make_conversation(last_inbound=clock.now - timedelta(hours=25))
        request = QueueMessageRequest(conversation_id=conversation.id, content="hello")

        result = await messaging.queue_outbound(team.id, request)

        assert isinstance(result, Failure)
        assert result.kind == ErrorKind.WINDOW_CLOSED
        assert result.http_status == 409
        assert await _message_count(session_factory) == 0
        assert queue.qsize() == 0

    @pytest.mark.asyncio
    async def test_never_messaged_contact_needs_template(self, messaging, team):
        result = await messaging.queue_outbound(team.id, QueueMessageRequest(phone_number="07911 123456", content="hi"))
        assert isinstance(result, Failure)
        assert result.kind == ErrorKind.WINDOW_CLOSED

    @pytest.mark.asyncio
    async def test_template_ignores_window(self, messaging, session_factory, team):
        request = QueueMessageRequest(
            phone_number="07911 123456",
            message_type=MessageType.TEMPLATE,
            template_name="shift_reminder",
            template_parameters={"1": "Sam"},
        )

        message = await messaging.queue_outbound(team.id, request)

        assert message.content == "Template: shift_reminder"
        assert message.template_parameters == {"1": "Sam"}
        async with session_factory() as session:
            conversation = await session.get(Conversation, message.conversation_id)
        assert conversation.is_group is False
        assert conversation.contact_id is not None

    @pytest.mark.asyncio
    async def test_group_send_not_window_gated(self, messaging, team):
        message = await messaging.queue_outbound(team.id, QueueMessageRequest(group_id="120363025@g.us", content="All hands"))
        assert isinstance(message, Message)
        assert message.is_group_message is True

    @pytest.mark.asyncio
    async def test_oversize_local_media_rejected_with_size(self, messaging, session_factory, media_root, team, make_conversation, clock):
        size = 8 * MB
        with open(os.path.join(media_root, "big.jpg"), "wb") as f:
            f.truncate(size)
        conversation = await make_conversation(last_inbound=clock.now - timedelta(minutes=5))
        request = QueueMessageRequest(conversation_id=conversation.id, message_type=MessageType.IMAGE, media_url="/media/big.jpg")

        result = await messaging.queue_outbound(team.id, request)

        assert isinstance(result, Failure)
        assert result.kind == ErrorKind.MEDIA_TOO_LARGE
        assert result.http_status == 413
        assert str(size) in result.detail
        assert await _message_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_unknown_team(self, messaging):
        result = await messaging.queue_outbound(uuid.uuid4(), QueueMessageRequest(phone_number=DRIVER_PHONE, content="hi"))
        assert isinstance(result, Failure)
        assert result.kind == ErrorKind.TENANT_NOT_FOUND
        assert result.http_status == 404

    @pytest.mark.asyncio
    async def test_foreign_conversation_rejected(self, messaging, team):
        result = await messaging.queue_outbound(team.id, QueueMessageRequest(conversation_id=uuid.uuid4(), content="hi"))
        assert isinstance(result, Failure)
        assert result.kind == ErrorKind.INVALID_RECIPIENT

    @pytest.mark.asyncio
    async def test_reply_carries_provider_context(self, messaging, team, make_conversation, make_message, clock):
        conversation = await make_conversation(last_inbound=clock.now - timedelta(minutes=5))
        original = await make_message(conversation, status=MessageStatus.SENT, provider_message_id="wamid.orig")
        request = QueueMessageRequest(conversation_id=conversation.id, content="yes", reply_to_message_id=original.id)

        message = await messaging.queue_outbound(team.id, request)

        assert message.reply_to_message_id == original.id
        assert message.context_provider_id == "wamid.orig"


class TestWindowStatus:
    @pytest.mark.asyncio
    async def test_scoped_to_team(self, messaging, team, make_conversation, clock):
        conversation = await make_conversation(last_inbound=clock.now - timedelta(hours=1))

        status = await messaging.window_status(conversation.id, team.id)
        assert status.can_send_freeform is True
        assert status.remaining_seconds == 23 * 3600

        assert await messaging.window_status(conversation.id, uuid.uuid4()) is None


class TestSendTemplateNow:
    @pytest.mark.asyncio
    async def test_success_persisted_as_sent(self, messaging, provider, load_message, team):
        outcome = await messaging.send_template_now(team.id, "07911 123456", "shift_reminder", {"1": "Sam"})

        assert outcome.ok
        assert outcome.provider_message_id == "wamid.123"
        stored = await load_message(outcome.message_id)
        assert stored.status == MessageStatus.SENT
        assert stored.message_type == MessageType.TEMPLATE
        assert stored.provider_message_id == "wamid.123"
        assert stored.sent_at is not None
        body = json.loads(provider.requests[0].content)
        assert body["to"] == DRIVER_PHONE
        assert body["template"]["components"][0]["parameters"] == [{"type": "text", "text": "Sam"}]

    @pytest.mark.asyncio
    async def test_provider_error_persisted_as_failed(self, messaging, provider, load_message, team):
        provider.responder = lambda request: httpx.Response(400, json={"error": {"message": "Template name does not exist", "code": 132001}})

        outcome = await messaging.send_template_now(team.id, DRIVER_PHONE, "missing_template")

        assert not outcome.ok
        assert outcome.failure.kind == ErrorKind.PROVIDER_REQUEST_FAILED
        stored = await load_message(outcome.message_id)
        assert stored.status == MessageStatus.FAILED
        assert "Template name does not exist" in stored.last_error
        assert stored.provider_message_id is None

    @pytest.mark.asyncio
    async def test_unknown_team_sends_nothing(self, messaging, provider):
        outcome = await messaging.send_template_now(uuid.uuid4(), DRIVER_PHONE, "shift_reminder")
        assert outcome.failure.kind == ErrorKind.TENANT_NOT_FOUND
        assert outcome.message_id is None
        assert provider.calls == 0
