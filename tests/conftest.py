"""
Shared pytest fixtures.

Environment is set before any teamchat module is imported: a throwaway SQLite
database, a fresh Fernet key and a temporary media root. Each test gets its own
SQLite file and a fake Graph API backed by httpx.MockTransport.
"""

import json
import os
import tempfile
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from cryptography.fernet import Fernet

_TMP = tempfile.mkdtemp(prefix="teamchat-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TMP, 'default.db')}"
os.environ["CREDENTIALS_ENC_KEY"] = Fernet.generate_key().decode()
os.environ["MEDIA_ROOT"] = os.path.join(_TMP, "media")
os.environ["WHATSAPP_APP_SECRET"] = "global-secret"
os.environ["WEBHOOK_VERIFY_TOKEN"] = "verify-me"
os.environ["DEFAULT_COUNTRY_CODE"] = "44"

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402

from teamchat.config import GatewayMode  # noqa: E402
from teamchat.conversations import (  # noqa: E402
    get_or_create_contact,
    get_or_create_contact_conversation,
    get_or_create_group,
    get_or_create_group_conversation,
)
from teamchat.credential_crypto import encrypt_secret  # noqa: E402
from teamchat.database import init_db, make_session_factory  # noqa: E402
from teamchat.delivery_queue import DeliveryQueue  # noqa: E402
from teamchat.delivery_worker import DeliveryWorker  # noqa: E402
from teamchat.dispatcher import OutboundDispatcher  # noqa: E402
from teamchat.media import MediaPipeline  # noqa: E402
from teamchat.messaging import MessagingService  # noqa: E402
from teamchat.models import Conversation, Direction, Message, MessageStatus, MessageType, Team  # noqa: E402
from teamchat.webhook import WebhookIngestor  # noqa: E402

PHONE_NUMBER_ID = "PNID-1"
ACCESS_TOKEN = "token-abc"
TEAM_SECRET = "team-secret"
DRIVER_PHONE = "447911123456"
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeProvider:
    """Records every request; `responder` decides the reply."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responder: Callable[[httpx.Request], httpx.Response] = self.ok

    @staticmethod
    def ok(request: httpx.Request, provider_id: str = "wamid.123") -> httpx.Response:
        return httpx.Response(200, json={"messaging_product": "whatsapp", "messages": [{"id": provider_id}]})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def calls(self) -> int:
        return len(self.requests)

    def json_bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.headers.get("content-type", "").startswith("application/json")]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def mode() -> GatewayMode:
    return GatewayMode()


@pytest.fixture
def media_root(tmp_path) -> str:
    path = tmp_path / "media"
    path.mkdir()
    return str(path)


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def team(session_factory) -> Team:
    async with session_factory() as session:
        row = Team(
            name="Depot North",
            phone_number_id=PHONE_NUMBER_ID,
            access_token=encrypt_secret(ACCESS_TOKEN),
            business_account_id="WABA-1",
            api_version="18.0",
            country_code="44",
            app_secret=encrypt_secret(TEAM_SECRET),
        )
        session.add(row)
        await session.commit()
    return row


@pytest.fixture
def media(mode, media_root, provider) -> MediaPipeline:
    return MediaPipeline(mode, media_root=media_root, transport=provider.transport)


@pytest.fixture
def dispatcher(mode, provider) -> OutboundDispatcher:
    return OutboundDispatcher(mode, transport=provider.transport)


@pytest.fixture
def queue() -> DeliveryQueue:
    return DeliveryQueue(maxsize=100)


@pytest.fixture
def worker(session_factory, queue, dispatcher, media, clock) -> DeliveryWorker:
    return DeliveryWorker(session_factory, queue, dispatcher, media, workers=1, max_retries=3, scan_interval=0.05, clock=clock)


@pytest.fixture
def messaging(session_factory, queue, dispatcher, media, clock) -> MessagingService:
    return MessagingService(session_factory, queue, dispatcher, media, clock=clock)


@pytest.fixture
def ingestor(session_factory, media, mode, clock) -> WebhookIngestor:
    return WebhookIngestor(session_factory, media, mode, app_secret="global-secret", verify_token="verify-me", clock=clock)


@pytest.fixture
def make_conversation(session_factory, team):
    """Create a 1:1 (or group) conversation with an optional last inbound time."""

    async def _make(
        phone: str = DRIVER_PHONE,
        last_inbound: datetime | None = None,
        group_id: str | None = None,
    ) -> Conversation:
        async with session_factory() as session:
            if group_id:
                group = await get_or_create_group(session, team.id, group_id)
                conversation = await get_or_create_group_conversation(session, team.id, group)
            else:
                contact = await get_or_create_contact(session, team.id, phone)
                conversation = await get_or_create_contact_conversation(session, team.id, contact)
            conversation.last_inbound_message_at = last_inbound
            await session.commit()
        return conversation

    return _make


@pytest.fixture
def make_message(session_factory, team):
    """Insert a queued outbound message directly."""

    async def _make(conversation: Conversation, **fields) -> Message:
        values = {
            "conversation_id": conversation.id,
            "team_id": team.id,
            "direction": Direction.TO_CONTACT,
            "message_type": MessageType.TEXT,
            "content": "hello",
            "status": MessageStatus.QUEUED,
            "retry_count": 0,
        }
        values.update(fields)
        async with session_factory() as session:
            message = Message(**values)
            session.add(message)
            await session.commit()
        return message

    return _make


@pytest.fixture
def load_message(session_factory):
    async def _load(message_id) -> Message | None:
        async with session_factory() as session:
            return await session.get(Message, message_id)

    return _load
