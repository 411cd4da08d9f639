import logging
import os
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

from teamchat.config import CORS_ORIGINS, DELIVERY_QUEUE_SIZE, MEDIA_BASE_URL, MEDIA_ROOT, GatewayMode
from teamchat.database import SessionLocal, engine, init_db
from teamchat.delivery_queue import DeliveryQueue
from teamchat.delivery_worker import DeliveryWorker
from teamchat.dispatcher import OutboundDispatcher
from teamchat.media import MediaPipeline
from teamchat.messaging import MessagingService
from teamchat.rate_limit import RateLimiter
from teamchat.routers import tenant_messages, webhook
from teamchat.webhook import WebhookIngestor

logger = logging.getLogger(__name__)


def create_app(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    bind: AsyncEngine | None = None,
    mode: GatewayMode | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    media_root: str = MEDIA_ROOT,
    run_worker: bool = True,
) -> FastAPI:
    session_factory = session_factory or SessionLocal

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            await init_db(bind or engine)
            gateway_mode = mode or GatewayMode.from_env()
            if gateway_mode.bypass_signature_verification or gateway_mode.bypass_provider_calls:
                logger.warning(
                    "test mode active bypass_signature_verification=%s bypass_provider_calls=%s",
                    gateway_mode.bypass_signature_verification,
                    gateway_mode.bypass_provider_calls,
                )
            queue = DeliveryQueue(DELIVERY_QUEUE_SIZE)
            media = MediaPipeline(gateway_mode, media_root=media_root, transport=transport)
            dispatcher = OutboundDispatcher(gateway_mode, transport=transport)
            worker = DeliveryWorker(session_factory, queue, dispatcher, media)

            app.state.mode = gateway_mode
            app.state.queue = queue
            app.state.worker = worker
            app.state.rate_limiter = RateLimiter()
            app.state.messaging = MessagingService(session_factory, queue, dispatcher, media)
            app.state.ingestor = WebhookIngestor(session_factory, media, gateway_mode)
            if run_worker:
                worker.start()
        except Exception as e:
            logger.error("Failed to initialize app: %s", e, exc_info=True)
            raise
        yield
        try:
            await worker.stop()
        except Exception as e:
            logger.error("Error during shutdown: %s", e, exc_info=True)

    app = FastAPI(title="Team Chat Gateway", version="0.1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=3600,
    )

    app.include_router(webhook.router)
    app.include_router(tenant_messages.router)

    os.makedirs(media_root, exist_ok=True)
    app.mount(MEDIA_BASE_URL, StaticFiles(directory=media_root), name="media")

    @app.get("/")
    def root():
        return {"message": "Team Chat Gateway", "docs": "/docs"}

    @app.get("/health")
    def health():
        return {"ok": True}

    return app


app = create_app()
