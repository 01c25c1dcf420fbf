from __future__ import annotations
"""GenRelay: FastAPI application entry point.

Wires the generation core (resolver, registry, bus, storage, orchestrator)
onto ``app.state`` in the lifespan, mounts the API routes and serves the
media volume.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from genrelay.api.router import api_router
from genrelay.config import get_settings
from genrelay.database import async_session_factory, close_db, init_db
from genrelay.services.config_store import ConfigStore
from genrelay.services.generation_service import GenerationOrchestrator
from genrelay.services.media_resolver import MediaResolver
from genrelay.services.notification_bus import NotificationBus
from genrelay.services.provider_registry import build_default_registry
from genrelay.services.redis_relay import RedisRelay
from genrelay.services.storage import LocalStorage
from genrelay.services.usage_records import UsageRecordStore
from genrelay.tasks import BackgroundTaskRunner

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the generation core on startup, tear it down on shutdown."""
    logger.info("%s starting up...", settings.APP_NAME)
    os.makedirs(settings.MEDIA_VOLUME, exist_ok=True)
    await init_db()

    http_client = httpx.AsyncClient(timeout=60.0, follow_redirects=True)
    resolver = MediaResolver(http_client=http_client, timeout=settings.MEDIA_RESOLVER_TIMEOUT)
    registry = build_default_registry(http_client=http_client, media_resolver=resolver)
    bus = NotificationBus(mailbox_size=settings.SSE_MAILBOX_SIZE)
    runner = BackgroundTaskRunner()

    relay = None
    relay_task = None
    if settings.NOTIFY_REDIS_ENABLED:
        relay = RedisRelay(bus, settings.REDIS_URL)
        relay_task = asyncio.create_task(relay.run(), name="redis-relay")

    app.state.bus = bus
    app.state.registry = registry
    app.state.config_store = ConfigStore(async_session_factory)
    app.state.records = UsageRecordStore(async_session_factory)
    app.state.orchestrator = GenerationOrchestrator(
        config_store=app.state.config_store,
        records=app.state.records,
        registry=registry,
        storage=LocalStorage(settings.MEDIA_VOLUME),
        runner=runner,
        media_resolver=resolver,
        bus=bus,
        relay=relay,
        generation_timeout=settings.GENERATION_TIMEOUT,
        storage_timeout=settings.STORAGE_TIMEOUT,
        media_fetch_timeout=settings.MEDIA_FETCH_TIMEOUT,
        record_update_timeout=settings.RECORD_UPDATE_TIMEOUT,
    )
    logger.info("Drivers registered: %s", ", ".join(registry.list_drivers()))

    yield

    await runner.shutdown()
    if relay_task is not None:
        relay_task.cancel()
        try:
            await relay_task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning("Redis relay stopped with error: %s", e)
    if relay is not None:
        await relay.aclose()
    await registry.aclose()
    await http_client.aclose()
    await close_db()
    logger.info("%s shut down", settings.APP_NAME)


app = FastAPI(
    title="GenRelay API",
    description="Generation gateway in front of six image and video providers",
    version="0.1.0",
    lifespan=lifespan,
    redirect_slashes=False,
)

# CORS: comma-separated origins from CORS_ORIGINS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount API routes
app.include_router(api_router)

# Mount media static files
os.makedirs(settings.MEDIA_VOLUME, exist_ok=True)
app.mount(settings.MEDIA_URL_PREFIX, StaticFiles(directory=settings.MEDIA_VOLUME), name="media")


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"service": settings.APP_NAME, "status": "running"}


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "database": settings.DB_HOST,
        "redis_relay": settings.NOTIFY_REDIS_ENABLED,
    }
