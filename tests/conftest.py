"""Pytest configuration helpers.

Puts ``backend/`` on ``sys.path`` so tests import the ``genrelay`` package
however pytest is invoked, and points the settings at an in-memory SQLite
database before anything imports ``genrelay.database``.
"""
import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
BACKEND = os.path.join(ROOT, "backend")
if BACKEND not in sys.path:
    sys.path.insert(0, BACKEND)

os.environ.setdefault("DB_URL", "sqlite+aiosqlite:///:memory:")

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from genrelay.schemas.provider import ModelConfig, ProviderConfig  # noqa: E402


def make_provider(driver: str, **overrides) -> ProviderConfig:
    data = {"id": f"{driver}-main", "name": driver, "driver": driver, "api_key": "sk-test"}
    data.update(overrides)
    return ProviderConfig(**data)


def make_model(model_id: str = "test-model", **overrides) -> ModelConfig:
    data = {"provider_id": "p", "model_id": model_id}
    data.update(overrides)
    return ModelConfig(**data)


def sse_body(*payloads: str, done: bool = True) -> bytes:
    """``data:`` framed event-stream body from raw JSON payloads."""
    lines = [f"data: {p}\n\n" for p in payloads]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


class Recorder:
    """MockTransport handler that replays queued responses and records requests."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError(f"unexpected request: {request.method} {request.url}")
        return self.responses.pop(0)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory schema per test."""
    from genrelay import models  # noqa: F401
    from genrelay.database import Base

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def fast_polls(monkeypatch):
    """Shrink every adapter's poll interval so poll tests run instantly."""
    from genrelay.services.providers import dashscope, fal, volcengine
    from genrelay.services.task_poller import PollConfig

    quick = PollConfig(interval=0.001, max_attempts=5)
    monkeypatch.setattr(dashscope, "DASHSCOPE_POLL_CONFIG", quick)
    monkeypatch.setattr(fal, "FAL_POLL_CONFIG", quick)
    monkeypatch.setattr(volcengine, "VOLCENGINE_POLL_CONFIG", quick)
    return quick
