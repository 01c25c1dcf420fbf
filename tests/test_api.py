"""HTTP surface: accept/lookup endpoints, provider catalogue, SSE framing."""

import asyncio
import json

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from genrelay.api.events import event_stream, format_sse
from genrelay.api.router import api_router
from genrelay.models import ModelRecord, ProviderRecord
from genrelay.schemas.generation import GenerationResult
from genrelay.services.config_store import ConfigStore
from genrelay.services.generation_service import GenerationOrchestrator
from genrelay.services.notification_bus import NotificationBus
from genrelay.services.provider_registry import ProviderRegistry
from genrelay.services.providers.base import BaseAdapter
from genrelay.services.usage_records import UsageRecordStore
from genrelay.tasks import BackgroundTaskRunner


class EchoAdapter(BaseAdapter):
    driver = "echo"

    async def generate_content(self, request, model):
        return GenerationResult(text=f"echo: {request.prompt}")


@pytest_asyncio.fixture
async def app(session_factory):
    async with session_factory() as session:
        session.add_all([
            ProviderRecord(id="ark", name="Ark", driver="echo", api_key="k"),
            ProviderRecord(id="weird", name="Weird", driver="mystery", api_key="k"),
            ModelRecord(provider_id="ark", model_id="seedream", name="Seedream", supported_sizes=["2K"]),
            ModelRecord(provider_id="weird", model_id="m1"),
        ])
        await session.commit()

    registry = ProviderRegistry()
    registry.register("echo", EchoAdapter)
    registry.seal()

    bus = NotificationBus()
    runner = BackgroundTaskRunner()
    app = FastAPI()
    app.include_router(api_router)
    app.state.bus = bus
    app.state.registry = registry
    app.state.config_store = ConfigStore(session_factory)
    app.state.records = UsageRecordStore(session_factory)
    app.state.orchestrator = GenerationOrchestrator(
        config_store=app.state.config_store,
        records=app.state.records,
        registry=registry,
        storage=None,
        runner=runner,
        bus=bus,
    )
    yield app
    await runner.shutdown()


@pytest_asyncio.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


# ── Generations ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_submit_accepts_and_completes(app, client):
    sub = app.state.bus.subscribe("tab-1")
    resp = await client.post("/api/generations", json={
        "client_id": "tab-1", "provider_id": "ark", "model_id": "seedream", "prompt": "a fox",
    })
    assert resp.status_code == 202
    body = resp.json()
    assert body["status"] == "processing"

    note = await asyncio.wait_for(sub.get(), 2)
    assert note.data == {"record_id": body["record_id"], "status": "success"}

    record = (await client.get(f"/api/generations/{body['record_id']}")).json()
    assert record["prompt"] == "a fox"
    assert record["output_text"] == "echo: a fox"
    assert record["error_message"] is None


@pytest.mark.asyncio
async def test_submit_error_statuses(client):
    base = {"client_id": "tab-1", "provider_id": "ark", "model_id": "seedream", "prompt": "a fox"}

    resp = await client.post("/api/generations", json={**base, "provider_id": "nope"})
    assert resp.status_code == 404

    resp = await client.post("/api/generations", json={**base, "prompt": ""})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "prompt is required"

    resp = await client.post("/api/generations", json={**base, "output": {"size": "8K"}})
    assert resp.status_code == 400

    resp = await client.post("/api/generations", json={**base, "provider_id": "weird", "model_id": "m1"})
    assert resp.status_code == 400
    assert "unsupported provider driver" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_unknown_record_is_404(client):
    resp = await client.get("/api/generations/999")
    assert resp.status_code == 404


# ── Providers ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_provider_catalogue(client):
    providers = (await client.get("/api/providers")).json()
    by_id = {p["id"]: p for p in providers}

    assert by_id["ark"]["available"] is True
    seedream = by_id["ark"]["models"][0]
    assert seedream["default_size"] == "2K"
    assert seedream["capabilities"]["supported_sizes"] == ["2K"]

    assert by_id["weird"]["available"] is False
    assert by_id["weird"]["models"][0]["capabilities"] is None
    assert "api_key" not in by_id["ark"]


@pytest.mark.asyncio
async def test_driver_listing(client):
    body = (await client.get("/api/providers/drivers")).json()
    assert body == {"drivers": ["echo"], "total": 1}


# ── Events ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_events_require_client_id(client):
    resp = await client.get("/api/generations/events", params={"client_id": "  "})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "client_id is required"


def test_format_sse():
    frame = format_sse("generation_completed", {"record_id": 3, "status": "failure", "error": "失败"})
    event_line, data_line, *_ = frame.split("\n")
    assert event_line == "event: generation_completed"
    assert json.loads(data_line[len("data: "):])["error"] == "失败"
    assert frame.endswith("\n\n")


@pytest.mark.asyncio
async def test_event_stream_delivers_then_pings():
    bus = NotificationBus()
    sub = bus.subscribe("tab-1")
    bus.publish("tab-1", "generation_completed", {"record_id": 1, "status": "success"})

    stream = event_stream(sub, bus, heartbeat=0.02)
    first = await stream.__anext__()
    second = await asyncio.wait_for(stream.__anext__(), 1)
    await stream.aclose()

    assert first.startswith("event: generation_completed\n")
    assert second.startswith("event: ping\n")
    assert "ts" in json.loads(second.split("\n")[1][len("data: "):])
    assert bus.subscriber_count("tab-1") == 0


@pytest.mark.asyncio
async def test_event_stream_stops_on_disconnect():
    bus = NotificationBus()
    sub = bus.subscribe("tab-1")

    async def gone():
        return True

    frames = [frame async for frame in event_stream(sub, bus, heartbeat=10, is_disconnected=gone)]

    assert frames == []
    assert bus.subscriber_count("tab-1") == 0
