"""Request-scoped accessors for the services wired in the app lifespan."""

from __future__ import annotations

from fastapi import Request

from genrelay.services.config_store import ConfigStore
from genrelay.services.generation_service import GenerationOrchestrator
from genrelay.services.notification_bus import NotificationBus
from genrelay.services.provider_registry import ProviderRegistry
from genrelay.services.usage_records import UsageRecordStore


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    return request.app.state.orchestrator


def get_bus(request: Request) -> NotificationBus:
    return request.app.state.bus


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


def get_config_store(request: Request) -> ConfigStore:
    return request.app.state.config_store


def get_records(request: Request) -> UsageRecordStore:
    return request.app.state.records
