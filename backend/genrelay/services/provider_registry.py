"""Driver → adapter constructor table with a per-provider adapter cache.

Usage:
    registry = build_default_registry()
    adapter = registry.resolve(provider_config)
    registry.invalidate(provider_config.id)   # after credentials change
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

import httpx

from genrelay.errors import DriverUnsupportedError
from genrelay.models.provider import (
    DRIVER_AIHUBMIX,
    DRIVER_DASHSCOPE,
    DRIVER_FAL,
    DRIVER_GEMINI,
    DRIVER_OPENROUTER,
    DRIVER_VOLCENGINE,
)
from genrelay.schemas.provider import ProviderConfig
from genrelay.services.media_resolver import MediaResolver
from genrelay.services.providers.aihubmix import AiHubMixAdapter
from genrelay.services.providers.base import BaseAdapter
from genrelay.services.providers.dashscope import DashScopeAdapter
from genrelay.services.providers.fal import FalAdapter
from genrelay.services.providers.gemini import GeminiAdapter
from genrelay.services.providers.openrouter import OpenRouterAdapter
from genrelay.services.providers.volcengine import VolcengineAdapter

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[ProviderConfig], BaseAdapter]


def normalize_driver(provider: ProviderConfig) -> str:
    """Lower-cased driver name, falling back to the provider id."""
    return (provider.driver.strip() or provider.id).strip().lower()


class ProviderRegistry:
    """Constructs and caches one adapter per provider id.

    Registration happens at start-up; ``seal()`` freezes the constructor
    table. Failed constructions are never cached.
    """

    def __init__(self) -> None:
        self._constructors: dict[str, AdapterFactory] = {}
        self._cache: dict[str, BaseAdapter] = {}
        self._lock = threading.Lock()
        self._sealed = False

    def register(self, driver: str, factory: AdapterFactory) -> None:
        if self._sealed:
            raise RuntimeError("provider registry is sealed")
        self._constructors[driver.strip().lower()] = factory

    def seal(self) -> None:
        self._sealed = True

    def list_drivers(self) -> list[str]:
        return sorted(self._constructors)

    def resolve(self, provider: ProviderConfig) -> BaseAdapter:
        """Cached adapter for ``provider.id``, constructing it on first use."""
        with self._lock:
            cached = self._cache.get(provider.id)
        if cached is not None:
            return cached

        driver = normalize_driver(provider)
        factory = self._constructors.get(driver)
        if factory is None:
            raise DriverUnsupportedError(driver)

        adapter = factory(provider)

        with self._lock:
            existing = self._cache.get(provider.id)
            if existing is not None:
                return existing
            self._cache[provider.id] = adapter
        logger.info("Adapter created: provider=%s driver=%s", provider.id, driver)
        return adapter

    def invalidate(self, provider_id: str) -> BaseAdapter | None:
        """Drop the cached adapter; the caller owns closing the returned one."""
        with self._lock:
            evicted = self._cache.pop(provider_id, None)
        if evicted is not None:
            logger.info("Adapter invalidated: provider=%s", provider_id)
        return evicted

    def invalidate_all(self) -> list[BaseAdapter]:
        with self._lock:
            evicted = list(self._cache.values())
            self._cache.clear()
        return evicted

    async def aclose(self) -> None:
        for adapter in self.invalidate_all():
            await adapter.aclose()


def build_default_registry(
    *,
    http_client: httpx.AsyncClient | None = None,
    media_resolver: MediaResolver | None = None,
) -> ProviderRegistry:
    """Registry with the six built-in drivers, sealed."""
    registry = ProviderRegistry()
    for driver, adapter_cls in (
        (DRIVER_OPENROUTER, OpenRouterAdapter),
        (DRIVER_GEMINI, GeminiAdapter),
        (DRIVER_AIHUBMIX, AiHubMixAdapter),
        (DRIVER_DASHSCOPE, DashScopeAdapter),
        (DRIVER_FAL, FalAdapter),
        (DRIVER_VOLCENGINE, VolcengineAdapter),
    ):
        registry.register(driver, _factory(adapter_cls, http_client, media_resolver))
    registry.seal()
    return registry


def _factory(
    adapter_cls: type[BaseAdapter],
    http_client: httpx.AsyncClient | None,
    media_resolver: MediaResolver | None,
) -> AdapterFactory:
    def build(provider: ProviderConfig) -> BaseAdapter:
        return adapter_cls(provider, http_client=http_client, media_resolver=media_resolver)
    return build
