"""Provider catalogue: active providers, their models and capabilities."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from genrelay.api.deps import get_config_store, get_registry
from genrelay.errors import GenerationError
from genrelay.schemas.provider import ModelCapabilitiesRead, ModelRead, ProviderRead
from genrelay.services.config_store import ConfigStore
from genrelay.services.provider_registry import ProviderRegistry

router = APIRouter()


@router.get("", response_model=list[ProviderRead])
async def list_providers(
    store: ConfigStore = Depends(get_config_store),
    registry: ProviderRegistry = Depends(get_registry),
):
    result = []
    for provider, models in await store.list_providers(active_only=True):
        try:
            adapter = registry.resolve(provider)
        except GenerationError:
            adapter = None
        model_reads = []
        for model in models:
            caps = adapter.capabilities(model).to_dict() if adapter else {}
            model_reads.append(ModelRead(
                model_id=model.model_id,
                name=model.name or model.model_id,
                generation_mode=model.generation_mode,
                default_size=model.resolved_default_size(),
                default_duration=model.resolved_default_duration(),
                capabilities=ModelCapabilitiesRead(**caps) if caps else None,
            ))
        result.append(ProviderRead(
            id=provider.id,
            name=provider.name or provider.id,
            driver=provider.driver,
            available=adapter is not None,
            models=model_reads,
        ))
    return result


@router.get("/drivers")
async def list_drivers(registry: ProviderRegistry = Depends(get_registry)) -> dict[str, Any]:
    drivers = registry.list_drivers()
    return {"drivers": drivers, "total": len(drivers)}
