"""Read-only access to provider/model configuration.

Returns immutable snapshots so a request works against one consistent view
even if an administrator edits the rows mid-flight.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from genrelay.models.provider import ModelRecord, ProviderRecord
from genrelay.schemas.provider import ModelConfig, ProviderConfig

logger = logging.getLogger(__name__)


class ConfigStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_provider(self, provider_id: str) -> ProviderConfig | None:
        async with self._session_factory() as session:
            row = await session.get(ProviderRecord, provider_id)
            return ProviderConfig.model_validate(row) if row else None

    async def get_model(self, provider_id: str, model_id: str) -> ModelConfig | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ModelRecord).where(
                    ModelRecord.provider_id == provider_id,
                    ModelRecord.model_id == model_id,
                )
            )
            row = result.scalars().first()
            return ModelConfig.model_validate(row) if row else None

    async def list_providers(
        self, active_only: bool = True,
    ) -> list[tuple[ProviderConfig, list[ModelConfig]]]:
        """Providers with their models, ordered by provider id."""
        async with self._session_factory() as session:
            stmt = select(ProviderRecord).options(selectinload(ProviderRecord.models)).order_by(ProviderRecord.id)
            if active_only:
                stmt = stmt.where(ProviderRecord.is_active.is_(True))
            rows = (await session.execute(stmt)).scalars().all()

            providers = []
            for row in rows:
                models = [
                    ModelConfig.model_validate(m)
                    for m in sorted(row.models, key=lambda m: m.model_id)
                    if m.is_active or not active_only
                ]
                providers.append((ProviderConfig.model_validate(row), models))
            return providers
