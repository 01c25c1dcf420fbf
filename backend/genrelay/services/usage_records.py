"""Usage record persistence: one row per accepted generation."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genrelay.models.usage_record import UsageRecord

logger = logging.getLogger(__name__)

# Columns the background job may patch
UPDATABLE_FIELDS = frozenset({
    "input_images",
    "output_images",
    "output_text",
    "error_message",
    "external_task_code",
    "request_id",
})


class UsageRecordStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, **fields: Any) -> int:
        async with self._session_factory() as session:
            record = UsageRecord(**fields)
            session.add(record)
            await session.commit()
            await session.refresh(record)
            logger.info("Usage record created: id=%s provider=%s model=%s", record.id, record.provider_id, record.model_id)
            return record.id

    async def update(self, record_id: int, fields: dict[str, Any]) -> bool:
        """Write only the given keys; an empty update touches nothing."""
        if not fields:
            return False
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown usage record fields: {sorted(unknown)}")
        async with self._session_factory() as session:
            result = await session.execute(
                update(UsageRecord).where(UsageRecord.id == record_id).values(**fields)
            )
            await session.commit()
            return result.rowcount > 0

    async def get(self, record_id: int) -> UsageRecord | None:
        async with self._session_factory() as session:
            return await session.get(UsageRecord, record_id)
