"""Generation API: accept a request and look up its usage record."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from genrelay.api.deps import get_orchestrator, get_records
from genrelay.errors import DriverUnsupportedError, GenerationError, NotFoundError
from genrelay.schemas.generation import GenerationAccepted, GenerationRequest, UsageRecordRead
from genrelay.services.generation_service import GenerationOrchestrator
from genrelay.services.usage_records import UsageRecordStore

logger = logging.getLogger(__name__)

router = APIRouter()


def error_status(exc: GenerationError) -> int:
    """HTTP status for an error raised before the job starts."""
    if isinstance(exc, NotFoundError):
        return 404
    return 400


@router.post("", response_model=GenerationAccepted, status_code=202)
async def submit_generation(
    req: GenerationRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Validate and accept; the result arrives via the events stream."""
    try:
        return await orchestrator.submit(req)
    except GenerationError as e:
        if isinstance(e, DriverUnsupportedError):
            logger.warning("Rejected generation for provider %s: %s", req.provider_id, e)
        raise HTTPException(status_code=error_status(e), detail=str(e))


@router.get("/{record_id}", response_model=UsageRecordRead)
async def get_generation(record_id: int, records: UsageRecordStore = Depends(get_records)):
    record = await records.get(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Usage record not found")
    return record
