from __future__ import annotations
"""Master API router: mounts all sub-routers."""

from fastapi import APIRouter

from genrelay.api.events import router as events_router
from genrelay.api.generations import router as generations_router
from genrelay.api.providers import router as providers_router

api_router = APIRouter(prefix="/api", redirect_slashes=False)

# events first: "/generations/events" must not fall into "/generations/{record_id}"
api_router.include_router(events_router, prefix="/generations", tags=["Generation Events"])
api_router.include_router(generations_router, prefix="/generations", tags=["Generations"])
api_router.include_router(providers_router, prefix="/providers", tags=["Providers"])
