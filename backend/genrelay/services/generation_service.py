"""Generation orchestrator: accept a request, run it off the request path.

``submit`` validates synchronously, creates the usage record and hands the job
to the background runner. ``run`` is the job itself:

1. persist input media (category ``inputs``, content-addressed, skip-if-exists)
2. call the adapter under its own deadline
3. persist output media (category ``outputs``, model + timestamp names)
4. write one partial update onto the usage record
5. publish ``generation_completed`` to the requesting client

Storage problems are annotations: they are merged into the error text but
never turn a successful generation into a failure.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any

from genrelay.errors import GenerationError, InvalidRequestError, NotFoundError
from genrelay.schemas.generation import (
    CompletionEvent,
    GenerationAccepted,
    GenerationRequest,
    GenerationResult,
)
from genrelay.schemas.provider import ModelConfig, ProviderConfig
from genrelay.services.config_store import ConfigStore
from genrelay.services.media_resolver import MediaResolver
from genrelay.services.notification_bus import EVENT_GENERATION_COMPLETED, NotificationBus
from genrelay.services.provider_registry import ProviderRegistry
from genrelay.services.providers.base import BaseAdapter
from genrelay.services.redis_relay import RedisRelay
from genrelay.services.storage import SaveOptions, Storage, sanitize_token
from genrelay.services.stream_utils import truncate_for_log
from genrelay.services.usage_records import UsageRecordStore
from genrelay.tasks import BackgroundTaskRunner

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"

CATEGORY_INPUTS = "inputs"
CATEGORY_OUTPUTS = "outputs"


# ---------------------------------------------------------------------------
# Naming helpers
# ---------------------------------------------------------------------------

def append_storage_notes(existing: str, notes: list[str]) -> str:
    """Join storage notes with ``"; "`` after any non-blank existing text."""
    if not notes:
        return existing
    combined = "; ".join(notes)
    if not (existing or "").strip():
        return combined
    return f"{existing}; {combined}"


def compute_input_base_name(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def build_output_base_name(model_name: str, idx: int) -> str:
    token = sanitize_token(model_name)[:32] or "model"
    return f"{token}_{time.time_ns()}_{idx}"


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PreparedGeneration:
    """Everything the background job needs, resolved up front."""
    request: GenerationRequest
    provider: ProviderConfig
    model: ModelConfig
    adapter: BaseAdapter


class GenerationOrchestrator:
    def __init__(
        self,
        *,
        config_store: ConfigStore,
        records: UsageRecordStore,
        registry: ProviderRegistry,
        storage: Storage | None,
        runner: BackgroundTaskRunner,
        media_resolver: MediaResolver | None = None,
        bus: NotificationBus | None = None,
        relay: RedisRelay | None = None,
        generation_timeout: float = 600.0,
        storage_timeout: float = 300.0,
        media_fetch_timeout: float = 60.0,
        record_update_timeout: float = 5.0,
    ) -> None:
        self.config_store = config_store
        self.records = records
        self.registry = registry
        self.storage = storage
        self.runner = runner
        self.media = media_resolver or MediaResolver()
        self.bus = bus
        self.relay = relay
        self.generation_timeout = generation_timeout
        self.storage_timeout = storage_timeout
        self.media_fetch_timeout = media_fetch_timeout
        self.record_update_timeout = record_update_timeout

    # ── Accept path ───────────────────────────────────────────

    async def prepare(self, request: GenerationRequest) -> PreparedGeneration:
        """Fail-fast validation: nothing is persisted when this raises."""
        if not request.prompt:
            raise InvalidRequestError("prompt is required")
        if not request.provider_id:
            raise InvalidRequestError("provider_id is required")
        if not request.model_id:
            raise InvalidRequestError("model_id is required")

        provider = await self.config_store.get_provider(request.provider_id)
        if provider is None:
            raise NotFoundError(f"provider not found: {request.provider_id}")
        if not provider.is_active:
            raise InvalidRequestError(f"provider is disabled: {request.provider_id}")

        model = await self.config_store.get_model(provider.id, request.model_id)
        if model is None:
            raise NotFoundError(f"model not found: {request.model_id}")
        if not model.is_active:
            raise InvalidRequestError(f"model is disabled: {request.model_id}")

        adapter = self.registry.resolve(provider)
        adapter.validate(request, model)
        return PreparedGeneration(request=request, provider=provider, model=model, adapter=adapter)

    async def submit(self, request: GenerationRequest, *, user_id: int | None = None) -> GenerationAccepted:
        prepared = await self.prepare(request)
        record_id = await self.records.create(
            user_id=user_id,
            provider_id=prepared.provider.id,
            model_id=prepared.model.model_id,
            prompt=request.prompt,
            size=request.size or None,
            client_id=request.client_id or None,
            tag_ids=request.tag_ids or None,
        )
        self.runner.submit(self.run(record_id, prepared), name=f"generation-{record_id}")
        logger.info(
            "Generation accepted: record=%s provider=%s model=%s prompt=%s",
            record_id, prepared.provider.id, prepared.model.model_id, truncate_for_log(request.prompt),
        )
        return GenerationAccepted(record_id=record_id)

    # ── Background job ────────────────────────────────────────

    async def run(self, record_id: int, prepared: PreparedGeneration) -> None:
        """Run one job to completion. Only CancelledError escapes."""
        request = prepared.request
        updates: dict[str, Any] = {}
        storage_issues: list[str] = []

        try:
            inputs = [m.content for m in request.input_media]
            if inputs:
                paths, issue = await self.persist_media(CATEGORY_INPUTS, inputs, request.model_id)
                if paths:
                    updates["input_images"] = paths
                if issue:
                    storage_issues.append(f"input images: {issue}")
                    logger.warning("Record %s: failed to persist input images: %s", record_id, issue)

            try:
                result = await asyncio.wait_for(
                    prepared.adapter.generate_content(request, prepared.model),
                    timeout=self.generation_timeout,
                )
            except asyncio.TimeoutError:
                raise GenerationError(
                    f"generation timed out after {self.generation_timeout:g} seconds"
                ) from None
        except asyncio.CancelledError:
            await self._update_record(record_id, {**updates, "error_message": "generation cancelled"})
            raise
        except Exception as exc:
            await self._fail(record_id, prepared, exc, updates, storage_issues)
            return

        logger.info(
            "Generation succeeded: record=%s provider=%s model=%s outputs=%d",
            record_id, prepared.provider.id, prepared.model.model_id, len(result.outputs),
        )
        await self._succeed(record_id, prepared, result, updates, storage_issues)

    async def _fail(
        self,
        record_id: int,
        prepared: PreparedGeneration,
        exc: Exception,
        updates: dict[str, Any],
        storage_issues: list[str],
    ) -> None:
        logger.error(
            "Generation failed: record=%s provider=%s model=%s: %s",
            record_id, prepared.provider.id, prepared.model.model_id, exc,
        )
        if isinstance(exc, GenerationError):
            if exc.task_id:
                updates["external_task_code"] = exc.task_id
            if exc.request_id:
                updates["request_id"] = exc.request_id
            if exc.text:
                updates["output_text"] = exc.text
        message = append_storage_notes(str(exc) or type(exc).__name__, storage_issues)
        updates["error_message"] = message
        await self._update_record(record_id, updates)
        await self._notify(prepared.request.client_id, record_id, STATUS_FAILURE, message)

    async def _succeed(
        self,
        record_id: int,
        prepared: PreparedGeneration,
        result: GenerationResult,
        updates: dict[str, Any],
        storage_issues: list[str],
    ) -> None:
        if result.task_id:
            updates["external_task_code"] = result.task_id
        if result.request_id:
            updates["request_id"] = result.request_id
        if result.text:
            updates["output_text"] = result.text

        outputs = result.urls()
        if outputs:
            paths, issue = await self.persist_media(CATEGORY_OUTPUTS, outputs, prepared.request.model_id)
            if paths:
                updates["output_images"] = paths
            if issue:
                storage_issues.append(f"output assets: {issue}")
                logger.warning("Record %s: failed to persist output assets: %s", record_id, issue)

        annotation = ""
        if storage_issues:
            annotation = append_storage_notes(updates.get("error_message", ""), storage_issues)
            updates["error_message"] = annotation

        await self._update_record(record_id, updates)
        await self._notify(prepared.request.client_id, record_id, STATUS_SUCCESS, annotation)

    # ── Storage ───────────────────────────────────────────────

    async def persist_media(
        self, category: str, payloads: list[str], model_name: str,
    ) -> tuple[list[str], str]:
        """Store every payload; returns saved locators and a joined error text."""
        if self.storage is None or not payloads:
            return [], ""
        paths: list[str] = []
        errors: list[str] = []
        try:
            await asyncio.wait_for(
                self._persist_each(category, payloads, model_name, paths, errors),
                timeout=self.storage_timeout,
            )
        except asyncio.TimeoutError:
            errors.append(f"storage timed out after {self.storage_timeout:g} seconds")
        return paths, "; ".join(errors)

    async def _persist_each(
        self,
        category: str,
        payloads: list[str],
        model_name: str,
        paths: list[str],
        errors: list[str],
    ) -> None:
        batch = await self.media.resolve_batch(payloads, timeout=self.media_fetch_timeout)
        if batch.errors:
            errors.append(batch.error_summary())

        for media in batch.items:
            idx = media.index
            if category == CATEGORY_INPUTS:
                options = SaveOptions(
                    category=category,
                    base_name=compute_input_base_name(media.data),
                    extension=media.extension,
                    skip_if_exists=True,
                )
            else:
                options = SaveOptions(
                    category=category,
                    base_name=build_output_base_name(model_name, idx),
                    extension=media.extension,
                )
            try:
                paths.append(await self.storage.save(media.data, options))
            except (OSError, ValueError) as e:
                errors.append(f"{idx}: {e}")

    # ── Record + notification ─────────────────────────────────

    async def _update_record(self, record_id: int, updates: dict[str, Any]) -> None:
        if not record_id or not updates:
            return
        try:
            await asyncio.wait_for(self.records.update(record_id, updates), timeout=self.record_update_timeout)
            logger.info("Usage record %s updated: %s", record_id, sorted(updates))
        except Exception as e:
            logger.error("Failed to update usage record %s: %s", record_id, e)

    async def _notify(self, client_id: str, record_id: int, status: str, error: str) -> None:
        client_id = (client_id or "").strip()
        if not client_id:
            return
        payload = CompletionEvent(record_id=record_id, status=status, error=error or None).to_payload()
        if self.relay is not None:
            published = await self.relay.publish(client_id, EVENT_GENERATION_COMPLETED, payload)
            # our own listener relays it back only while subscribed
            if published and self.relay.listening:
                return
        if self.bus is not None:
            self.bus.publish(client_id, EVENT_GENERATION_COMPLETED, payload)
