"""Volcengine Ark (Doubao Seedream / Seedance) provider.

Image models stream ``image_generation.*`` events from the images endpoint.
Video models create a content-generation task and are polled through the
shared task poller.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from genrelay.errors import (
    GenerationError,
    InvalidRequestError,
    MediaResolveError,
    NoImageInResponseError,
    ProviderError,
    TaskFailedError,
)
from genrelay.schemas.generation import (
    MEDIA_IMAGE,
    MEDIA_VIDEO,
    GenerationRequest,
    GenerationResult,
)
from genrelay.schemas.provider import ModelConfig
from genrelay.services.providers.base import (
    STREAM_TIMEOUT,
    BaseAdapter,
    build_media_outputs,
    raise_for_status,
)
from genrelay.services.stream_utils import (
    StreamAccumulator,
    iter_sse_data,
    response_error_message,
    truncate_for_log,
)
from genrelay.services.task_poller import (
    VOLCENGINE_POLL_CONFIG,
    AsyncTask,
    TaskStatus,
    map_status,
    wait_for_task,
)

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_SIZE = "4K"
DEFAULT_MAX_IMAGES = 5
MAX_REFERENCE_IMAGES = 4

FRAMES_REFERENCE = "reference"
FRAMES_FIRST_LAST = "first_last"
FRAMES_FIRST = "first"
FRAMES_NONE = "none"


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def build_video_prompt(prompt: str, size: str, duration: int) -> str:
    """Append ``--rs``/``--dur`` flags unless the prompt already has them."""
    trimmed = prompt.strip()
    if not trimmed:
        return ""
    lower = trimmed.lower()
    size = size.strip()
    if size and "--rs" not in lower:
        trimmed += f" --rs {size.lower()}"
    if duration > 0 and "--dur" not in lower:
        trimmed += f" --dur {duration}"
    return trimmed


def select_video_frames(model_id: str, count: int) -> str:
    model_lower = model_id.lower()
    if count > 2 and "lite" in model_lower and "i2v" in model_lower:
        return FRAMES_REFERENCE
    if count >= 2:
        return FRAMES_FIRST_LAST
    if count == 1:
        return FRAMES_FIRST
    return FRAMES_NONE


def plan_video_frames(model_id: str, images: list[str]) -> list[tuple[str, str]]:
    """(role, reference) pairs for the images a video task should carry."""
    trimmed = [img.strip() for img in images if img.strip()]
    mode = select_video_frames(model_id, len(trimmed))
    if mode == FRAMES_REFERENCE:
        if len(trimmed) > MAX_REFERENCE_IMAGES:
            logger.info("volcengine: trimming reference images %d -> %d", len(trimmed), MAX_REFERENCE_IMAGES)
        return [("reference_image", img) for img in trimmed[:MAX_REFERENCE_IMAGES]]
    if mode == FRAMES_FIRST_LAST:
        return [("first_frame", trimmed[0]), ("last_frame", trimmed[-1])]
    if mode == FRAMES_FIRST:
        return [("first_frame", trimmed[0])]
    return []


def is_video_model(model: ModelConfig) -> bool:
    if model.is_video_model():
        return True
    mode = model.generation_mode.lower()
    return mode.endswith("_video") or "seedance" in model.model_id.lower()


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class VolcengineAdapter(BaseAdapter):
    driver = "volcengine"
    default_base_url = "https://ark.cn-beijing.volces.com/api/v3"

    def validate(self, request: GenerationRequest, model: ModelConfig) -> None:
        super().validate(request, model)
        if is_video_model(model) and not request.prompt.strip() and not request.images():
            raise InvalidRequestError("volcengine video content is empty")

    async def generate_content(self, request: GenerationRequest, model: ModelConfig) -> GenerationResult:
        if is_video_model(model):
            return await self.generate_video(request, model)
        return await self.generate_images(request, model)

    # ── Streaming image generation ────────────────────────────

    async def generate_images(self, request: GenerationRequest, model: ModelConfig) -> GenerationResult:
        max_images = model.max_images if model.max_images > 0 else DEFAULT_MAX_IMAGES
        body: dict[str, Any] = {
            "model": model.model_id,
            "prompt": request.prompt,
            "size": request.size or model.resolved_default_size() or DEFAULT_IMAGE_SIZE,
            "response_format": "url",
            "watermark": False,
            "sequential_image_generation": "auto",
            "sequential_image_generation_options": {"max_images": max_images},
            "stream": True,
        }
        images = await self.inline_images(request.images())
        if images:
            body["image"] = images

        logger.info("Volcengine image stream: model=%s size=%s refs=%d", model.model_id, body["size"], len(images))
        acc = StreamAccumulator()
        request_id = ""

        async with self.client().stream(
            "POST", f"{self.base_url}/images/generations",
            json=body, headers=self.auth_headers(), timeout=STREAM_TIMEOUT,
        ) as resp:
            await raise_for_status(resp, "volcengine images")
            request_id = resp.headers.get("x-request-id", "")
            async for payload in iter_sse_data(resp):
                try:
                    event = json.loads(payload)
                except ValueError:
                    logger.debug("volcengine: skipping undecodable event %s", truncate_for_log(payload))
                    continue
                if not isinstance(event, dict) or not self._fold_image_event(event, acc):
                    break

        if not acc.images:
            raise NoImageInResponseError(
                acc.text or "volcengine returned no image", text=acc.text, request_id=request_id,
            )
        return GenerationResult(outputs=build_media_outputs(acc.images, MEDIA_IMAGE), text=acc.text, request_id=request_id)

    @staticmethod
    def _fold_image_event(event: dict[str, Any], acc: StreamAccumulator) -> bool:
        """Apply one image event; returns False when the stream should stop."""
        event_type = str(event.get("type") or "")
        error = event.get("error") if isinstance(event.get("error"), dict) else None

        if event_type == "image_generation.partial_failed":
            acc.add_text(response_error_message(event))
            logger.warning("volcengine partial failure: %s", response_error_message(event))
            return str((error or {}).get("code") or "").lower() != "internalserviceerror"
        if event_type == "image_generation.partial_succeeded":
            if error is None and isinstance(event.get("url"), str):
                acc.add_image(event["url"])
            return True
        if event_type == "image_generation.completed":
            return False
        if not event_type and "error" in event:
            acc.add_text(response_error_message(event))
            return False
        return True

    # ── Video task ────────────────────────────────────────────

    async def generate_video(self, request: GenerationRequest, model: ModelConfig) -> GenerationResult:
        content: list[dict[str, Any]] = []
        prompt = build_video_prompt(request.prompt, request.size, request.duration)
        if prompt:
            content.append({"type": "text", "text": prompt})

        for role, reference in plan_video_frames(model.model_id, request.images()):
            try:
                url = await self.inline_image(reference)
            except MediaResolveError as e:
                raise ProviderError(f"prepare {role.replace('_', ' ')}: {e}") from e
            content.append({"type": "image_url", "image_url": {"url": url}, "role": role})

        if not content:
            raise InvalidRequestError("volcengine video content is empty")

        tasks_url = f"{self.base_url}/contents/generations/tasks"
        resp = await self.client().post(
            tasks_url, json={"model": model.model_id, "content": content}, headers=self.auth_headers(),
        )
        await raise_for_status(resp, "volcengine create video task")
        request_id = resp.headers.get("x-request-id", "") or resp.headers.get("x-client-request-id", "")
        task_id = str(resp.json().get("id") or "").strip()
        if not task_id:
            raise ProviderError("volcengine video task id is empty", request_id=request_id)

        logger.info("Volcengine video task: %s (model=%s, items=%d)", task_id, model.model_id, len(content))
        try:
            result = await wait_for_task(task_id, self.poll_task, VOLCENGINE_POLL_CONFIG)
        except GenerationError as e:
            e.task_id = e.task_id or task_id
            e.request_id = e.request_id or request_id
            raise
        if not result.outputs:
            raise ProviderError(
                "volcengine video response missing video url",
                text=result.text, task_id=task_id, request_id=request_id,
            )
        result.task_id = task_id
        result.request_id = request_id
        return result

    async def poll_task(self, task_id: str) -> AsyncTask:
        resp = await self.client().get(
            f"{self.base_url}/contents/generations/tasks/{task_id}", headers=self.auth_headers(),
        )
        await raise_for_status(resp, "volcengine get video task")
        data = resp.json()
        raw_status = str(data.get("status") or "").strip().lower()
        revised_prompt = str(data.get("revised_prompt") or "")

        error = data.get("error") if isinstance(data.get("error"), dict) else {}
        if error.get("message"):
            return AsyncTask(
                id=task_id,
                status=TaskStatus.FAILED,
                error=TaskFailedError(
                    f"volcengine video task error: {error['message']}", text=revised_prompt, task_id=task_id,
                ),
            )

        if raw_status == "succeeded":
            content = data.get("content") if isinstance(data.get("content"), dict) else {}
            outputs = build_media_outputs([str(content.get("video_url") or "")], MEDIA_VIDEO)
            outputs += build_media_outputs([str(content.get("last_frame_url") or "")], MEDIA_IMAGE)
            return AsyncTask(
                id=task_id,
                status=TaskStatus.SUCCEEDED,
                result=GenerationResult(outputs=outputs, text=revised_prompt, task_id=task_id),
            )
        if raw_status in ("failed", "cancelled", "expired"):
            return AsyncTask(
                id=task_id,
                status=TaskStatus.FAILED,
                error=TaskFailedError(f"volcengine video task {raw_status}", text=revised_prompt, task_id=task_id),
            )
        return AsyncTask(id=task_id, status=map_status(raw_status))
