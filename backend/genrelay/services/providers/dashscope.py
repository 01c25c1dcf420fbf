"""Alibaba DashScope (Qwen / Wan) generation provider.

Image models use the synchronous multimodal-generation endpoint. Video models
submit an async synthesis task (``X-DashScope-Async: enable``) and are polled
through the shared task poller.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any
from urllib.parse import urlsplit

from genrelay.errors import (
    GenerationError,
    InvalidRequestError,
    MediaResolveError,
    ProviderError,
    TaskFailedError,
)
from genrelay.schemas.generation import MEDIA_VIDEO, GenerationRequest, GenerationResult
from genrelay.schemas.provider import ModelConfig
from genrelay.services.providers.base import (
    BaseAdapter,
    ModelCapabilities,
    build_media_outputs,
    raise_for_status,
)
from genrelay.services.stream_utils import append_line, parse_streamed_content
from genrelay.services.task_poller import (
    DASHSCOPE_POLL_CONFIG,
    AsyncTask,
    TaskStatus,
    map_status,
    wait_for_task,
)

logger = logging.getLogger(__name__)

_DEFAULT_API_ROOT = "https://dashscope.aliyuncs.com/api/v1"
_GENERATION_PATH = "/services/aigc/multimodal-generation/generation"
_IMAGE_TO_VIDEO_PATH = "/services/aigc/video-generation/video-synthesis"
_KEYFRAME_TO_VIDEO_PATH = "/services/aigc/image2video/video-synthesis"
_TASKS_PATH = "/tasks/"

DEFAULT_RESOLUTION = "720P"
DEFAULT_DURATION = 5


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def is_video_model(model: ModelConfig) -> bool:
    if model.is_video_model():
        return True
    if any(m.strip().lower() == "video" for m in model.input_modalities):
        return True
    model_id = model.model_id.strip().lower()
    return any(marker in model_id for marker in ("i2v", "image2video", "kf2v", "video"))


def use_keyframe(model_id: str, image_count: int) -> bool:
    return "kf2v" in model_id.lower() or image_count > 1


def normalize_resolution(model: ModelConfig, requested: str) -> str:
    """Requested resolution if supported, else the model default, else 720P."""
    supported = list(dict.fromkeys(s.strip().upper() for s in model.supported_sizes if s.strip()))
    default = model.resolved_default_size().strip().upper()
    req = requested.strip().upper()
    if req and req in supported:
        return req
    if supported:
        return default if default in supported else supported[0]
    return default or DEFAULT_RESOLUTION


def normalize_duration(model: ModelConfig, requested: int) -> int:
    supported = list(dict.fromkeys(d for d in model.supported_durations if d > 0))
    if requested > 0 and requested in supported:
        return requested
    default = model.resolved_default_duration()
    if default > 0:
        return default
    if supported:
        return supported[0]
    return DEFAULT_DURATION


def collect_video_assets(output: dict[str, Any]) -> list[str]:
    """Video URLs from ``video_url``, ``video_urls`` and ``results[]``."""
    assets: list[str] = []

    def add(value: Any) -> None:
        if isinstance(value, str) and value.strip() and value.strip() not in assets:
            assets.append(value.strip())

    add(output.get("video_url"))
    for url in output.get("video_urls") or []:
        add(url)
    for item in output.get("results") or []:
        if isinstance(item, dict):
            add(item.get("url"))
            add(item.get("video_url"))
    return assets


def _check_api_code(data: dict[str, Any], fallback: str = "dashscope error") -> None:
    code = str(data.get("code") or "").strip()
    if code and code.lower() != "success":
        message = str(data.get("message") or "").strip() or fallback
        raise ProviderError(f"dashscope api error: {message}", request_id=data.get("request_id") or "")


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class DashScopeAdapter(BaseAdapter):
    driver = "dashscope"
    default_base_url = _DEFAULT_API_ROOT

    def _api_root(self) -> str:
        parts = urlsplit(self.base_url)
        if parts.path.rstrip("/").endswith("/api/v1"):
            return self.base_url
        return f"{parts.scheme}://{parts.netloc}/api/v1"

    def _endpoint(self, model: ModelConfig, default_path: str) -> str:
        path = model.endpoint_path.strip()
        if path.startswith("http://") or path.startswith("https://"):
            return path
        if path:
            return f"{self._api_root()}/{path.lstrip('/')}"
        return f"{self._api_root()}{default_path}"

    def _video_endpoint(self, model: ModelConfig, keyframe: bool) -> str:
        path = model.endpoint_path.lower()
        if "video-generation" in path or "image2video" in path:
            return self._endpoint(model, "")
        return f"{self._api_root()}{_KEYFRAME_TO_VIDEO_PATH if keyframe else _IMAGE_TO_VIDEO_PATH}"

    def capabilities(self, model: ModelConfig) -> ModelCapabilities:
        caps = super().capabilities(model)
        if is_video_model(model) and not caps.supports_async:
            return replace(caps, supports_async=True)
        return caps

    def validate(self, request: GenerationRequest, model: ModelConfig) -> None:
        if not request.prompt.strip():
            raise InvalidRequestError("prompt is required")
        if is_video_model(model) and not request.images():
            raise InvalidRequestError("dashscope video model requires at least one reference image")

    async def generate_content(self, request: GenerationRequest, model: ModelConfig) -> GenerationResult:
        if is_video_model(model):
            return await self.generate_video(request, model)
        return await self.generate_sync(request, model)

    # ── Synchronous multimodal generation ─────────────────────

    async def generate_sync(self, request: GenerationRequest, model: ModelConfig) -> GenerationResult:
        content: list[dict[str, Any]] = []
        for image in await self.inline_images(request.images()):
            content.append({"image": image})
        for video in request.videos():
            video = video.strip()
            if not video:
                continue
            if video.startswith("http://") or video.startswith("https://"):
                content.append({"video_url": video})
            else:
                content.append({"video": video})
        content.append({"text": request.prompt.strip()})

        body = {
            "model": model.model_id,
            "input": {"messages": [{"role": "user", "content": content}]},
            "parameters": {"watermark": False},
        }
        url = self._endpoint(model, _GENERATION_PATH)
        logger.info("DashScope generate: model=%s media=%d", model.model_id, len(content) - 1)

        resp = await self.client().post(url, json=body, headers=self.auth_headers())
        await raise_for_status(resp, "dashscope")
        data = resp.json()
        _check_api_code(data)
        request_id = data.get("request_id") or ""

        choices = (data.get("output") or {}).get("choices") or []
        if not choices:
            raise ProviderError("dashscope no choices in response", request_id=request_id)

        text = ""
        images: list[str] = []
        videos: list[str] = []
        for choice in choices:
            content = (choice.get("message") or {}).get("content") or []
            if isinstance(content, str):
                # compatible-mode replies carry one assembled string
                image, fragment = parse_streamed_content(content)
                if image:
                    images.append(image)
                text = append_line(text, fragment)
                continue
            for item in content:
                if not isinstance(item, dict):
                    continue
                text = append_line(text, str(item.get("text") or ""))
                if str(item.get("image") or "").strip():
                    images.append(item["image"])
                for key in ("video", "video_url"):
                    if str(item.get(key) or "").strip():
                        videos.append(item[key])

        outputs = build_media_outputs(images) + build_media_outputs(videos, MEDIA_VIDEO)
        if not outputs:
            raise ProviderError("dashscope no asset found in response", text=text, request_id=request_id)
        return GenerationResult(outputs=outputs, text=text, request_id=request_id)

    # ── Async video synthesis ─────────────────────────────────

    async def generate_video(self, request: GenerationRequest, model: ModelConfig) -> GenerationResult:
        images = [img for img in request.images() if img.strip()]
        if not images:
            raise InvalidRequestError("dashscope video model requires at least one reference image")

        keyframe = use_keyframe(model.model_id, len(images))
        try:
            first_frame = await self.inline_image(images[0])
            last_frame = await self.inline_image(images[-1]) if keyframe else ""
        except MediaResolveError as e:
            raise ProviderError(f"prepare video frames: {e}") from e

        if keyframe:
            video_input = {"prompt": request.prompt, "first_frame_url": first_frame, "last_frame_url": last_frame}
        else:
            video_input = {"prompt": request.prompt, "img_url": first_frame}

        body = {
            "model": model.model_id,
            "input": video_input,
            "parameters": {
                "resolution": normalize_resolution(model, request.size),
                "prompt_extend": True,
                "duration": normalize_duration(model, request.duration),
            },
        }
        url = self._video_endpoint(model, keyframe)
        logger.info(
            "DashScope video: model=%s keyframe=%s resolution=%s duration=%s",
            model.model_id, keyframe, body["parameters"]["resolution"], body["parameters"]["duration"],
        )

        headers = {**self.auth_headers(), "X-DashScope-Async": "enable"}
        resp = await self.client().post(url, json=body, headers=headers)
        await raise_for_status(resp, "dashscope video")
        data = resp.json()
        _check_api_code(data, "dashscope video error")
        request_id = data.get("request_id") or ""

        output = data.get("output") or {}
        task_id = str(output.get("task_id") or "").strip()
        status = str(output.get("task_status") or "").strip().upper()

        if not status or status == "SUCCEEDED":
            assets = collect_video_assets(output)
            if assets:
                return GenerationResult(
                    outputs=build_media_outputs(assets, MEDIA_VIDEO), task_id=task_id, request_id=request_id,
                )
        if not task_id:
            raise ProviderError("dashscope video response missing video url", request_id=request_id)

        logger.info("DashScope video task: %s (status=%s)", task_id, status or "unknown")
        try:
            result = await wait_for_task(task_id, self.poll_task, DASHSCOPE_POLL_CONFIG)
        except GenerationError as e:
            e.task_id = e.task_id or task_id
            e.request_id = e.request_id or request_id
            raise
        result.request_id = result.request_id or request_id
        return result

    async def poll_task(self, task_id: str) -> AsyncTask:
        resp = await self.client().get(
            f"{self._api_root()}{_TASKS_PATH}{task_id}",
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        await raise_for_status(resp, "dashscope task")
        output = (resp.json().get("output") or {})
        raw_status = str(output.get("task_status") or "")

        assets = collect_video_assets(output)
        if assets:
            return AsyncTask(
                id=task_id,
                status=TaskStatus.SUCCEEDED,
                result=GenerationResult(outputs=build_media_outputs(assets, MEDIA_VIDEO), task_id=task_id),
            )

        status = map_status(raw_status)
        if status == TaskStatus.SUCCEEDED:
            # SUCCEEDED without a URL is not usable
            return AsyncTask(
                id=task_id,
                status=TaskStatus.FAILED,
                error=TaskFailedError("dashscope task succeeded without video url", task_id=task_id),
            )
        if status in (TaskStatus.FAILED, TaskStatus.CANCELLED):
            message = str(output.get("message") or output.get("code") or "").strip()
            return AsyncTask(
                id=task_id,
                status=TaskStatus.FAILED,
                error=TaskFailedError(f"dashscope task {raw_status.upper()}: {message}".rstrip(": "), task_id=task_id),
            )
        logger.debug("DashScope task %s still %s", task_id, raw_status)
        return AsyncTask(id=task_id, status=status)
