"""fal.ai image generation provider.

Submits a job and, unless the submission already carries the images, polls
the returned ``response_url`` through the shared task poller. The response
envelope is permissive: images may sit under several keys, at top level or
nested under ``response``, as bare URLs or objects.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field, model_validator

from genrelay.errors import (
    GenerationError,
    InvalidRequestError,
    NoImageInResponseError,
    ProviderError,
    TaskFailedError,
)
from genrelay.schemas.generation import GenerationRequest, GenerationResult
from genrelay.schemas.provider import ModelConfig
from genrelay.services.media_resolver import ensure_data_url, is_remote, split_data_url
from genrelay.services.providers.base import BaseAdapter, build_media_outputs, raise_for_status
from genrelay.services.task_poller import FAL_POLL_CONFIG, AsyncTask, TaskStatus, map_status, wait_for_task

logger = logging.getLogger(__name__)

MODE_TEXT_TO_IMAGE = "text_to_image"
MODE_IMAGE_TO_IMAGE = "image_to_image"
DEFAULT_IMAGE_SIZE = "1024x1024"

_IMAGE_KEYS = ("images", "output", "outputs", "data", "result", "variants")
_URL_KEYS = ("url", "image_url", "uri", "href", "signed_url")
_BASE64_KEYS = ("base64", "image_base64", "base64_data", "data", "b64_json")


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

class FalImage(BaseModel):
    """One image entry: a bare URL string or an object with URL/base64 fields."""

    url: str = ""
    base64: str = ""
    content_type: str = ""

    @model_validator(mode="before")
    @classmethod
    def _coerce(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"url": value}
        if not isinstance(value, dict):
            return {}
        url = next((value[k] for k in _URL_KEYS if isinstance(value.get(k), str) and value[k].strip()), "")
        b64 = next((value[k] for k in _BASE64_KEYS if isinstance(value.get(k), str) and value[k].strip()), "")
        content_type = value.get("content_type") if isinstance(value.get("content_type"), str) else ""
        return {"url": url, "base64": b64, "content_type": content_type}

    def locator(self) -> str:
        if self.url.strip():
            return self.url.strip()
        if self.base64.strip():
            return ensure_data_url(self.base64.strip(), self.content_type or "image/png")
        return ""


def _image_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, (str, dict)):
        return [value]
    return []


def _error_message(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get("message") or value.get("code") or "").strip()
    if isinstance(value, str):
        return value.strip()
    return ""


class FalEnvelope(BaseModel):
    """Submission, status or result body with the nested ``response`` merged in."""

    request_id: str = ""
    status: str = ""
    status_url: str = ""
    response_url: str = ""
    images: list[FalImage] = Field(default_factory=list)
    text: str = ""
    error: str = ""

    @model_validator(mode="before")
    @classmethod
    def _merge(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return {}
        inner = value.get("response") if isinstance(value.get("response"), dict) else {}

        images: list[Any] = []
        for source in (value, inner):
            for key in _IMAGE_KEYS:
                images.extend(_image_list(source.get(key)))

        text = ""
        for source in (value, inner):
            for key in ("text", "message", "output_text"):
                candidate = source.get(key)
                if isinstance(candidate, str) and candidate.strip():
                    text = candidate.strip()
                    break
            if text:
                break

        return {
            "request_id": str(value.get("request_id") or ""),
            "status": str(inner.get("status") or value.get("status") or ""),
            "status_url": str(value.get("status_url") or ""),
            "response_url": str(value.get("response_url") or ""),
            "images": images,
            "text": text,
            "error": _error_message(value.get("error")) or _error_message(inner.get("error")),
        }

    def locators(self) -> list[str]:
        return [loc for loc in (img.locator() for img in self.images) if loc]


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------

def pick_reference_image(images: list[str]) -> tuple[str, str]:
    """(url, base64) of the first usable reference image."""
    for img in images:
        trimmed = img.strip()
        if not trimmed:
            continue
        if is_remote(trimmed):
            return trimmed, ""
        if trimmed.startswith("data:"):
            payload = split_data_url(trimmed)[1]
            if payload:
                return "", payload
            continue
        return "", trimmed
    return "", ""


def resolve_mode(request: GenerationRequest, model: ModelConfig) -> str:
    mode = (model.generation_mode or str(model.setting("mode", "") or "")).strip().lower()
    if mode:
        return mode
    return MODE_IMAGE_TO_IMAGE if request.images() else MODE_TEXT_TO_IMAGE


def build_fal_input(request: GenerationRequest, model: ModelConfig) -> dict[str, Any]:
    prompt = request.prompt.strip()
    if not prompt:
        raise InvalidRequestError("prompt is required")

    mode = resolve_mode(request, model)
    fal_input: dict[str, Any] = {
        "prompt": prompt,
        "image_size": request.size or model.resolved_default_size() or DEFAULT_IMAGE_SIZE,
        "num_images": request.output.num_outputs if request.output.num_outputs > 0 else 1,
    }
    if mode == MODE_TEXT_TO_IMAGE:
        return fal_input
    if mode == MODE_IMAGE_TO_IMAGE:
        url, b64 = pick_reference_image(request.images())
        if not url and not b64:
            raise InvalidRequestError("image-to-image model requires at least one reference image")
        if b64:
            fal_input["image_base64"] = b64
        else:
            fal_input["image_url"] = url
        return fal_input
    raise InvalidRequestError(f"unsupported fal.ai mode {mode!r}")


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class FalAdapter(BaseAdapter):
    driver = "fal"
    default_base_url = "https://fal.run"

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Key {self.api_key}", "Content-Type": "application/json"}

    def validate(self, request: GenerationRequest, model: ModelConfig) -> None:
        super().validate(request, model)
        build_fal_input(request, model)

    def _endpoint(self, model: ModelConfig) -> str:
        path = model.endpoint_path.strip() or model.model_id
        if is_remote(path):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def generate_content(self, request: GenerationRequest, model: ModelConfig) -> GenerationResult:
        payload = {"input": build_fal_input(request, model)}
        url = self._endpoint(model)
        logger.info("fal.ai submit: model=%s endpoint=%s", model.model_id, url)

        resp = await self.client().post(url, json=payload, headers=self.auth_headers())
        await raise_for_status(resp, "fal.ai")
        submission = FalEnvelope.model_validate(resp.json())
        if submission.error:
            raise ProviderError(f"fal.ai error: {submission.error}", request_id=submission.request_id)

        if submission.status.upper() == "COMPLETED" and submission.locators():
            return self._result(submission, submission.request_id)

        poll_url = submission.response_url.strip() or submission.status_url.strip()
        if not poll_url:
            raise ProviderError("fal.ai response url missing", request_id=submission.request_id)

        task_id = submission.request_id or poll_url
        try:
            result = await wait_for_task(poll_url, self.poll_response, FAL_POLL_CONFIG)
        except GenerationError as e:
            e.task_id = task_id
            e.request_id = e.request_id or submission.request_id
            raise
        result.task_id = task_id
        result.request_id = submission.request_id
        return result

    def _result(self, envelope: FalEnvelope, request_id: str) -> GenerationResult:
        locators = envelope.locators()
        if not locators:
            raise NoImageInResponseError("fal.ai response did not include images", text=envelope.text)
        return GenerationResult(
            outputs=build_media_outputs(locators),
            text=envelope.text,
            task_id=request_id,
            request_id=request_id,
        )

    async def poll_response(self, url: str) -> AsyncTask:
        resp = await self.client().get(url, headers={"Authorization": f"Key {self.api_key}"})
        await raise_for_status(resp, "fal.ai poll")
        envelope = FalEnvelope.model_validate(resp.json())
        status = envelope.status.strip().upper()

        if status == "COMPLETED":
            if envelope.error:
                return AsyncTask(id=url, status=TaskStatus.FAILED, error=ProviderError(f"fal.ai error: {envelope.error}"))
            if not envelope.locators():
                return AsyncTask(
                    id=url,
                    status=TaskStatus.FAILED,
                    error=NoImageInResponseError("fal.ai completed without images", text=envelope.text),
                )
            return AsyncTask(id=url, status=TaskStatus.SUCCEEDED, result=self._result(envelope, envelope.request_id))

        if status in ("FAILED", "CANCELLED", "ERROR"):
            message = f"fal.ai error: {envelope.error}" if envelope.error else f"fal.ai job {status.lower()}"
            return AsyncTask(id=url, status=TaskStatus.FAILED, error=TaskFailedError(message, text=envelope.text))

        logger.info("fal.ai poll pending: status=%s", status or "unknown")
        return AsyncTask(id=url, status=map_status(status) if status else TaskStatus.PENDING)
