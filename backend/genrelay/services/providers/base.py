"""Adapter contract shared by every provider driver.

An adapter is built once per provider (credentials baked in) and reused for
every request routed to that provider. ``generate_content`` returns a
``GenerationResult`` or raises a ``GenerationError`` carrying whatever text,
task id and request id it had collected.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any

import httpx

from genrelay.errors import InvalidRequestError, MediaResolveError, ProviderError
from genrelay.schemas.generation import (
    MEDIA_IMAGE,
    GenerationRequest,
    GenerationResult,
    MediaOutput,
)
from genrelay.schemas.provider import ModelConfig, ProviderConfig
from genrelay.services.media_resolver import (
    MediaResolver,
    ensure_data_url,
    is_remote,
    split_data_url,
)

logger = logging.getLogger(__name__)

_RETRIABLE_STATUS = {408, 409, 425, 429, 500, 502, 503, 504}

# Streaming responses stay open for minutes; the orchestrator enforces the deadline
STREAM_TIMEOUT = httpx.Timeout(60.0, read=None)


@dataclass(frozen=True)
class ModelCapabilities:
    """What one model of this adapter accepts and produces."""
    input_modalities: tuple[str, ...] = ("text",)
    output_modalities: tuple[str, ...] = ("image",)
    max_images: int = 0
    supported_sizes: tuple[str, ...] = ()
    supported_durations: tuple[int, ...] = ()
    supports_stream: bool = False
    supports_cancel: bool = False
    supports_async: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        return {k: list(v) if isinstance(v, tuple) else v for k, v in data.items()}


def build_media_outputs(locators: list[str], media_type: str = MEDIA_IMAGE) -> list[MediaOutput]:
    """Typed outputs from URLs / data URLs, skipping blanks and duplicates."""
    outputs: list[MediaOutput] = []
    seen: set[str] = set()
    for raw in locators:
        locator = (raw or "").strip()
        if not locator or locator in seen:
            continue
        seen.add(locator)
        mime = split_data_url(locator)[0] if locator.startswith("data:") else ""
        outputs.append(MediaOutput(type=media_type, url=locator, mime_type=mime))
    return outputs


async def raise_for_status(resp: httpx.Response, label: str) -> None:
    """Raise ProviderError with a truncated body for any non-2xx response."""
    if resp.is_success:
        return
    body = (await resp.aread()).decode("utf-8", errors="replace").strip()
    raise ProviderError(
        f"{label} http {resp.status_code}: {body[:512]}",
        status_code=resp.status_code,
        retriable=resp.status_code in _RETRIABLE_STATUS,
        request_id=resp.headers.get("x-request-id", ""),
    )


class BaseAdapter(ABC):
    """Common plumbing: credentials, HTTP client, media inlining, capabilities."""

    driver: str = "unknown"
    default_base_url: str = ""

    def __init__(
        self,
        provider: ProviderConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
        media_resolver: MediaResolver | None = None,
    ) -> None:
        if not provider.api_key.strip():
            raise InvalidRequestError(f"{self.driver} api key is not configured")
        self.provider = provider
        self.api_key = provider.api_key.strip()
        self.base_url = (provider.base_url.strip() or self.default_base_url).rstrip("/")
        self._http_client = http_client
        self._own_client = http_client is None
        self.media = media_resolver or MediaResolver()

    @property
    def provider_id(self) -> str:
        return self.provider.id

    def client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=60.0)
            self._own_client = True
        return self._http_client

    async def aclose(self) -> None:
        if self._own_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def auth_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    # ── Contract ──────────────────────────────────────────────

    def capabilities(self, model: ModelConfig) -> ModelCapabilities:
        return ModelCapabilities(
            input_modalities=tuple(model.input_modalities) or ("text", "image"),
            output_modalities=tuple(model.output_modalities) or ("image",),
            max_images=model.max_images,
            supported_sizes=tuple(model.supported_sizes),
            supported_durations=tuple(model.supported_durations),
            supports_stream=model.supports_streaming,
            supports_cancel=model.supports_cancel,
            supports_async=model.is_video_model(),
        )

    def validate(self, request: GenerationRequest, model: ModelConfig) -> None:
        """Reject requests the model cannot serve; raises InvalidRequestError."""
        if not request.prompt.strip():
            raise InvalidRequestError("prompt is required")
        images = request.images()
        if model.generation_mode in ("image_to_image", "image_to_video") and not images:
            raise InvalidRequestError(f"{model.generation_mode} requires at least one input image")
        if model.max_images > 0 and len(images) > model.max_images:
            raise InvalidRequestError(
                f"model {model.model_id} accepts at most {model.max_images} images, got {len(images)}"
            )
        size = request.size
        if size and model.supported_sizes:
            if size.lower() not in (s.lower() for s in model.supported_sizes):
                raise InvalidRequestError(f"size {size} is not supported by model {model.model_id}")
        duration = request.duration
        if duration > 0 and model.supported_durations and duration not in model.supported_durations:
            raise InvalidRequestError(f"duration {duration} is not supported by model {model.model_id}")

    @abstractmethod
    async def generate_content(self, request: GenerationRequest, model: ModelConfig) -> GenerationResult:
        """Run one generation against the upstream API."""

    # ── Media helpers ─────────────────────────────────────────

    async def inline_image(self, reference: str) -> str:
        """Data URL for a reference; remote URLs are downloaded first."""
        reference = reference.strip()
        if is_remote(reference):
            media = await self.media.fetch(reference)
            return media.data_url
        return ensure_data_url(reference)

    async def inline_images(self, references: list[str]) -> list[str]:
        """Inline every reference, skipping those that cannot be resolved."""
        inlined = []
        for idx, reference in enumerate(references):
            if not reference.strip():
                continue
            try:
                inlined.append(await self.inline_image(reference))
            except MediaResolveError as e:
                logger.warning("%s: skipping input image %d: %s", self.driver, idx, e)
        return inlined
