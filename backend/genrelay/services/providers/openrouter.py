"""OpenRouter image generation via the OpenAI chat-completions stream.

Also used by AiHubMix models configured with ``protocol: openai``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from genrelay.errors import NoImageInResponseError, ProviderError
from genrelay.schemas.generation import GenerationRequest, GenerationResult
from genrelay.schemas.provider import ModelConfig
from genrelay.services.media_resolver import ensure_data_url, is_remote
from genrelay.services.providers.base import (
    STREAM_TIMEOUT,
    BaseAdapter,
    build_media_outputs,
    raise_for_status,
)
from genrelay.services.stream_utils import (
    StreamAccumulator,
    collect_text_fragments,
    iter_sse_data,
    response_error_message,
    truncate_for_log,
)

logger = logging.getLogger(__name__)

_DEFAULT_ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"


def resolve_chat_endpoint(base_url: str) -> str:
    base = base_url.strip().rstrip("/")
    if not base:
        return _DEFAULT_ENDPOINT
    if base.endswith("/chat/completions"):
        return base
    return f"{base}/chat/completions"


def build_chat_body(model_id: str, prompt: str, images: list[str], videos: list[str]) -> dict[str, Any]:
    """One user message: the prompt, then image and video parts."""
    content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
    for img in images:
        url = img if is_remote(img) else ensure_data_url(img)
        content.append({"type": "image_url", "image_url": {"url": url}})
    for vid in videos:
        content.append({"type": "video_url", "video_url": {"url": vid}})

    modalities = ["image", "text"]
    if videos:
        modalities.append("video")
    return {
        "model": model_id,
        "messages": [{"role": "user", "content": content}],
        "modalities": modalities,
        "stream": True,
    }


def add_image_url(acc: StreamAccumulator, part: dict[str, Any]) -> None:
    image_url = part.get("image_url")
    url = image_url.get("url") if isinstance(image_url, dict) else image_url
    if isinstance(url, str):
        acc.add_image(url)


def fold_chat_chunk(chunk: dict[str, Any], acc: StreamAccumulator, finish_reasons: list[str]) -> None:
    """Fold one decoded chat-completions chunk into the accumulator."""
    for choice in chunk.get("choices") or []:
        delta = choice.get("delta") or choice.get("message") or {}

        # string content is text only, even when it mentions a URL
        content = delta.get("content")
        if isinstance(content, str):
            acc.add_text(content)
        elif isinstance(content, list):
            acc.add_text("".join(collect_text_fragments(content)))
            for part in content:
                if isinstance(part, dict) and part.get("type") == "image_url":
                    add_image_url(acc, part)

        for image in delta.get("images") or []:
            if isinstance(image, dict):
                add_image_url(acc, image)

        for key in ("finish_reason", "native_finish_reason"):
            reason = choice.get(key)
            if isinstance(reason, str) and reason and reason not in finish_reasons:
                finish_reasons.append(reason)


async def stream_chat_completion(
    client: httpx.AsyncClient,
    url: str,
    headers: dict[str, str],
    body: dict[str, Any],
    label: str = "openrouter",
) -> GenerationResult:
    """POST a streaming chat-completions request and collect images and text."""
    acc = StreamAccumulator()
    finish_reasons: list[str] = []
    request_id = ""

    async with client.stream("POST", url, json=body, headers=headers, timeout=STREAM_TIMEOUT) as resp:
        await raise_for_status(resp, label)
        request_id = resp.headers.get("x-request-id", "")
        async for payload in iter_sse_data(resp):
            try:
                chunk = json.loads(payload)
            except ValueError:
                logger.debug("%s: skipping undecodable chunk %s", label, truncate_for_log(payload))
                continue
            if not isinstance(chunk, dict):
                continue
            if "error" in chunk and not chunk.get("choices"):
                acc.add_text(response_error_message(chunk))
                continue
            fold_chat_chunk(chunk, acc, finish_reasons)

    if acc.images:
        return GenerationResult(outputs=build_media_outputs(acc.images), text=acc.text, request_id=request_id)
    if acc.text:
        raise NoImageInResponseError(
            f"{label} returned text without an image", text=acc.text, request_id=request_id,
        )
    if finish_reasons:
        raise ProviderError(f"{label} finished without output: {', '.join(finish_reasons)}", request_id=request_id)
    raise ProviderError("no image or text in streamed response", request_id=request_id)


class OpenRouterAdapter(BaseAdapter):
    driver = "openrouter"
    default_base_url = "https://openrouter.ai/api/v1"

    async def generate_content(self, request: GenerationRequest, model: ModelConfig) -> GenerationResult:
        body = build_chat_body(model.model_id, request.prompt, request.images(), request.videos())
        url = resolve_chat_endpoint(self.base_url)
        logger.info("OpenRouter generate: model=%s images=%d", model.model_id, len(request.images()))
        return await stream_chat_completion(self.client(), url, self.auth_headers(), body)
