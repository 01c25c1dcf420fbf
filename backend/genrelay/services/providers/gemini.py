"""Google Gemini image generation via ``streamGenerateContent?alt=sse``.

Also used by AiHubMix models configured with ``protocol: gemini``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from genrelay.errors import MediaResolveError, NoImageInResponseError
from genrelay.schemas.generation import GenerationRequest, GenerationResult
from genrelay.schemas.provider import ModelConfig
from genrelay.services.media_resolver import DEFAULT_MIME, MediaResolver
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

logger = logging.getLogger(__name__)

_DEFAULT_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models/{model}:streamGenerateContent?alt=sse"


def resolve_stream_endpoint(base_url: str, model_id: str) -> str:
    """Public endpoint, a ``{model}``/``%s`` template, or a bare base URL."""
    base = base_url.strip()
    if not base:
        return _DEFAULT_ENDPOINT.format(model=model_id)
    if "{model}" in base:
        return base.format(model=model_id)
    if "%s" in base:
        return base.replace("%s", model_id, 1)
    return f"{base.rstrip('/')}/v1beta/models/{model_id}:streamGenerateContent?alt=sse"


async def build_gemini_body(prompt: str, images: list[str], resolver: MediaResolver) -> dict[str, Any]:
    """Prompt part followed by one ``inlineData`` part per resolvable image."""
    parts: list[dict[str, Any]] = [{"text": prompt}]
    for idx, reference in enumerate(images):
        try:
            media = await resolver.resolve(reference)
        except MediaResolveError as e:
            logger.warning("gemini: skipping input image %d: %s", idx, e)
            continue
        parts.append({"inlineData": {"mimeType": media.mime_type, "data": media.base64}})
    return {
        "contents": [{"role": "user", "parts": parts}],
        "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
    }


def fold_gemini_chunk(chunk: dict[str, Any], acc: StreamAccumulator) -> None:
    if "error" in chunk:
        acc.add_text(response_error_message(chunk))
        return
    for candidate in chunk.get("candidates") or []:
        for part in (candidate.get("content") or {}).get("parts") or []:
            text = part.get("text")
            if isinstance(text, str):
                acc.add_text(text)
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                mime = inline.get("mimeType") or inline.get("mime_type") or DEFAULT_MIME
                acc.add_image(f"data:{mime};base64,{inline['data']}")
            file_data = part.get("fileData") or part.get("file_data")
            if file_data:
                acc.add_image(file_data.get("fileUri") or file_data.get("file_uri") or "")


async def stream_gemini(
    client: httpx.AsyncClient,
    url: str,
    headers: dict[str, str],
    body: dict[str, Any],
    label: str = "gemini",
) -> GenerationResult:
    acc = StreamAccumulator()
    async with client.stream("POST", url, json=body, headers=headers, timeout=STREAM_TIMEOUT) as resp:
        await raise_for_status(resp, label)
        async for payload in iter_sse_data(resp):
            try:
                chunk = json.loads(payload)
            except ValueError:
                logger.debug("%s: skipping undecodable chunk %s", label, truncate_for_log(payload))
                continue
            if isinstance(chunk, dict):
                fold_gemini_chunk(chunk, acc)

    if not acc.images:
        raise NoImageInResponseError(f"{label} response did not include image data", text=acc.text)
    return GenerationResult(outputs=build_media_outputs(acc.images), text=acc.text)


def gemini_headers(api_key: str) -> dict[str, str]:
    return {
        "x-goog-api-key": api_key,
        "Content-Type": "application/json",
        "Accept": "text/event-stream",
    }


class GeminiAdapter(BaseAdapter):
    driver = "gemini"

    async def generate_content(self, request: GenerationRequest, model: ModelConfig) -> GenerationResult:
        body = await build_gemini_body(request.prompt, request.images(), self.media)
        url = resolve_stream_endpoint(self.base_url, model.model_id)
        logger.info("Gemini generate: model=%s parts=%d", model.model_id, len(body["contents"][0]["parts"]))
        return await stream_gemini(self.client(), url, gemini_headers(self.api_key), body)
