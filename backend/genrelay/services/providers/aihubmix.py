"""AiHubMix image generation via the OpenAI Responses API.

The Responses stream is typed by ``event:`` lines. Image bytes arrive as
base64 fragments keyed by output index and are stitched back together; the
lowest index is the primary image.

A model setting ``protocol`` of ``gemini`` or ``openai`` routes the call
through the Gemini stream (``<base>/gemini``) or the chat-completions stream.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from genrelay.errors import NoImageInResponseError, ProviderError
from genrelay.schemas.generation import GenerationRequest, GenerationResult
from genrelay.schemas.provider import ModelConfig
from genrelay.services.media_resolver import ensure_data_url
from genrelay.services.providers.base import (
    STREAM_TIMEOUT,
    BaseAdapter,
    build_media_outputs,
    raise_for_status,
)
from genrelay.services.providers.gemini import (
    build_gemini_body,
    gemini_headers,
    resolve_stream_endpoint,
    stream_gemini,
)
from genrelay.services.providers.openrouter import (
    build_chat_body,
    resolve_chat_endpoint,
    stream_chat_completion,
)
from genrelay.services.stream_utils import (
    DEFAULT_IMAGE_MIME,
    append_line,
    extract_image_candidates,
    find_data_url,
    first_non_empty,
    image_candidate_from_value,
    iter_sse_events,
    response_error_message,
    response_event_index,
    response_event_type,
    response_text_fragments,
)

logger = logging.getLogger(__name__)

PROTOCOL_RESPONSES = "responses"
PROTOCOL_GEMINI = "gemini"
PROTOCOL_OPENAI = "openai"

_TEXT_EVENTS = ("response.output_text.delta", "response.reasoning_text.delta", "response.output_text.annotation.added")
_IMAGE_BEGIN_EVENTS = ("response.output_image.begin", "response.image_generation_call.partial_image")
_IMAGE_DELTA_EVENTS = ("response.output_image.delta", "response.image_generation_call.generating")
_IMAGE_DONE_EVENTS = ("response.output_image.done", "response.image_generation_call.completed")
_FAILURE_EVENTS = (
    "response.failed",
    "response.incomplete",
    "response.error",
    "error",
    "response.image_generation_call.failed",
)
_DELTA_PATHS = ("delta", "content", "image", "choices", "item")
_MIME_PATHS = ("mime_type", "mimeType", "media_type", "content_type", "output_format")


def build_responses_body(model_id: str, prompt: str, images: list[str]) -> dict[str, Any]:
    content: list[dict[str, Any]] = [{"type": "input_text", "text": prompt}]
    for idx, img in enumerate(images):
        img = img.strip()
        if not img:
            logger.warning("aihubmix: skipping empty reference image %d", idx)
            continue
        content.append({"type": "input_image", "image_url": ensure_data_url(img)})
    return {
        "model": model_id,
        "input": [{"role": "user", "content": content}],
        "tools": [{"type": "image_generation"}],
        "stream": True,
    }


@dataclass
class ResponsesStreamState:
    """Per-stream accumulation of text and per-index image fragments."""

    text: str = ""
    chunks: dict[int, list[str]] = field(default_factory=dict)
    mimes: dict[int, str] = field(default_factory=dict)
    urls: dict[int, str] = field(default_factory=dict)
    completed: bool = False

    def add_text(self, payload: Any, *paths: str) -> None:
        fragment = "".join(response_text_fragments(payload, *paths))
        self.text = append_line(self.text, fragment)

    def begin_image(self, index: int, payload: Any) -> None:
        self.chunks.setdefault(index, [])
        mime = _event_mime(payload)
        if mime:
            self.mimes[index] = mime
        else:
            self.mimes.setdefault(index, DEFAULT_IMAGE_MIME)

    def image_delta(
        self,
        payload: Any,
        *,
        replace: bool = False,
        paths: tuple[str, ...] = _DELTA_PATHS,
        bare_delta: bool = False,
    ) -> str:
        """Fold image candidates from one event; returns a complete data URL if one arrived.

        With ``bare_delta`` a plain-string ``delta`` is itself an image fragment.
        """
        index = response_event_index(payload)
        index = 0 if index is None else index
        self.begin_image(index, payload)

        candidates = extract_image_candidates(payload, *paths)
        delta = payload.get("delta") if isinstance(payload, dict) else None
        if bare_delta and isinstance(delta, str):
            bare = image_candidate_from_value(delta, self.mimes.get(index, ""), index)
            if bare is not None:
                candidates.insert(0, bare)

        for candidate in candidates:
            idx = candidate.index if candidate.index else index
            self.chunks.setdefault(idx, [])
            if candidate.mime:
                self.mimes[idx] = candidate.mime
            if candidate.data_url:
                return candidate.data_url
            if candidate.url:
                self.urls[idx] = candidate.url
            elif candidate.base64:
                if replace:
                    self.chunks[idx] = [candidate.base64]
                else:
                    self.chunks[idx].append(candidate.base64)
        return ""

    def images(self) -> list[str]:
        """Locators ordered by output index (lowest first)."""
        result = []
        for idx in sorted(set(self.chunks) | set(self.urls)):
            b64 = "".join(self.chunks.get(idx, [])).strip()
            if b64:
                mime = self.mimes.get(idx) or DEFAULT_IMAGE_MIME
                result.append(f"data:{mime};base64,{b64}")
            elif self.urls.get(idx, "").strip():
                result.append(self.urls[idx].strip())
        if not result:
            embedded = find_data_url(self.text)
            if embedded:
                result.append(embedded)
        return result


def _event_mime(payload: Any) -> str:
    mime = first_non_empty(payload, *_MIME_PATHS)
    if mime and "/" not in mime:
        mime = f"image/{mime}"
    return mime


class _ImmediateImage(Exception):
    def __init__(self, locator: str):
        super().__init__(locator)
        self.locator = locator


def handle_responses_event(state: ResponsesStreamState, event_name: str, payload: Any) -> None:
    """Apply one Responses stream event to ``state``.

    Raises ProviderError for failure events and _ImmediateImage when a
    complete image arrives in one piece.
    """
    if not event_name:
        state.add_text(payload, "choices.#.delta.content", "delta.content", "delta")
        if locator := state.image_delta(payload):
            raise _ImmediateImage(locator)
        return

    if event_name in _TEXT_EVENTS:
        state.add_text(payload, "delta", "delta.content")
    elif event_name in _IMAGE_BEGIN_EVENTS:
        index = response_event_index(payload)
        state.begin_image(0 if index is None else index, payload)
        if event_name == "response.image_generation_call.partial_image":
            # each partial is a full image at increasing quality
            state.image_delta(payload, replace=True, paths=())
    elif event_name in _IMAGE_DELTA_EVENTS:
        if locator := state.image_delta(payload, bare_delta=True):
            raise _ImmediateImage(locator)
    elif event_name in _IMAGE_DONE_EVENTS:
        pass
    elif event_name == "response.completed":
        state.completed = True
        if not state.text:
            state.add_text(payload, "response.output", "response.text", "response.output_items")
        if not any(state.chunks.values()) and not state.urls:
            candidates = extract_image_candidates(payload, "response.output", "response.output_items")
            if candidates and candidates[0].locator:
                raise _ImmediateImage(candidates[0].locator)
    elif event_name in _FAILURE_EVENTS:
        message = response_error_message(payload) or str(payload)
        raise ProviderError(message, text=state.text)
    else:
        state.add_text(payload, "delta.content", "delta", "content", "response.output")
        if locator := state.image_delta(payload):
            raise _ImmediateImage(locator)


class AiHubMixAdapter(BaseAdapter):
    driver = "aihubmix"
    default_base_url = "https://aihubmix.com/v1"

    async def generate_content(self, request: GenerationRequest, model: ModelConfig) -> GenerationResult:
        protocol = str(model.setting("protocol", PROTOCOL_RESPONSES) or PROTOCOL_RESPONSES).strip().lower()
        logger.info("AiHubMix generate: model=%s protocol=%s", model.model_id, protocol)

        if protocol == PROTOCOL_GEMINI:
            body = await build_gemini_body(request.prompt, request.images(), self.media)
            url = resolve_stream_endpoint(f"{self.base_url}/gemini", model.model_id)
            return await stream_gemini(self.client(), url, gemini_headers(self.api_key), body, label="aihubmix")

        if protocol == PROTOCOL_OPENAI:
            body = build_chat_body(model.model_id, request.prompt, request.images(), request.videos())
            url = resolve_chat_endpoint(self.base_url)
            return await stream_chat_completion(self.client(), url, self.auth_headers(), body, label="aihubmix")

        return await self.stream_responses(build_responses_body(model.model_id, request.prompt, request.images()))

    async def stream_responses(self, body: dict[str, Any]) -> GenerationResult:
        url = f"{self.base_url}/responses"
        headers = {**self.auth_headers(), "Accept": "text/event-stream"}
        state = ResponsesStreamState()
        request_id = ""

        async with self.client().stream("POST", url, json=body, headers=headers, timeout=STREAM_TIMEOUT) as resp:
            await raise_for_status(resp, "aihubmix responses")
            request_id = resp.headers.get("x-request-id", "")
            try:
                async for event in iter_sse_events(resp):
                    payload = event.json()
                    if payload is None:
                        logger.debug("aihubmix: skipping undecodable event %s", event.event)
                        continue
                    handle_responses_event(state, response_event_type(event.event, payload), payload)
            except _ImmediateImage as hit:
                return GenerationResult(
                    outputs=build_media_outputs([hit.locator]), text=state.text, request_id=request_id,
                )
            except ProviderError as e:
                e.request_id = e.request_id or request_id
                raise

        if not state.completed:
            logger.warning("aihubmix: responses stream ended without a completed event")

        images = state.images()
        if not images:
            raise NoImageInResponseError(
                "model did not return an image in stream", text=state.text, request_id=request_id,
            )
        return GenerationResult(outputs=build_media_outputs(images), text=state.text, request_id=request_id)
