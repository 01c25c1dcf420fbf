"""Helpers shared by the streaming adapters.

Covers the event-stream wire format, JSON path lookups over decoded events,
image candidate extraction and text accumulation.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

logger = logging.getLogger(__name__)

SSE_DONE = "[DONE]"
DEFAULT_IMAGE_MIME = "image/png"

_IMAGE_FIELDS = (
    "image_base64",
    "b64_json",
    "base64",
    "base64_data",
    "partial_image_b64",
    "data",
    "chunk",
    "inline_data.data",
    "image_url.url",
    "url",
)
_MIME_FIELDS = ("mime_type", "mimeType", "media_type", "content_type", "inline_data.mime_type")
_INDEX_PATHS = (
    "index",
    "output_index",
    "item.index",
    "item.output_index",
    "response.output_index",
    "data.index",
    "image.index",
)
_ERROR_PATHS = ("error.message", "message", "error", "response.error.message", "response.message")
_SKIP_KEYS = frozenset(("type", "text", "value", "index"))
_URL_RE = re.compile(r"https?://[^\s)\"'<>]+")
_DATA_URL_RE = re.compile(r"data:image/[A-Za-z0-9.+-]+;base64,[A-Za-z0-9+/=_-]+")


# ---------------------------------------------------------------------------
# Event-stream wire format
# ---------------------------------------------------------------------------

@dataclass
class SSEEvent:
    event: str = ""
    data: str = ""

    def json(self) -> Any | None:
        try:
            return json.loads(self.data)
        except ValueError:
            return None


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """Yield the payload of each non-empty ``data:`` line until ``[DONE]``."""
    async for line in response.aiter_lines():
        line = line.strip()
        if not line.startswith("data:"):
            continue
        payload = line[len("data:"):].strip()
        if payload == SSE_DONE:
            return
        if not payload:
            continue
        yield payload


async def iter_sse_events(response: httpx.Response) -> AsyncIterator[SSEEvent]:
    """Yield ``event:``/``data:`` blocks, flushed on blank lines; ``[DONE]`` ends the stream."""
    event_type = ""
    data_lines: list[str] = []

    async for raw in response.aiter_lines():
        line = raw.rstrip("\r")
        if line == "":
            if data_lines:
                data = "\n".join(data_lines)
                if data.strip() == SSE_DONE:
                    return
                yield SSEEvent(event=event_type, data=data)
            event_type = ""
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("event:"):
            event_type = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data_lines.append(line[len("data:"):].lstrip())

    if data_lines:
        data = "\n".join(data_lines)
        if data.strip() != SSE_DONE:
            yield SSEEvent(event=event_type, data=data)


# ---------------------------------------------------------------------------
# JSON path lookups
# ---------------------------------------------------------------------------

def get_path(obj: Any, path: str) -> Any:
    """Dotted lookup; a ``#`` segment maps the rest of the path over a list."""
    parts = path.split(".")
    current = obj
    for i, part in enumerate(parts):
        if part == "#":
            if not isinstance(current, list):
                return None
            rest = ".".join(parts[i + 1:])
            if not rest:
                return current
            return [v for v in (get_path(item, rest) for item in current) if v is not None]
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit():
            idx = int(part)
            current = current[idx] if idx < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, bool) or value is None:
        return ""
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, list):
        for item in value:
            text = _as_text(item)
            if text:
                return text
    return ""


def first_non_empty(obj: Any, *paths: str) -> str:
    """First path whose value is a non-empty string (lists yield their first hit)."""
    for path in paths:
        text = _as_text(get_path(obj, path))
        if text:
            return text
    return ""


# ---------------------------------------------------------------------------
# Image candidates
# ---------------------------------------------------------------------------

@dataclass
class ImageCandidate:
    index: int | None = None
    mime: str = ""
    base64: str = ""
    data_url: str = ""
    url: str = ""

    @property
    def locator(self) -> str:
        if self.url:
            return self.url
        if self.data_url:
            return self.data_url
        if self.base64:
            return f"data:{self.mime or DEFAULT_IMAGE_MIME};base64,{self.base64}"
        return ""


def normalize_base64_chunk(value: str) -> str:
    """Drop a data-URL header and whitespace from a base64 fragment."""
    value = value.strip()
    if value.startswith("data:") and "," in value:
        value = value.split(",", 1)[1]
    return "".join(value.split())


def image_candidate_from_value(value: str, mime: str = "", index: int | None = None) -> ImageCandidate | None:
    value = value.strip()
    if not value:
        return None
    if value.startswith("data:image"):
        return ImageCandidate(index=index, mime=mime, data_url=value)
    if value.startswith("http://") or value.startswith("https://"):
        return ImageCandidate(index=index, mime=mime, url=value)
    normalized = normalize_base64_chunk(value)
    if not normalized:
        return None
    return ImageCandidate(index=index, mime=mime or DEFAULT_IMAGE_MIME, base64=normalized)


def image_candidate_from_object(obj: dict[str, Any]) -> ImageCandidate | None:
    """Candidate from the first image-bearing field of one JSON object."""
    if obj.get("type") == "image_generation_call" and isinstance(obj.get("result"), str):
        return image_candidate_from_value(obj["result"], first_non_empty(obj, *_MIME_FIELDS), response_event_index(obj))
    for path in _IMAGE_FIELDS:
        value = get_path(obj, path)
        if not isinstance(value, str) or not value.strip():
            continue
        mime = first_non_empty(obj, *_MIME_FIELDS)
        return image_candidate_from_value(value, mime, response_event_index(obj))
    return None


def collect_image_candidates(node: Any) -> list[ImageCandidate]:
    """Walk a decoded JSON tree and collect every image-bearing object."""
    found: list[ImageCandidate] = []
    if isinstance(node, dict):
        candidate = image_candidate_from_object(node)
        if candidate is not None:
            found.append(candidate)
        else:
            for key, value in node.items():
                if key in _SKIP_KEYS:
                    continue
                found.extend(collect_image_candidates(value))
    elif isinstance(node, list):
        for item in node:
            found.extend(collect_image_candidates(item))
    return found


def extract_image_candidates(payload: Any, *paths: str) -> list[ImageCandidate]:
    """Candidates under each path (or the whole payload), de-duplicated by (index, locator)."""
    roots = [get_path(payload, p) for p in paths] if paths else [payload]
    seen: set[tuple[int | None, str]] = set()
    result: list[ImageCandidate] = []
    for root in roots:
        if root is None:
            continue
        for candidate in collect_image_candidates(root):
            key = (candidate.index, candidate.locator)
            if not candidate.locator or key in seen:
                continue
            seen.add(key)
            result.append(candidate)
    return result


# ---------------------------------------------------------------------------
# Text and event metadata
# ---------------------------------------------------------------------------

def is_output_text_type(value: str) -> bool:
    value = value.strip().lower()
    return value in ("output_text", "text", "output_text.delta", "response.output_text.delta")


def collect_text_fragments(node: Any) -> list[str]:
    """Text parts of a content tree: plain strings, ``text`` fields of text-typed parts."""
    fragments: list[str] = []
    if isinstance(node, str):
        if node.strip():
            fragments.append(node)
    elif isinstance(node, list):
        for item in node:
            fragments.extend(collect_text_fragments(item))
    elif isinstance(node, dict):
        part_type = node.get("type")
        text = node.get("text")
        if isinstance(text, str) and text.strip() and (part_type is None or is_output_text_type(str(part_type))):
            fragments.append(text)
        for key in ("content", "parts", "output"):
            if key in node:
                fragments.extend(collect_text_fragments(node[key]))
    return fragments


def response_text_fragments(payload: Any, *paths: str) -> list[str]:
    seen: set[str] = set()
    result = []
    for path in paths:
        for fragment in collect_text_fragments(get_path(payload, path)):
            if fragment in seen:
                continue
            seen.add(fragment)
            result.append(fragment)
    return result


def response_error_message(payload: Any) -> str:
    return first_non_empty(payload, *_ERROR_PATHS)


def response_event_index(payload: Any) -> int | None:
    for path in _INDEX_PATHS:
        value = get_path(payload, path)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
    return None


def response_event_type(current: str, payload: Any) -> str:
    if current:
        return current
    if isinstance(payload, dict):
        return first_non_empty(payload, "type", "event")
    return ""


def parse_streamed_content(raw: str) -> tuple[str, str]:
    """Split a free-form content string into (image locator, text).

    The string may be a JSON part, a JSON list of parts, or plain text that
    embeds a data URL or an http(s) URL.
    """
    value = raw.strip()
    if not value:
        return "", ""

    if value[0] in "[{":
        try:
            decoded = json.loads(value)
        except ValueError:
            decoded = None
        if decoded is not None:
            candidates = extract_image_candidates(decoded)
            text = "".join(collect_text_fragments(decoded)).strip()
            return (candidates[0].locator if candidates else ""), text

    if value.startswith("data:image") or value.startswith("http://") or value.startswith("https://"):
        return value, ""

    match = _DATA_URL_RE.search(value)
    if match:
        return match.group(0), (value[:match.start()] + value[match.end():]).strip()
    match = _URL_RE.search(value)
    if match:
        return match.group(0), (value[:match.start()] + value[match.end():]).strip()
    return "", value


def find_data_url(text: str) -> str:
    match = _DATA_URL_RE.search(text)
    return match.group(0) if match else ""


def append_line(current: str, fragment: str) -> str:
    """Append ``fragment`` on a new line.

    Fragments are whitespace-trimmed and blank ones dropped, so chunks are
    newline-joined in order after trimming.
    """
    fragment = fragment.strip()
    if not fragment:
        return current
    if not current:
        return fragment
    return current + "\n" + fragment


def truncate_for_log(value: str, limit: int = 128) -> str:
    value = value.strip()
    return value if len(value) <= limit else value[:limit] + "..."


# ---------------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------------

@dataclass
class StreamAccumulator:
    """Folds streamed fragments: trimmed text newline-joined, images de-duplicated by locator."""

    text: str = ""
    images: list[str] = field(default_factory=list)
    _seen: set[str] = field(default_factory=set, repr=False)

    def add_text(self, fragment: str) -> None:
        self.text = append_line(self.text, fragment)

    def add_image(self, locator: str) -> bool:
        locator = locator.strip()
        if not locator or locator in self._seen:
            return False
        self._seen.add(locator)
        self.images.append(locator)
        return True
