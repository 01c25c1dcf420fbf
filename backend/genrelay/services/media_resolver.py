"""Media reference resolution.

Turns an input media reference into raw bytes plus a MIME type. Three shapes
are accepted, distinguished by prefix only:

  http(s)://...                 → fetched with a bounded timeout
  data:<mime>;base64,<payload>  → split and decoded
  <bare base64>                 → wrapped with a default MIME, then decoded

Usage:
    resolver = MediaResolver()
    media = await resolver.resolve("data:image/png;base64,QUJD")
    batch = await resolver.resolve_batch([url, data_url, b64])
"""

from __future__ import annotations

import base64
import binascii
import logging
import mimetypes
from dataclasses import dataclass, field

import httpx

from genrelay.errors import MediaResolveError

logger = logging.getLogger(__name__)

DEFAULT_MIME = "image/jpeg"
OCTET_STREAM = "application/octet-stream"

# Extensions mimetypes gets wrong or does not know on every platform
_EXTENSION_OVERRIDES = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/bmp": "bmp",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
}

# (offset, signature, mime): first match wins
_SIGNATURES: tuple[tuple[int, bytes, str], ...] = (
    (0, b"\x89PNG\r\n\x1a\n", "image/png"),
    (0, b"\xff\xd8\xff", "image/jpeg"),
    (0, b"GIF87a", "image/gif"),
    (0, b"GIF89a", "image/gif"),
    (0, b"BM", "image/bmp"),
    (4, b"ftyp", "video/mp4"),
    (0, b"\x1a\x45\xdf\xa3", "video/webm"),
)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def is_remote(reference: str) -> bool:
    return reference.startswith("http://") or reference.startswith("https://")


def ensure_data_url(value: str, mime: str = DEFAULT_MIME) -> str:
    """Wrap bare base64 into a data URL; data URLs pass through untouched."""
    if value.startswith("data:"):
        return value
    return f"data:{mime};base64,{value}"


def split_data_url(value: str) -> tuple[str, str]:
    """Split a data URL into (mime, payload); bare base64 gets the default MIME."""
    if not value.startswith("data:"):
        return DEFAULT_MIME, value
    head, sep, payload = value[len("data:"):].partition(";base64,")
    if not sep:
        return DEFAULT_MIME, ""
    return head, payload


def normalize_mime(value: str | None, default: str = DEFAULT_MIME) -> str:
    """Strip parameters (``; charset=...``) and fall back to a default."""
    v = (value or "").strip()
    if not v:
        return default
    return v.split(";", 1)[0].strip() or default


def sniff_mime(data: bytes) -> str:
    """Guess a MIME type from magic bytes."""
    for offset, signature, mime in _SIGNATURES:
        if data[offset:offset + len(signature)] == signature:
            return mime
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return OCTET_STREAM


def extension_from_mime(mime: str) -> str:
    """File extension (without dot) for a MIME type, or '' when unknown."""
    normalized = normalize_mime(mime, default="").lower()
    if not normalized:
        return ""
    if normalized in _EXTENSION_OVERRIDES:
        return _EXTENSION_OVERRIDES[normalized]
    guessed = mimetypes.guess_extension(normalized)
    return guessed.lstrip(".") if guessed else ""


def decode_base64(payload: str) -> bytes:
    """Strict base64 decode tolerant of embedded whitespace."""
    cleaned = "".join(payload.split())
    if not cleaned:
        raise MediaResolveError("empty base64 payload")
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MediaResolveError(f"invalid base64: {e}") from e


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass
class ResolvedMedia:
    """Raw bytes of one reference plus where they came from."""
    data: bytes
    mime_type: str
    source: str  # url | data_url | base64
    url: str = ""
    index: int = 0

    @property
    def extension(self) -> str:
        return extension_from_mime(self.mime_type) or extension_from_mime(sniff_mime(self.data)) or "bin"

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"


@dataclass
class BatchResult:
    """Outcome of resolving several references: successes and indexed failures."""
    items: list[ResolvedMedia] = field(default_factory=list)
    errors: list[MediaResolveError] = field(default_factory=list)

    def error_summary(self) -> str:
        return "; ".join(f"{e.index}: {e}" for e in self.errors)


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class MediaResolver:
    """Resolve URL / data URL / base64 references into bytes."""

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._http_client = http_client
        self._own_client = http_client is None
        self.timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
            self._own_client = True
        return self._http_client

    async def aclose(self) -> None:
        if self._own_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def resolve(
        self,
        reference: str,
        *,
        default_mime: str = DEFAULT_MIME,
        timeout: float | None = None,
    ) -> ResolvedMedia:
        """Resolve one reference. Raises MediaResolveError on any failure."""
        ref = (reference or "").strip()
        if not ref:
            raise MediaResolveError("empty media reference")

        if is_remote(ref):
            return await self.fetch(ref, timeout=timeout)

        if ref.startswith("data:"):
            mime, payload = split_data_url(ref)
            data = decode_base64(payload)
            mime = normalize_mime(mime, default="") or sniff_mime(data)
            return ResolvedMedia(data=data, mime_type=mime, source="data_url")

        mime, payload = split_data_url(ensure_data_url(ref, default_mime))
        data = decode_base64(payload)
        return ResolvedMedia(data=data, mime_type=mime, source="base64")

    async def resolve_batch(self, references: list[str], *, timeout: float | None = None) -> BatchResult:
        """Resolve every reference; one bad item never aborts the others."""
        result = BatchResult()
        for idx, reference in enumerate(references):
            try:
                media = await self.resolve(reference, timeout=timeout)
            except MediaResolveError as e:
                e.index = idx
                result.errors.append(e)
                logger.warning("Media reference %d could not be resolved: %s", idx, e)
                continue
            media.index = idx
            result.items.append(media)
        return result

    async def fetch(self, url: str, *, timeout: float | None = None) -> ResolvedMedia:
        """Download a remote asset; MIME from the header, else sniffed."""
        try:
            resp = await self._client().get(url, timeout=timeout or self.timeout)
        except httpx.HTTPError as e:
            raise MediaResolveError(f"download failed: {e}") from e

        if resp.status_code != 200:
            raise MediaResolveError(f"download failed with status {resp.status_code}")

        data = resp.content
        mime = normalize_mime(resp.headers.get("content-type"), default="") or sniff_mime(data)
        logger.debug("Downloaded media %s (%s, %d bytes)", truncate_url(url), mime, len(data))
        return ResolvedMedia(data=data, mime_type=mime, source="url", url=url)


def truncate_url(value: str, limit: int = 128) -> str:
    value = value.strip()
    return value if len(value) <= limit else value[:limit] + "..."
