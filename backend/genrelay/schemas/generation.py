from __future__ import annotations
"""Pydantic v2 schemas for generation requests, results and notifications."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

MEDIA_IMAGE = "image"
MEDIA_VIDEO = "video"

ROLE_REFERENCE = "reference"
ROLE_FIRST_FRAME = "first_frame"
ROLE_LAST_FRAME = "last_frame"


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------

class MediaInput(BaseModel):
    """One typed media input: URL, data URL or bare base64."""

    type: str = MEDIA_IMAGE
    content: str
    role: str = ""


class OutputConfig(BaseModel):
    """Requested output shape."""

    size: str = ""
    duration: int = 0
    num_outputs: int = 0


class LegacyInputs(BaseModel):
    """Pre-``input_media`` request shape, still accepted from older clients."""

    images: list[str] = Field(default_factory=list)
    videos: list[str] = Field(default_factory=list)


class LegacyOptions(BaseModel):
    """Pre-``output`` request shape, still accepted from older clients."""

    size: str = ""
    duration: int = 0


class GenerationRequest(BaseModel):
    """Schema for submitting one generation.

    Legacy ``inputs`` / ``options`` are folded into ``input_media`` / ``output``
    on construction, so downstream code only reads the current fields.
    """

    client_id: str = ""
    provider_id: str = ""
    model_id: str = ""
    prompt: str = ""

    input_media: list[MediaInput] = Field(default_factory=list)
    output: OutputConfig = Field(default_factory=OutputConfig)

    inputs: LegacyInputs = Field(default_factory=LegacyInputs)
    options: LegacyOptions = Field(default_factory=LegacyOptions)

    tag_ids: list[int] = Field(default_factory=list)

    model_config = {"protected_namespaces": ()}

    @field_validator("client_id", "provider_id", "model_id", "prompt", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> Any:
        if v is None:
            return ""
        return v.strip() if isinstance(v, str) else v

    @field_validator("tag_ids")
    @classmethod
    def _dedupe_tags(cls, v: list[int]) -> list[int]:
        seen: set[int] = set()
        result = []
        for tag_id in v:
            if tag_id <= 0 or tag_id in seen:
                continue
            seen.add(tag_id)
            result.append(tag_id)
        return result

    @model_validator(mode="after")
    def _normalize_inputs(self) -> "GenerationRequest":
        if not self.input_media and self.inputs.images:
            self.input_media = [
                MediaInput(type=MEDIA_IMAGE, content=img) for img in self.inputs.images
            ]
        if not any(m.type == MEDIA_VIDEO for m in self.input_media):
            for vid in self.inputs.videos:
                self.input_media.append(MediaInput(type=MEDIA_VIDEO, content=vid))

        self.options.size = self.options.size.strip()
        if not self.output.size and self.options.size:
            self.output.size = self.options.size
        if self.output.duration <= 0 and self.options.duration > 0:
            self.output.duration = self.options.duration
        return self

    def images(self) -> list[str]:
        """Image inputs in submission order (untyped inputs count as images)."""
        images = [m.content for m in self.input_media if m.type in (MEDIA_IMAGE, "")]
        return images or list(self.inputs.images)

    def videos(self) -> list[str]:
        videos = [m.content for m in self.input_media if m.type == MEDIA_VIDEO]
        return videos or list(self.inputs.videos)

    @property
    def size(self) -> str:
        return self.output.size or self.options.size

    @property
    def duration(self) -> int:
        return self.output.duration if self.output.duration > 0 else self.options.duration


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

class MediaOutput(BaseModel):
    """One typed media output (remote URL or data URL)."""

    type: str = MEDIA_IMAGE
    url: str
    mime_type: str = ""


class GenerationResult(BaseModel):
    """Normalized adapter result."""

    outputs: list[MediaOutput] = Field(default_factory=list)
    text: str = ""
    task_id: str = ""
    request_id: str = ""

    def urls(self) -> list[str]:
        return [o.url for o in self.outputs]


# ---------------------------------------------------------------------------
# API envelopes
# ---------------------------------------------------------------------------

class GenerationAccepted(BaseModel):
    """Immediate acknowledgement returned by the submit endpoint."""

    record_id: int
    status: str = "processing"


class CompletionEvent(BaseModel):
    """Payload of the ``generation_completed`` live event."""

    record_id: int
    status: str
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class UsageRecordRead(BaseModel):
    """Schema for reading a usage record."""

    id: int
    provider_id: str
    model_id: str
    prompt: str
    size: str | None = None
    input_images: list[str] | None = None
    output_images: list[str] | None = None
    output_text: str | None = None
    error_message: str | None = None
    external_task_code: str | None = None
    request_id: str | None = None
    tag_ids: list[int] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True, "protected_namespaces": ()}
