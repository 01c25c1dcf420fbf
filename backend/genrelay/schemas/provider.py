from __future__ import annotations
"""Immutable provider/model snapshots handed to adapters.

Built from ORM rows with ``model_validate(row)``; adapters never see the ORM
objects, so a request always works against one consistent configuration.
"""

from typing import Any

from pydantic import BaseModel, Field, field_validator


def _blank(value: Any, empty: Any) -> Any:
    return empty if value is None else value


class ProviderConfig(BaseModel):
    """Provider identity, credentials and free-form settings."""

    id: str
    name: str = ""
    driver: str = ""
    api_key: str = ""
    base_url: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True

    model_config = {"from_attributes": True, "frozen": True}

    @field_validator("name", "driver", "api_key", "base_url", mode="before")
    @classmethod
    def _none_to_str(cls, v: Any) -> Any:
        return _blank(v, "")

    @field_validator("config", mode="before")
    @classmethod
    def _none_to_dict(cls, v: Any) -> Any:
        return _blank(v, {})


class ModelConfig(BaseModel):
    """Capabilities and defaults of one model of a provider."""

    provider_id: str = ""
    model_id: str
    name: str = ""
    max_images: int = 0
    input_modalities: list[str] = Field(default_factory=list)
    output_modalities: list[str] = Field(default_factory=list)
    supported_sizes: list[str] = Field(default_factory=list)
    supported_durations: list[int] = Field(default_factory=list)
    default_size: str = ""
    default_duration: int = 0
    settings: dict[str, Any] = Field(default_factory=dict)
    generation_mode: str = ""
    endpoint_path: str = ""
    supports_streaming: bool = False
    supports_cancel: bool = False
    is_active: bool = True

    model_config = {"from_attributes": True, "frozen": True, "protected_namespaces": ()}

    @field_validator(
        "name", "default_size", "generation_mode", "endpoint_path", "provider_id",
        mode="before",
    )
    @classmethod
    def _none_to_str(cls, v: Any) -> Any:
        return _blank(v, "")

    @field_validator(
        "input_modalities", "output_modalities", "supported_sizes", "supported_durations",
        mode="before",
    )
    @classmethod
    def _none_to_list(cls, v: Any) -> Any:
        return _blank(v, [])

    @field_validator("settings", mode="before")
    @classmethod
    def _none_to_dict(cls, v: Any) -> Any:
        return _blank(v, {})

    @field_validator("max_images", "default_duration", mode="before")
    @classmethod
    def _none_to_zero(cls, v: Any) -> Any:
        return _blank(v, 0)

    def is_video_model(self) -> bool:
        """True when the model outputs video."""
        return any(m.strip().lower() == "video" for m in self.output_modalities)

    def setting(self, key: str, default: Any = None) -> Any:
        return self.settings.get(key, default)

    def resolved_default_size(self) -> str:
        """Default size, falling back to settings and clamped to the supported list."""
        size = self.default_size.strip()
        if not size:
            for key in ("default_size", "default_resolution"):
                raw = self.settings.get(key)
                if isinstance(raw, str) and raw.strip():
                    size = raw.strip()
                    break
        if not self.supported_sizes:
            return size
        for supported in self.supported_sizes:
            if supported.lower() == size.lower():
                return supported
        return self.supported_sizes[0]

    def resolved_default_duration(self) -> int:
        """Default duration, falling back to settings and clamped to the supported list."""
        duration = self.default_duration
        if duration <= 0:
            raw = self.settings.get("default_duration")
            try:
                duration = int(str(raw).strip()) if raw is not None else 0
            except ValueError:
                duration = 0
        if not self.supported_durations:
            return duration
        if duration in self.supported_durations:
            return duration
        return self.supported_durations[0]


class ModelCapabilitiesRead(BaseModel):
    """Serialized adapter capabilities for one model."""

    input_modalities: list[str]
    output_modalities: list[str]
    max_images: int
    supported_sizes: list[str]
    supported_durations: list[int]
    supports_stream: bool
    supports_cancel: bool
    supports_async: bool


class ModelRead(BaseModel):
    """Schema for listing a model with its capabilities."""

    model_id: str
    name: str
    generation_mode: str
    default_size: str
    default_duration: int
    capabilities: ModelCapabilitiesRead | None = None

    model_config = {"protected_namespaces": ()}


class ProviderRead(BaseModel):
    """Schema for listing a provider (credentials are never exposed)."""

    id: str
    name: str
    driver: str
    available: bool = True
    models: list[ModelRead] = Field(default_factory=list)
