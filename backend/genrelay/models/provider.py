from __future__ import annotations
"""Provider and model configuration ORM models.

Rows are administered outside the generation core; the core only reads them
and converts them into immutable ``ProviderConfig`` / ``ModelConfig`` snapshots.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from genrelay.database import Base

# Driver names understood by the provider registry
DRIVER_OPENROUTER = "openrouter"
DRIVER_GEMINI = "gemini"
DRIVER_AIHUBMIX = "aihubmix"
DRIVER_DASHSCOPE = "dashscope"
DRIVER_FAL = "fal"
DRIVER_VOLCENGINE = "volcengine"


class ProviderRecord(Base):
    """Configurable provider metadata and credentials."""

    __tablename__ = "llm_providers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    driver: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    api_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    base_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    config: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    models = relationship(
        "ModelRecord", back_populates="provider", cascade="all, delete-orphan"
    )


class ModelRecord(Base):
    """Provider-specific model configuration."""

    __tablename__ = "llm_models"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("llm_providers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    model_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    max_images: Mapped[int] = mapped_column(Integer, default=0)
    input_modalities: Mapped[Optional[list[str]]] = mapped_column(JSON, nullable=True)
    output_modalities: Mapped[Optional[list[str]]] = mapped_column(JSON, nullable=True)
    supported_sizes: Mapped[Optional[list[str]]] = mapped_column(JSON, nullable=True)
    supported_durations: Mapped[Optional[list[int]]] = mapped_column(JSON, nullable=True)
    default_size: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    default_duration: Mapped[int] = mapped_column(Integer, default=0)
    settings: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    # text_to_image | image_to_image | text_to_video | image_to_video
    generation_mode: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    endpoint_path: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    supports_streaming: Mapped[bool] = mapped_column(Boolean, default=False)
    supports_cancel: Mapped[bool] = mapped_column(Boolean, default=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    provider = relationship("ProviderRecord", back_populates="models")
