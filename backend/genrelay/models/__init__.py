"""ORM models package: import all models so they register with Base.metadata."""

from genrelay.models.provider import ModelRecord, ProviderRecord
from genrelay.models.usage_record import UsageRecord

__all__ = [
    "ModelRecord",
    "ProviderRecord",
    "UsageRecord",
]
