"""Domain models shared by the store, the consumer and the API."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class HistoryEntry(BaseModel):
    """One persisted classification result. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    prompt: str | None = None
    result: Any = None
    source_ref: str
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
