from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from loyalty_core.domain.enums import NotificationEventType


class NotificationEventRead(BaseModel):
    """Immutable view of a NotificationEvent handed to the reactive path."""

    sequence: int
    id: UUID
    type: NotificationEventType
    target_id: str
    payload: dict[str, Any]
    dedupe_key: str
    coalesce_key: str | None = None
    requires_action: bool = False
    read_at: datetime | None = None
    actioned_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @property
    def version(self) -> int | None:
        value = self.payload.get("version")
        return int(value) if value is not None else None


class NotificationFeed(BaseModel):
    items: list[NotificationEventRead]
    next_cursor: int | None
    unread_count: int = 0


class MarkReadRequest(BaseModel):
    """Either explicit sequences, everything up to a sequence, or (both empty) the whole inbox."""

    sequences: list[int] | None = Field(default=None, max_length=500)
    up_to: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _one_selector(self) -> "MarkReadRequest":
        if self.sequences is not None and self.up_to is not None:
            raise ValueError("Give either sequences or up_to, not both")
        return self


class MarkReadResult(BaseModel):
    updated: int
