from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import SESSION_DURATIONS
from .services.sessions import is_valid_session_duration


class MatchRequestBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId", min_length=1)
    duration: int
    start_time: datetime = Field(alias="startTime")
    timezone: str | None = None
    preferred_partner_ids: list[str] = Field(default_factory=list, alias="preferredPartnerIds")

    @field_validator("duration")
    @classmethod
    def _duration_is_permitted(cls, value: int) -> int:
        if not is_valid_session_duration(value):
            allowed = ", ".join(str(d) for d in SESSION_DURATIONS)
            raise ValueError(f"duration must be one of {allowed}")
        return value

    @field_validator("start_time")
    @classmethod
    def _start_time_is_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class MatchOutcomeResponse(BaseModel):
    matched: bool
    sessionId: str
    participants: list[str] | None = None
    matchedAt: datetime | None = None
    reason: str
    message: str


class QueueStatusResponse(BaseModel):
    size: int
    queued: bool


class SweepResponse(BaseModel):
    evaluated: int
    matched: int
    evicted: list[str] = Field(default_factory=list)
    outcomes: list[dict[str, Any]] = Field(default_factory=list)
