from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator
from pydantic.alias_generators import to_camel

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def parse_time_to_minutes(value: str) -> int:
    if not TIME_PATTERN.match(value):
        raise ValueError("Time must be in HH:MM 24-hour format")
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def minutes_to_time(value: int) -> str:
    hours = value // 60
    minutes = value % 60
    return f"{hours:02d}:{minutes:02d}"


class BlockedPayload(BaseModel):
    reason: str = Field(min_length=1, max_length=500)

    @field_validator("reason")
    @classmethod
    def normalize_reason(cls, value: str) -> str:
        trimmed = value.strip()
        if not trimmed:
            raise ValueError("A blocked timeslot needs a reason")
        return trimmed


class TimeslotCreate(BaseModel):
    """Either ``end_time`` or ``duration_minutes`` fixes the end of the slot."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    start_time: str
    end_time: str | None = None
    duration_minutes: int | None = Field(default=None, ge=1, le=24 * 60)
    blocked: BlockedPayload | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time_format(cls, value: str | None) -> str | None:
        if value is not None and not TIME_PATTERN.match(value):
            raise ValueError("Time must be in HH:MM 24-hour format")
        return value

    @model_validator(mode="after")
    def resolve_end_time(self) -> "TimeslotCreate":
        start = parse_time_to_minutes(self.start_time)
        if self.end_time is None:
            if self.duration_minutes is None:
                raise ValueError("Either end_time or duration_minutes is required")
            end = start + self.duration_minutes
            if end >= 24 * 60:
                raise ValueError("Timeslot must end on the same day")
            self.end_time = minutes_to_time(end)
        if parse_time_to_minutes(self.end_time) <= start:
            raise ValueError("end_time must be after start_time")
        return self


class TimeslotUpdate(BaseModel):
    """``blocked`` set to a payload blocks the slot; ``unblock`` clears it."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    start_time: str | None = None
    end_time: str | None = None
    blocked: BlockedPayload | None = None
    unblock: bool = False

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time_format(cls, value: str | None) -> str | None:
        if value is not None and not TIME_PATTERN.match(value):
            raise ValueError("Time must be in HH:MM 24-hour format")
        return value

    @model_validator(mode="after")
    def validate_block_flags(self) -> "TimeslotUpdate":
        if self.blocked is not None and self.unblock:
            raise ValueError("Cannot block and unblock in the same request")
        return self


class TimeslotOut(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: int
    start_time: str
    end_time: str
    blocked_reason: str | None = None

    @computed_field(alias="durationMinutes")
    @property
    def duration_minutes(self) -> int:
        return parse_time_to_minutes(self.end_time) - parse_time_to_minutes(self.start_time)

    @computed_field(alias="isBlocked")
    @property
    def is_blocked(self) -> bool:
        return self.blocked_reason is not None
