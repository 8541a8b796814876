# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from .schedule import validate_interval

_ID_CHARS = frozenset("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_")


def _utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


def is_safe_identifier(value: str) -> bool:
    return bool(value) and all(ch in _ID_CHARS for ch in value)


class EndCondition(BaseModel):
    type: Literal["occurrences", "end_timestamp"]
    value: Union[int, str]

    @model_validator(mode="after")
    def validate_value(self) -> "EndCondition":
        if self.type == "occurrences":
            if isinstance(self.value, bool) or not isinstance(self.value, int) or self.value < 1:
                raise ValueError("Occurrences must be a positive integer")
        else:
            self.value = _utc(datetime.fromisoformat(str(self.value).replace("Z", "+00:00"))).isoformat()
        return self

    @property
    def end_timestamp(self) -> datetime:
        return _utc(datetime.fromisoformat(str(self.value)))


class IntervalSchedule(BaseModel):
    start_timestamp: datetime
    interval: str
    days_of_week: Optional[list[int]] = None
    end_condition: Optional[EndCondition] = None

    @field_validator("start_timestamp")
    @classmethod
    def normalize_start(cls, value: datetime) -> datetime:
        return _utc(value)

    @field_validator("interval")
    @classmethod
    def validate_interval_format(cls, value: str) -> str:
        if not validate_interval(value):
            raise ValueError("Invalid interval. Use 1min-59min, 1h-24h, 1d-31d or 1M-12M")
        return value

    @field_validator("days_of_week")
    @classmethod
    def validate_days(cls, value: Optional[list[int]]) -> Optional[list[int]]:
        if value is None:
            return None
        if not value or any(day < 0 or day > 6 for day in value):
            raise ValueError("days_of_week must be a non-empty list of integers 0-6 (0 = Sunday)")
        return sorted(set(value))

    @model_validator(mode="after")
    def validate_end(self) -> "IntervalSchedule":
        end = self.end_condition
        if end is not None and end.type == "end_timestamp" and end.end_timestamp <= self.start_timestamp:
            raise ValueError("end_timestamp must be after start_timestamp")
        return self


class Trigger(BaseModel):
    """A stored set of commands run on a schedule, through a webhook or on demand."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    project: str
    name: str
    description: Optional[str] = None
    commands: list[str] = Field(default_factory=list)
    parameters: Optional[Union[str, dict[str, str]]] = None
    schedule: Optional[IntervalSchedule] = None
    thread_lifetime: Optional[str] = None
    active_thread_id: Optional[str] = None
    webhook_enabled: bool = False
    enabled: bool = True
    created_by: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    occurrence_count: int = 0

    @field_validator("id", "project")
    @classmethod
    def validate_identifier(cls, value: str) -> str:
        if not is_safe_identifier(value):
            raise ValueError("Identifiers may only contain letters, digits, '-' and '_'")
        return value

    @field_validator("thread_lifetime")
    @classmethod
    def validate_lifetime(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not validate_interval(value):
            raise ValueError("Invalid thread_lifetime format. Use a format like '2min', '5h', '14d', '1M'")
        return value
