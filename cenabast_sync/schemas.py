from __future__ import annotations

from datetime import date

from pydantic import BaseModel, Field, field_validator

from cenabast_sync.models import TaskKind


class TokenRequest(BaseModel):
    force_new: bool = False
    allow_refresh: bool = True


class TaskCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    kind: TaskKind
    run_time: str = Field(..., pattern=r'^\d{2}:\d{2}$', description='Local time of day, HH:MM')
    weekdays: list[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5], description='1 is Monday, 7 is Sunday')
    relation_id: int | None = Field(None, gt=0)
    purchase_channel: str = Field('C', pattern=r'^[CMcm]$')
    active: bool = True

    @field_validator('weekdays')
    @classmethod
    def weekdays_in_range(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError('At least one weekday is required')
        if any(day < 1 or day > 7 for day in value):
            raise ValueError('Weekdays must be between 1 and 7')
        return value


class TaskUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=100)
    kind: TaskKind | None = None
    run_time: str | None = Field(None, pattern=r'^\d{2}:\d{2}$')
    weekdays: list[int] | None = None
    relation_id: int | None = Field(None, gt=0)
    purchase_channel: str | None = Field(None, pattern=r'^[CMcm]$')
    active: bool | None = None


class ManualExecution(BaseModel):
    task_id: int | None = None
    kind: TaskKind | None = None
    relation_id: int | None = Field(None, gt=0)
    purchase_channel: str | None = Field(None, pattern=r'^[CMcm]$')
    target_date: date | None = None
