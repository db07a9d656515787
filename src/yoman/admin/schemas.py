from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


@dataclass
class RuntimeControl:
    shutdown_event: asyncio.Event
    restart_event: asyncio.Event
    started_at: float


class ShutdownRequest(BaseModel):
    reason: str = Field(default="manual")


class ReminderCreate(BaseModel):
    owner: str
    time: str
    day: Optional[str] = None
    date: Optional[str] = None
    kind: Literal["one-time", "recurring"] = "one-time"
    title: Optional[str] = None
    duration: int = 45
    pre_notifications: Optional[List[str]] = None
    notes: str = ""


class TimeRangeIn(BaseModel):
    start: str
    end: str


class TreatmentIn(BaseModel):
    id: Optional[str] = None
    name: str
    duration_minutes: int = 30
    buffer_minutes: int = 0


class CategoryIn(BaseModel):
    id: Optional[str] = None
    name: str
    duration_minutes: int = 30
    buffer_minutes: int = 0
    max_per_hour: int = 1
    treatments: List[TreatmentIn] = Field(default_factory=list)


class BusinessHoursUpdate(BaseModel):
    hours: Dict[str, List[TimeRangeIn]]


class BookingRequest(BaseModel):
    owner: str
    date: str
    time: str
    category_id: str
    treatment_id: Optional[str] = None


class ReminderTemplateUpdate(BaseModel):
    template: str = Field(min_length=1)
