from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import ClassVar

from pydantic import BaseModel, Field, field_validator

from badminton_signup.core.clock import utcnow
from badminton_signup.models.common import new_id


class SessionStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    CLOSED = "closed"


class Session(BaseModel):
    collection: ClassVar[str] = "sessions"

    id: str = Field(default_factory=new_id)
    status: SessionStatus = SessionStatus.DRAFT
    capacity: int
    fee: int
    scheduled_start: datetime | None = None
    lock_window_minutes: int = 120
    label: str = ""
    equipment_units_used: int = 0
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    published_at: datetime | None = None
    closed_at: datetime | None = None

    @field_validator("scheduled_start")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def lock_time(self) -> datetime | None:
        if self.scheduled_start is None:
            return None
        return self.scheduled_start - timedelta(minutes=self.lock_window_minutes)

    def is_locked(self, now: datetime) -> bool:
        """Published, not closed, and inside the pre-start lock window. Never stored."""
        if self.status is not SessionStatus.PUBLISHED:
            return False
        lock_time = self.lock_time
        if lock_time is None:
            return False
        return now >= lock_time

    def calendar_date(self, fallback: datetime) -> date:
        return (self.scheduled_start or fallback).date()


class CurrentSessionHandle(BaseModel):
    """Single pointer to the one mutable session; swapped by CAS on close."""

    collection: ClassVar[str] = "pointers"

    id: str = "current"
    session_id: str
    version: int = 0


class MaintenanceFlag(BaseModel):
    collection: ClassVar[str] = "flags"

    id: str = "maintenance"
    enabled: bool = False
    version: int = 0
