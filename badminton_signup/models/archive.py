from datetime import date, datetime
from typing import ClassVar

from pydantic import BaseModel, Field

from badminton_signup.core.clock import utcnow
from badminton_signup.models.registrant import Registrant


class SessionArchive(BaseModel):
    """Immutable snapshot written when a session closes. Keyed by calendar date."""

    collection: ClassVar[str] = "archives"

    id: str
    session_id: str
    session_date: date
    label: str = ""
    capacity: int
    fee: int
    active_count: int
    paid_active_count: int
    waitlist_count: int
    courts: int
    equipment_units_used: int
    income: int
    court_cost: int
    equipment_cost: int
    expense: int
    profit: int
    registrants: list[Registrant] = Field(default_factory=list)
    version: int = 0
    closed_at: datetime = Field(default_factory=utcnow)
