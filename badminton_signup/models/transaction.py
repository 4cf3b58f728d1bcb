from datetime import datetime
from enum import Enum
from typing import ClassVar

from pydantic import BaseModel, Field

from badminton_signup.core.clock import utcnow
from badminton_signup.models.common import new_id


class Reason(str, Enum):
    REGISTRATION = "registration"
    GUEST_REGISTRATION = "guest_registration"
    SESSION_SETTLEMENT = "session_settlement"
    REFUND = "refund"
    ROLLBACK = "rollback"
    GIFT = "gift"
    DEPOSIT = "deposit"
    CORRECTION = "correction"
    ADMIN_REMOVAL = "admin_removal"
    WAITLIST_REFUND = "waitlist_refund"


class Transaction(BaseModel):
    """Append-only ledger record. Never updated or deleted."""

    collection: ClassVar[str] = "transactions"

    id: str = Field(default_factory=new_id)
    user_id: str
    amount: int  # positive = credit, negative = debit
    balance_after: int
    reason: Reason
    session_id: str | None = None
    note: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
