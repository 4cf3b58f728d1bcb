from datetime import datetime
from enum import Enum
from typing import ClassVar

from pydantic import BaseModel, Field

from badminton_signup.core.clock import utcnow
from badminton_signup.models.common import new_id


class RegistrantKind(str, Enum):
    SELF = "self"
    GUEST = "guest"


class Classification(str, Enum):
    ACTIVE = "active"
    WAITLISTED = "waitlisted"


def classify(position: int, capacity: int) -> Classification:
    return Classification.ACTIVE if position <= capacity else Classification.WAITLISTED


def guest_display_name(host_name: str, guest_name: str) -> str:
    return f"{host_name}/{guest_name}"


class Registrant(BaseModel):
    id: str = Field(default_factory=new_id)
    session_id: str
    owner_user_id: str  # who pays
    display_name: str
    kind: RegistrantKind = RegistrantKind.SELF
    position: int = 0  # 1-indexed, dense; assigned by RosterManager
    paid: bool = False
    amount_paid: int = 0  # what the owner was charged; refunds return exactly this
    created_at: datetime = Field(default_factory=utcnow)

    def classification(self, capacity: int) -> Classification:
        return classify(self.position, capacity)


class Roster(BaseModel):
    """All registrants of one session in one document, so every change is one atomic write."""

    collection: ClassVar[str] = "rosters"

    id: str  # same as the session id
    entries: list[Registrant] = Field(default_factory=list)
    version: int = 0

    def by_id(self, registrant_id: str) -> Registrant | None:
        return next((e for e in self.entries if e.id == registrant_id), None)

    def ordered(self) -> list[Registrant]:
        return sorted(self.entries, key=lambda e: e.position)
