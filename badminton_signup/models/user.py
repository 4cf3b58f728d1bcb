from datetime import datetime
from enum import Enum
from typing import ClassVar

from pydantic import BaseModel, Field

from badminton_signup.core.clock import utcnow
from badminton_signup.models.common import new_id
from badminton_signup.models.transaction import Transaction


class Role(str, Enum):
    PLAYER = "player"
    MODERATOR = "moderator"
    ADMIN = "admin"


class User(BaseModel):
    collection: ClassVar[str] = "users"

    id: str = Field(default_factory=new_id)
    display_name: str
    balance: int = 0  # cached; equals the sum of this user's transactions
    role: Role = Role.PLAYER
    credential_ref: str | None = None
    active: bool = True
    session_version: int = 0
    # Last ledger operations applied to `balance`, used to re-check ambiguous writes
    recent_transactions: list[Transaction] = Field(default_factory=list)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_staff(self) -> bool:
        return self.role in (Role.MODERATOR, Role.ADMIN)
