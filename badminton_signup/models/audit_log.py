from datetime import datetime
from typing import Any, ClassVar

from pydantic import BaseModel, Field

from badminton_signup.core.clock import utcnow
from badminton_signup.models.common import new_id


class AuditLog(BaseModel):
    collection: ClassVar[str] = "audit_logs"

    id: str = Field(default_factory=new_id)
    user_id: str | None = None  # optional for system events
    event_type: str
    entity_type: str
    entity_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
