"""Dead-letter: failed ARQ jobs for inspection."""

from datetime import datetime
from typing import Any, ClassVar

from pydantic import BaseModel, Field

from badminton_signup.core.clock import utcnow


class FailedJob(BaseModel):
    collection: ClassVar[str] = "failed_jobs"

    id: str
    job_name: str
    args: list[Any] = Field(default_factory=list)
    kwargs: dict[str, Any] = Field(default_factory=dict)
    reason: str = ""
    retries: int = 0
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
