from typing import ClassVar

from pydantic import BaseModel, Field


class RegularPlayers(BaseModel):
    """Users added automatically to every session held on ``weekday`` (0 = Monday)."""

    collection: ClassVar[str] = "regulars"

    id: str
    weekday: int
    user_ids: list[str] = Field(default_factory=list)
    version: int = 0

    @staticmethod
    def key(weekday: int) -> str:
        return f"weekday-{weekday}"
