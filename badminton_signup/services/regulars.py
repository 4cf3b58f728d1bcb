"""Regular players per weekday, loaded into a fresh session as unpaid entries."""

from badminton_signup.core.exceptions import BadRequestError, ConflictError
from badminton_signup.core.logging import get_logger
from badminton_signup.models.common import to_document
from badminton_signup.models.regulars import RegularPlayers
from badminton_signup.storage.base import DocumentStore, DuplicateKeyError

log = get_logger(__name__)


class RegularRoster:
    def __init__(self, store: DocumentStore, *, cas_max_attempts: int = 8) -> None:
        self._store = store
        self._cas_max_attempts = cas_max_attempts

    async def get(self, weekday: int) -> RegularPlayers:
        if not 0 <= weekday <= 6:
            raise BadRequestError("Weekday must be 0 (Monday) to 6 (Sunday)")
        doc = await self._store.get(RegularPlayers.collection, RegularPlayers.key(weekday))
        if doc is None:
            return RegularPlayers(id=RegularPlayers.key(weekday), weekday=weekday)
        return RegularPlayers.model_validate(doc)

    async def set(self, weekday: int, user_ids: list[str]) -> RegularPlayers:
        # Keep first-listed order, drop repeats.
        user_ids = list(dict.fromkeys(user_ids))
        for _ in range(self._cas_max_attempts):
            current = await self.get(weekday)
            updated = current.model_copy(update={"user_ids": user_ids})
            if current.version == 0 and await self._store.get(RegularPlayers.collection, current.id) is None:
                try:
                    await self._store.insert(RegularPlayers.collection, to_document(updated))
                    break
                except DuplicateKeyError:
                    continue
            if await self._store.compare_and_set(
                RegularPlayers.collection, current.id, current.version, to_document(updated)
            ):
                break
        else:
            raise ConflictError("Regular players were modified concurrently, try again")
        log.info("regulars_set", weekday=weekday, count=len(user_ids))
        return await self.get(weekday)
