"""
Session roster: ordered registrants with dense 1..N positions.

The roster of a session is one document, so every change (append, removal plus
renumbering, paid flag) is a single optimistic write on the roster version.
Active/waitlisted is never stored; it is derived from position vs. capacity, so
promotion off the waitlist is just renumbering.
"""

from dataclasses import dataclass, field
from typing import Callable, Iterable

from badminton_signup.core.clock import Clock, utcnow
from badminton_signup.core.exceptions import (
    AlreadyRegistered,
    NotFoundError,
    NotRegistered,
    RosterWriteFailed,
    SessionNotOpen,
)
from badminton_signup.core.logging import get_logger
from badminton_signup.models.common import to_document
from badminton_signup.models.registrant import Classification, Registrant, RegistrantKind, Roster, classify
from badminton_signup.models.session import Session, SessionStatus
from badminton_signup.storage.base import DocumentStore, DuplicateKeyError

log = get_logger(__name__)


@dataclass
class Placement:
    registrant: Registrant
    classification: Classification

    @property
    def position(self) -> int:
        return self.registrant.position


@dataclass
class Removal:
    removed: list[Registrant]
    remaining: list[Registrant] = field(default_factory=list)
    capacity: int = 0
    moved: int = 0  # entries whose position changed in the renumbering

    @property
    def freed_active_slot(self) -> bool:
        return any(r.position <= self.capacity for r in self.removed)

    @property
    def active_count(self) -> int:
        return min(len(self.remaining), self.capacity)

    @property
    def waitlist_count(self) -> int:
        return max(len(self.remaining) - self.capacity, 0)


def recompact_entries(entries: Iterable[Registrant]) -> tuple[list[Registrant], int]:
    """
    Renumber entries to 1..N keeping their current relative order.

    Returns the renumbered list and how many entries moved.
    """
    ordered = sorted(entries, key=lambda e: (e.position, e.created_at))
    renumbered: list[Registrant] = []
    moved = 0
    for index, entry in enumerate(ordered, start=1):
        if entry.position != index:
            entry = entry.model_copy(update={"position": index})
            moved += 1
        renumbered.append(entry)
    return renumbered, moved


class RosterManager:
    def __init__(self, store: DocumentStore, *, cas_max_attempts: int = 8, clock: Clock = utcnow) -> None:
        self._store = store
        self._cas_max_attempts = cas_max_attempts
        self._clock = clock

    async def _session(self, session_id: str) -> Session:
        doc = await self._store.get(Session.collection, session_id)
        if doc is None:
            raise NotFoundError("Session not found")
        return Session.model_validate(doc)

    async def _roster(self, session_id: str) -> Roster:
        doc = await self._store.get(Roster.collection, session_id)
        if doc is None:
            await self.create(session_id)
            doc = await self._store.get(Roster.collection, session_id)
        return Roster.model_validate(doc)

    def _check_window(self, session: Session) -> None:
        if session.status is SessionStatus.CLOSED:
            raise SessionNotOpen("closed")
        if session.is_locked(self._clock()):
            raise SessionNotOpen("locked")

    async def create(self, session_id: str) -> None:
        """Create the empty roster document for a session (no-op if it exists)."""
        try:
            await self._store.insert(Roster.collection, to_document(Roster(id=session_id)))
        except DuplicateKeyError:
            pass

    async def entries(self, session_id: str) -> list[Registrant]:
        return (await self._roster(session_id)).ordered()

    async def get(self, session_id: str, registrant_id: str) -> Registrant | None:
        return (await self._roster(session_id)).by_id(registrant_id)

    async def find_by_owner(self, session_id: str, user_id: str) -> list[Registrant]:
        return [e for e in await self.entries(session_id) if e.owner_user_id == user_id]

    async def find_self(self, session_id: str, user_id: str) -> Registrant | None:
        return next(
            (e for e in await self.find_by_owner(session_id, user_id) if e.kind is RegistrantKind.SELF),
            None,
        )

    async def active(self, session_id: str) -> list[Registrant]:
        capacity = (await self._session(session_id)).capacity
        return [e for e in await self.entries(session_id) if e.position <= capacity]

    async def waitlisted(self, session_id: str) -> list[Registrant]:
        capacity = (await self._session(session_id)).capacity
        return [e for e in await self.entries(session_id) if e.position > capacity]

    async def register(self, session_id: str, registrant: Registrant, *, enforce_window: bool = True) -> Placement:
        """
        Append a registrant at position N+1.

        Rejects a duplicate display name, and a Closed or Locked session unless
        `enforce_window` is off (admin additions). If the registrant id is already
        on the roster the earlier write landed and its placement is returned.
        """
        for attempt in range(self._cas_max_attempts):
            session = await self._session(session_id)
            if enforce_window:
                self._check_window(session)
            roster = await self._roster(session_id)

            existing = roster.by_id(registrant.id)
            if existing is not None:
                return Placement(existing, existing.classification(session.capacity))
            if any(e.display_name == registrant.display_name for e in roster.entries):
                raise AlreadyRegistered(details={"display_name": registrant.display_name})

            entry = registrant.model_copy(update={"session_id": session_id, "position": len(roster.entries) + 1})
            updated = roster.model_copy(update={"entries": roster.entries + [entry]})
            if await self._store.compare_and_set(Roster.collection, session_id, roster.version, to_document(updated)):
                placement = Placement(entry, classify(entry.position, session.capacity))
                log.info(
                    "roster_register",
                    session_id=session_id,
                    registrant_id=entry.id,
                    display_name=entry.display_name,
                    position=entry.position,
                    classification=placement.classification.value,
                )
                return placement
            log.debug("roster_write_conflict", session_id=session_id, op="register", attempt=attempt + 1)

        log.warning("roster_write_exhausted", session_id=session_id, op="register")
        raise RosterWriteFailed(details={"session_id": session_id, "operation": "register"})

    async def cancel(self, session_id: str, registrant_id: str, *, enforce_window: bool = True) -> Removal:
        """
        Remove a registrant and renumber.

        Cancelling a Self entry also removes every Guest owned by the same user,
        in the same write.
        """

        def select(roster: Roster) -> list[Registrant]:
            target = roster.by_id(registrant_id)
            if target is None:
                return []
            if target.kind is RegistrantKind.GUEST:
                return [target]
            return [
                e
                for e in roster.entries
                if e.id == target.id or (e.kind is RegistrantKind.GUEST and e.owner_user_id == target.owner_user_id)
            ]

        return await self._remove(session_id, select, enforce_window=enforce_window, op="cancel")

    async def remove(self, session_id: str, registrant_ids: Iterable[str], *, enforce_window: bool = False) -> Removal:
        """Remove exactly the given registrants (no guest cascade) and renumber."""
        wanted = set(registrant_ids)

        def select(roster: Roster) -> list[Registrant]:
            return [e for e in roster.entries if e.id in wanted]

        return await self._remove(session_id, select, enforce_window=enforce_window, op="remove")

    async def _remove(
        self,
        session_id: str,
        select: Callable[[Roster], list[Registrant]],
        *,
        enforce_window: bool,
        op: str,
    ) -> Removal:
        for attempt in range(self._cas_max_attempts):
            session = await self._session(session_id)
            if enforce_window:
                self._check_window(session)
            roster = await self._roster(session_id)
            removed = select(roster)
            if not removed:
                raise NotRegistered()
            removed_ids = {r.id for r in removed}
            remaining, moved = recompact_entries(e for e in roster.entries if e.id not in removed_ids)
            updated = roster.model_copy(update={"entries": remaining})
            if await self._store.compare_and_set(Roster.collection, session_id, roster.version, to_document(updated)):
                log.info(
                    "roster_remove",
                    session_id=session_id,
                    op=op,
                    removed=[r.display_name for r in removed],
                    moved=moved,
                    remaining=len(remaining),
                )
                return Removal(
                    removed=sorted(removed, key=lambda r: r.position),
                    remaining=remaining,
                    capacity=session.capacity,
                    moved=moved,
                )
            log.debug("roster_write_conflict", session_id=session_id, op=op, attempt=attempt + 1)

        log.warning("roster_write_exhausted", session_id=session_id, op=op)
        raise RosterWriteFailed(details={"session_id": session_id, "operation": op})

    async def recompact(self, session_id: str) -> int:
        """Renumber to 1..N. Returns the number of moved entries; writes nothing when none moved."""
        for attempt in range(self._cas_max_attempts):
            roster = await self._roster(session_id)
            renumbered, moved = recompact_entries(roster.entries)
            if moved == 0:
                return 0
            updated = roster.model_copy(update={"entries": renumbered})
            if await self._store.compare_and_set(Roster.collection, session_id, roster.version, to_document(updated)):
                log.info("roster_recompact", session_id=session_id, moved=moved)
                return moved
            log.debug("roster_write_conflict", session_id=session_id, op="recompact", attempt=attempt + 1)
        raise RosterWriteFailed(details={"session_id": session_id, "operation": "recompact"})

    async def mark_paid(self, session_id: str, registrant_id: str, amount: int) -> Registrant:
        """Flag an entry as paid and record the amount charged for it."""
        for attempt in range(self._cas_max_attempts):
            roster = await self._roster(session_id)
            entry = roster.by_id(registrant_id)
            if entry is None:
                raise NotRegistered()
            if entry.paid:
                return entry
            entry = entry.model_copy(update={"paid": True, "amount_paid": amount})
            entries = [entry if e.id == registrant_id else e for e in roster.entries]
            updated = roster.model_copy(update={"entries": entries})
            if await self._store.compare_and_set(Roster.collection, session_id, roster.version, to_document(updated)):
                return entry
            log.debug("roster_write_conflict", session_id=session_id, op="mark_paid", attempt=attempt + 1)
        raise RosterWriteFailed(details={"session_id": session_id, "operation": "mark_paid"})
