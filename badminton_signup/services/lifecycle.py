"""
Session lifecycle: Draft -> Published -> Closed, plus the current-session pointer.

Exactly one session is "current". `close()` archives it and swaps the pointer to a
fresh Draft; the closed session is never mutated again. Locked is derived from
the clock and never stored. The maintenance flag is separate from the lifecycle
and only gates player operations.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime

from badminton_signup.core.audit import log_event
from badminton_signup.core.clock import Clock, utcnow
from badminton_signup.core.config import Settings
from badminton_signup.core.exceptions import (
    AlreadyRegistered,
    BadRequestError,
    ConflictError,
    InsufficientFunds,
    InvalidTransition,
    NotFoundError,
    NotRegistered,
    RosterWriteFailed,
)
from badminton_signup.core.logging import get_logger
from badminton_signup.models.archive import SessionArchive
from badminton_signup.models.common import new_id, to_document
from badminton_signup.models.registrant import Registrant, RegistrantKind
from badminton_signup.models.session import CurrentSessionHandle, MaintenanceFlag, Session, SessionStatus
from badminton_signup.models.transaction import Reason
from badminton_signup.services.ledger import LedgerOutcome, WalletLedger
from badminton_signup.services.notifications import (
    LoggingNotificationGateway,
    NotificationGateway,
    SessionPublished,
    notify_safely,
)
from badminton_signup.services.regulars import RegularRoster
from badminton_signup.services.roster import Placement, RosterManager
from badminton_signup.services.users import UserDirectory
from badminton_signup.storage.base import DocumentStore, DuplicateKeyError, StoreError, StoreTimeout

log = get_logger(__name__)


@dataclass
class SettlementFailure:
    registrant_id: str
    user_id: str
    display_name: str
    reason: str  # insufficient_funds, user_not_found, timeout, removed
    balance: int | None = None


@dataclass
class SettlementReport:
    session_id: str
    charged: list[str] = field(default_factory=list)  # registrant ids
    failures: list[SettlementFailure] = field(default_factory=list)
    total_collected: int = 0

    @property
    def complete(self) -> bool:
        return not self.failures


@dataclass
class CloseResult:
    archive: SessionArchive
    next_session: Session


@dataclass
class WaitlistRefund:
    session_id: str
    removed: list[Registrant] = field(default_factory=list)
    refunded: int = 0


class SessionLifecycle:
    def __init__(
        self,
        store: DocumentStore,
        ledger: WalletLedger,
        roster: RosterManager,
        *,
        settings: Settings,
        users: UserDirectory | None = None,
        regulars: RegularRoster | None = None,
        notifier: NotificationGateway | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._roster = roster
        self._settings = settings
        self._users = users or UserDirectory(store)
        self._regulars = regulars or RegularRoster(store)
        self._notifier = notifier or LoggingNotificationGateway()
        self._clock = clock
        self._cas_max_attempts = settings.cas_max_attempts

    # -- reads --------------------------------------------------------------

    async def get(self, session_id: str) -> Session:
        doc = await self._store.get(Session.collection, session_id)
        if doc is None:
            raise NotFoundError("Session not found")
        return Session.model_validate(doc)

    async def current(self) -> Session:
        """The current session; the first call on an empty store creates a Draft."""
        pointer = await self._pointer()
        if pointer is None:
            return await self.reset()
        return await self.get(pointer.session_id)

    async def resolve(self, session_id: str | None) -> Session:
        return await self.get(session_id) if session_id else await self.current()

    def is_locked(self, session: Session, now: datetime | None = None) -> bool:
        return session.is_locked(now or self._clock())

    async def _pointer(self) -> CurrentSessionHandle | None:
        doc = await self._store.get(CurrentSessionHandle.collection, "current")
        return CurrentSessionHandle.model_validate(doc) if doc else None

    # -- pointer / fresh drafts --------------------------------------------

    async def _new_draft(self) -> Session:
        session = Session(
            capacity=self._settings.default_capacity,
            fee=self._settings.default_fee,
            lock_window_minutes=self._settings.lock_window_minutes,
            created_at=self._clock(),
        )
        await self._store.insert(Session.collection, to_document(session))
        await self._roster.create(session.id)
        return session

    async def _swap_pointer(self, expected_session_id: str | None, new_session_id: str) -> None:
        for _ in range(self._cas_max_attempts):
            pointer = await self._pointer()
            if pointer is None:
                try:
                    handle = CurrentSessionHandle(session_id=new_session_id)
                    await self._store.insert(CurrentSessionHandle.collection, to_document(handle))
                    return
                except DuplicateKeyError:
                    continue
            if expected_session_id is not None and pointer.session_id != expected_session_id:
                raise InvalidTransition(
                    "Current session changed concurrently",
                    details={"expected": expected_session_id, "current": pointer.session_id},
                )
            updated = pointer.model_copy(update={"session_id": new_session_id})
            if await self._store.compare_and_set(
                CurrentSessionHandle.collection, "current", pointer.version, to_document(updated)
            ):
                return
        raise ConflictError("Could not update the current session")

    async def reset(self) -> Session:
        """
        Replace the current session with a fresh Draft.

        Refused while the current session is not Closed and still has
        registrants; those must be removed (or the session closed) first.
        """
        pointer = await self._pointer()
        expected = None
        if pointer is not None:
            expected = pointer.session_id
            doc = await self._store.get(Session.collection, pointer.session_id)
            if doc is not None:
                current = Session.model_validate(doc)
                if current.status is not SessionStatus.CLOSED and await self._roster.entries(current.id):
                    raise InvalidTransition(
                        "Current session still has registrants",
                        details={"session_id": current.id, "status": current.status.value},
                    )
        session = await self._new_draft()
        await self._swap_pointer(expected, session.id)
        log.info("session_reset", session_id=session.id, replaced=expected)
        return session

    # -- configuration ------------------------------------------------------

    async def configure(
        self,
        session_id: str,
        *,
        capacity: int | None = None,
        fee: int | None = None,
        scheduled_start: datetime | None = None,
        lock_window_minutes: int | None = None,
        label: str | None = None,
        equipment_units_used: int | None = None,
    ) -> Session:
        """Admin edits. Lowering capacity only reclassifies by position; it never refunds."""
        changes = {
            k: v
            for k, v in {
                "capacity": capacity,
                "fee": fee,
                "scheduled_start": scheduled_start,
                "lock_window_minutes": lock_window_minutes,
                "label": label,
                "equipment_units_used": equipment_units_used,
            }.items()
            if v is not None
        }
        if capacity is not None and capacity < 1:
            raise BadRequestError("Capacity must be at least 1")
        for name in ("fee", "lock_window_minutes", "equipment_units_used"):
            if changes.get(name, 0) < 0:
                raise BadRequestError(f"{name} must not be negative")

        for _ in range(self._cas_max_attempts):
            session = await self.get(session_id)
            if session.status is SessionStatus.CLOSED:
                raise InvalidTransition("Closed sessions are read-only")
            updated = Session.model_validate({**session.model_dump(), **changes})
            if await self._store.compare_and_set(Session.collection, session_id, session.version, to_document(updated)):
                log.info("session_configured", session_id=session_id, **{k: str(v) for k, v in changes.items()})
                return await self.get(session_id)
        raise ConflictError("Session was modified concurrently, try again")

    async def _transition(self, session_id: str, from_status: SessionStatus, **changes) -> Session:
        for _ in range(self._cas_max_attempts):
            session = await self.get(session_id)
            if session.status is not from_status:
                raise InvalidTransition(
                    f"Session is {session.status.value}, expected {from_status.value}",
                    details={"session_id": session_id, "status": session.status.value},
                )
            updated = session.model_copy(update=changes)
            if await self._store.compare_and_set(Session.collection, session_id, session.version, to_document(updated)):
                return await self.get(session_id)
        raise ConflictError("Session was modified concurrently, try again")

    # -- publish ------------------------------------------------------------

    async def publish(self, session_id: str | None = None) -> SettlementReport:
        """
        Settle active unpaid registrants, then open the session.

        A registrant who cannot pay stays active and unpaid and is listed in the
        report; publishing never removes anyone.
        """
        session = await self.resolve(session_id)
        if session.status is not SessionStatus.DRAFT:
            raise InvalidTransition(
                f"Cannot publish a {session.status.value} session",
                details={"session_id": session.id, "status": session.status.value},
            )

        report = SettlementReport(session_id=session.id)
        entries = await self._roster.entries(session.id)
        for entry in entries:
            if entry.position > session.capacity or entry.paid:
                continue
            await self._settle(session, entry, report)

        published = await self._transition(
            session.id,
            SessionStatus.DRAFT,
            status=SessionStatus.PUBLISHED,
            published_at=self._clock(),
        )
        log.info(
            "session_published",
            session_id=session.id,
            charged=len(report.charged),
            failures=len(report.failures),
            collected=report.total_collected,
        )
        count = len(await self._roster.entries(session.id))
        await notify_safely(
            self._notifier,
            SessionPublished(
                session_id=session.id,
                available_slots=max(published.capacity - count, 0),
                waitlist_count=max(count - published.capacity, 0),
                capacity=published.capacity,
                fee=published.fee,
                label=published.label,
            ),
        )
        return report

    async def _settle(self, session: Session, entry: Registrant, report: SettlementReport) -> None:
        failure = None
        op_id = new_id()
        try:
            await self._ledger.debit(
                entry.owner_user_id,
                session.fee,
                Reason.SESSION_SETTLEMENT,
                session_id=session.id,
                note=f"settlement: {entry.display_name}",
                op_id=op_id,
            )
        except InsufficientFunds as exc:
            failure = SettlementFailure(entry.id, entry.owner_user_id, entry.display_name, "insufficient_funds", exc.balance)
        except NotFoundError:
            failure = SettlementFailure(entry.id, entry.owner_user_id, entry.display_name, "user_not_found")
        except StoreTimeout:
            if await self._ledger.verify(entry.owner_user_id, op_id) is LedgerOutcome.NOT_APPLIED:
                failure = SettlementFailure(entry.id, entry.owner_user_id, entry.display_name, "timeout")
        if failure is not None:
            log.warning("settlement_failed", session_id=session.id, registrant_id=entry.id, reason=failure.reason)
            report.failures.append(failure)
            return

        try:
            await self._roster.mark_paid(session.id, entry.id, session.fee)
        except (NotRegistered, RosterWriteFailed, StoreError, StoreTimeout) as exc:
            if isinstance(exc, StoreTimeout):
                marked = await self._roster.get(session.id, entry.id)
                if marked is not None and marked.paid:
                    report.charged.append(entry.id)
                    report.total_collected += session.fee
                    return
            await self._ledger.compensate(
                entry.owner_user_id,
                session.fee,
                Reason.REFUND,
                note="refund: settlement not recorded",
                operation="settlement",
                session_id=session.id,
            )
            report.failures.append(SettlementFailure(entry.id, entry.owner_user_id, entry.display_name, "removed"))
            return
        report.charged.append(entry.id)
        report.total_collected += session.fee

    # -- close --------------------------------------------------------------

    async def close(self, session_id: str | None = None) -> CloseResult:
        session = await self.resolve(session_id)
        if session.status is SessionStatus.CLOSED:
            raise InvalidTransition("Session is already closed", details={"session_id": session.id})
        if session.status is not SessionStatus.PUBLISHED:
            raise InvalidTransition("Only a published session can be closed", details={"session_id": session.id})

        now = self._clock()
        entries = await self._roster.entries(session.id)
        archive = await self._write_archive(session, entries, now)
        await self._transition(session.id, SessionStatus.PUBLISHED, status=SessionStatus.CLOSED, closed_at=now)

        next_session = await self._new_draft()
        pointer = await self._pointer()
        if pointer is None or pointer.session_id == session.id:
            await self._swap_pointer(session.id if pointer else None, next_session.id)
        log.info(
            "session_closed",
            session_id=session.id,
            archive_id=archive.id,
            income=archive.income,
            expense=archive.expense,
            next_session_id=next_session.id,
        )
        await log_event(
            self._store, None, "session_closed", "session", session.id, {"archive_id": archive.id, "profit": archive.profit}
        )
        return CloseResult(archive=archive, next_session=next_session)

    def build_archive(self, session: Session, entries: list[Registrant], now: datetime, archive_id: str) -> SessionArchive:
        active = [e for e in entries if e.position <= session.capacity]
        paid_active = sum(1 for e in active if e.paid)
        courts = math.ceil(len(active) / self._settings.players_per_court) if active else 0
        court_cost = courts * self._settings.court_rate
        equipment_cost = session.equipment_units_used * self._settings.equipment_unit_rate
        income = sum(e.amount_paid for e in active if e.paid)
        expense = court_cost + equipment_cost
        return SessionArchive(
            id=archive_id,
            session_id=session.id,
            session_date=session.calendar_date(now),
            label=session.label,
            capacity=session.capacity,
            fee=session.fee,
            active_count=len(active),
            paid_active_count=paid_active,
            waitlist_count=len(entries) - len(active),
            courts=courts,
            equipment_units_used=session.equipment_units_used,
            income=income,
            court_cost=court_cost,
            equipment_cost=equipment_cost,
            expense=expense,
            profit=income - expense,
            registrants=entries,
            closed_at=now,
        )

    async def _write_archive(self, session: Session, entries: list[Registrant], now: datetime) -> SessionArchive:
        """Insert the archive under the calendar date; a second session on the same date gets a -2, -3 suffix."""
        base = session.calendar_date(now).isoformat()
        suffix = 1
        while True:
            key = base if suffix == 1 else f"{base}-{suffix}"
            existing = await self._store.get(SessionArchive.collection, key)
            if existing is not None:
                if existing["session_id"] == session.id:
                    # An earlier close attempt got this far.
                    return SessionArchive.model_validate(existing)
                suffix += 1
                continue
            archive = self.build_archive(session, entries, now, key)
            try:
                await self._store.insert(SessionArchive.collection, to_document(archive))
            except DuplicateKeyError:
                continue
            return archive

    async def archives(self, limit: int | None = None) -> list[SessionArchive]:
        docs = await self._store.find(SessionArchive.collection)
        archives = sorted(
            (SessionArchive.model_validate(d) for d in docs),
            key=lambda a: (a.session_date, a.closed_at),
            reverse=True,
        )
        return archives[:limit] if limit else archives

    async def get_archive(self, key: str) -> SessionArchive:
        doc = await self._store.get(SessionArchive.collection, key)
        if doc is None:
            raise NotFoundError("Archive not found")
        return SessionArchive.model_validate(doc)

    # -- maintenance --------------------------------------------------------

    async def maintenance(self) -> bool:
        doc = await self._store.get(MaintenanceFlag.collection, "maintenance")
        return bool(doc and doc.get("enabled"))

    async def set_maintenance(self, enabled: bool) -> bool:
        for _ in range(self._cas_max_attempts):
            doc = await self._store.get(MaintenanceFlag.collection, "maintenance")
            if doc is None:
                try:
                    await self._store.insert(MaintenanceFlag.collection, to_document(MaintenanceFlag(enabled=enabled)))
                    break
                except DuplicateKeyError:
                    continue
            flag = MaintenanceFlag.model_validate(doc)
            updated = flag.model_copy(update={"enabled": enabled})
            if await self._store.compare_and_set(MaintenanceFlag.collection, "maintenance", flag.version, to_document(updated)):
                break
        else:
            raise ConflictError("Could not update maintenance mode")
        log.info("maintenance_set", enabled=enabled)
        return enabled

    # -- admin batch operations --------------------------------------------

    async def refund_waitlist(self, session_id: str | None = None) -> WaitlistRefund:
        """Refund paid waitlisted registrants and remove every waitlisted entry in one roster write."""
        session = await self.resolve(session_id)
        if session.status is SessionStatus.CLOSED:
            raise InvalidTransition("Closed sessions are read-only")
        waitlisted = [e for e in await self._roster.entries(session.id) if e.position > session.capacity]
        result = WaitlistRefund(session_id=session.id)
        if not waitlisted:
            return result

        credited: list[Registrant] = []
        try:
            for entry in waitlisted:
                if not entry.paid:
                    continue
                await self._credit_verified(
                    entry.owner_user_id,
                    entry.amount_paid,
                    Reason.WAITLIST_REFUND,
                    session_id=session.id,
                    note=f"waitlist refund: {entry.display_name}",
                )
                credited.append(entry)
            removal = await self._roster.remove(session.id, [e.id for e in waitlisted])
        except (NotRegistered, RosterWriteFailed, StoreError, StoreTimeout):
            for entry in credited:
                await self._ledger.compensate(
                    entry.owner_user_id,
                    entry.amount_paid,
                    Reason.CORRECTION,
                    note="reversal: waitlist refund not applied",
                    operation="waitlist_refund",
                    session_id=session.id,
                    reverse_credit=True,
                )
            raise

        result.removed = removal.removed
        result.refunded = sum(e.amount_paid for e in credited)
        log.info("waitlist_refunded", session_id=session.id, removed=len(removal.removed), refunded=result.refunded)
        return result

    async def _credit_verified(self, user_id: str, amount: int, reason: Reason, **kwargs) -> None:
        op_id = new_id()
        try:
            await self._ledger.credit(user_id, amount, reason, op_id=op_id, **kwargs)
        except StoreTimeout:
            if await self._ledger.verify(user_id, op_id) is LedgerOutcome.NOT_APPLIED:
                raise

    async def load_regulars(self, session_id: str | None = None) -> list[Placement]:
        """Add the weekday's regular players as unpaid entries; `publish` settles them."""
        session = await self.resolve(session_id)
        if session.status is SessionStatus.CLOSED:
            raise InvalidTransition("Closed sessions are read-only")
        if session.scheduled_start is None:
            raise BadRequestError("Session has no scheduled start")
        regulars = await self._regulars.get(session.scheduled_start.weekday())
        placements = []
        for user_id in regulars.user_ids:
            user = await self._users.find(user_id)
            if user is None or not user.active:
                log.warning("regular_skipped", session_id=session.id, user_id=user_id)
                continue
            registrant = Registrant(
                session_id=session.id,
                owner_user_id=user.id,
                display_name=user.display_name,
                kind=RegistrantKind.SELF,
                created_at=self._clock(),
            )
            try:
                placements.append(await self._roster.register(session.id, registrant, enforce_window=False))
            except AlreadyRegistered:
                continue
        log.info("regulars_loaded", session_id=session.id, added=len(placements))
        return placements
