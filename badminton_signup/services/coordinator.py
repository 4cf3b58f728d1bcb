"""
Registration coordinator: keeps the wallet ledger and the roster in step.

The store has no transaction spanning a user document and a roster document, so
every paid roster change is a saga:

- register: debit, then roster append; a failed append is compensated with a
  refund credit.
- cancel: refund credits, then one roster removal; a failed removal is
  compensated by taking the refunds back.

A timeout means "unknown outcome": the ledger or roster is re-read before
deciding whether to compensate. A compensation that fails is recorded and raised
as Unreconciled.
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable

from badminton_signup.core.clock import Clock, utcnow
from badminton_signup.core.config import Settings
from badminton_signup.core.exceptions import (
    AlreadyRegistered,
    AppError,
    BadRequestError,
    InsufficientFunds,
    NotRegistered,
    RosterWriteFailed,
    SessionNotOpen,
    TransferNotAllowed,
)
from badminton_signup.core.logging import get_logger
from badminton_signup.models.common import new_id
from badminton_signup.models.registrant import Classification, Registrant, RegistrantKind, guest_display_name
from badminton_signup.models.session import Session, SessionStatus
from badminton_signup.models.transaction import Reason
from badminton_signup.services.ledger import LedgerOutcome, LedgerResult, TransferResult, WalletLedger
from badminton_signup.services.lifecycle import SessionLifecycle
from badminton_signup.services.notifications import (
    LoggingNotificationGateway,
    LowBalance,
    NotificationGateway,
    PlayerCancelled,
    notify_safely,
)
from badminton_signup.services.roster import Placement, Removal, RosterManager
from badminton_signup.services.users import UserDirectory
from badminton_signup.storage.base import StoreError, StoreTimeout

log = get_logger(__name__)


@dataclass
class RegistrationResult:
    registrant: Registrant
    classification: Classification
    balance_after: int
    charged: int

    @property
    def position(self) -> int:
        return self.registrant.position


@dataclass
class CancellationResult:
    removed: list[Registrant]
    refunded: int
    balance_after: int | None = None
    slot_freed: bool = False
    refunds: list[LedgerResult] = field(default_factory=list)


class RegistrationCoordinator:
    def __init__(
        self,
        ledger: WalletLedger,
        roster: RosterManager,
        lifecycle: SessionLifecycle,
        users: UserDirectory,
        *,
        settings: Settings,
        notifier: NotificationGateway | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._ledger = ledger
        self._roster = roster
        self._lifecycle = lifecycle
        self._users = users
        self._settings = settings
        self._notifier = notifier or LoggingNotificationGateway()
        self._clock = clock

    async def _ensure_player_window(self, session_id: str | None) -> Session:
        """Maintenance first, then state and lock."""
        if await self._lifecycle.maintenance():
            raise SessionNotOpen("maintenance")
        session = await self._lifecycle.resolve(session_id)
        if session.status is not SessionStatus.PUBLISHED:
            raise SessionNotOpen(session.status.value)
        if session.is_locked(self._clock()):
            raise SessionNotOpen("locked")
        return session

    # -- registration -------------------------------------------------------

    async def register_self(self, session_id: str | None, user_id: str) -> RegistrationResult:
        session = await self._ensure_player_window(session_id)
        user = await self._users.get_active(user_id)
        if await self._roster.find_self(session.id, user_id) is not None:
            raise AlreadyRegistered(details={"display_name": user.display_name})
        registrant = Registrant(
            session_id=session.id,
            owner_user_id=user.id,
            display_name=user.display_name,
            kind=RegistrantKind.SELF,
            created_at=self._clock(),
        )
        return await self._charge_and_place(session, registrant, Reason.REGISTRATION, enforce_window=True)

    async def register_guest(self, session_id: str | None, host_user_id: str, guest_name: str) -> RegistrationResult:
        guest_name = guest_name.strip()
        if not guest_name:
            raise BadRequestError("Guest name is required")
        session = await self._ensure_player_window(session_id)
        host = await self._users.get_active(host_user_id)
        display_name = guest_display_name(host.display_name, guest_name)
        # RosterManager.register repeats this check for names added after this read.
        if any(e.display_name == display_name for e in await self._roster.entries(session.id)):
            raise AlreadyRegistered(details={"display_name": display_name})
        registrant = Registrant(
            session_id=session.id,
            owner_user_id=host.id,
            display_name=display_name,
            kind=RegistrantKind.GUEST,
            created_at=self._clock(),
        )
        return await self._charge_and_place(session, registrant, Reason.GUEST_REGISTRATION, enforce_window=True)

    async def _charge_and_place(
        self,
        session: Session,
        registrant: Registrant,
        reason: Reason,
        *,
        enforce_window: bool,
        charge: bool = True,
    ) -> RegistrationResult:
        """
        Debit the owner, then append to the roster.

        Debit first means nobody is ever on the roster without having paid. A
        failed append is followed by a refund credit.
        """
        owner_id = registrant.owner_user_id
        op_id = new_id()
        balance_after = None
        if charge:
            try:
                debit = await self._ledger.debit(
                    owner_id,
                    session.fee,
                    reason,
                    session_id=session.id,
                    note=f"{reason.value}: {registrant.display_name}",
                    op_id=op_id,
                )
                balance_after = debit.balance_after
            except StoreTimeout:
                if await self._ledger.verify(owner_id, op_id) is LedgerOutcome.NOT_APPLIED:
                    raise
                balance_after = await self._ledger.balance(owner_id)
            registrant = registrant.model_copy(update={"paid": True, "amount_paid": session.fee})

        try:
            placement = await self._roster.register(session.id, registrant, enforce_window=enforce_window)
        except StoreTimeout as exc:
            placed = await self._roster.get(session.id, registrant.id)
            if placed is None:
                await self._refund_failed(session, registrant, charge, exc)
                raise RosterWriteFailed(details={"session_id": session.id}) from exc
            placement = Placement(placed, placed.classification(session.capacity))
        except (AlreadyRegistered, SessionNotOpen) as exc:
            await self._refund_failed(session, registrant, charge, exc)
            raise
        except (RosterWriteFailed, StoreError) as exc:
            await self._refund_failed(session, registrant, charge, exc)
            if isinstance(exc, RosterWriteFailed):
                raise
            raise RosterWriteFailed(details={"session_id": session.id}) from exc

        if balance_after is None:
            balance_after = await self._ledger.balance(owner_id)
        log.info(
            "registered",
            session_id=session.id,
            user_id=owner_id,
            display_name=placement.registrant.display_name,
            position=placement.position,
            classification=placement.classification.value,
            paid=placement.registrant.paid,
        )
        if charge:
            await self._warn_low_balance(owner_id, balance_after)
        return RegistrationResult(
            registrant=placement.registrant,
            classification=placement.classification,
            balance_after=balance_after,
            charged=placement.registrant.amount_paid,
        )

    async def _refund_failed(self, session: Session, registrant: Registrant, charged: bool, cause: Exception) -> None:
        if not charged:
            return
        log.warning(
            "registration_compensation",
            session_id=session.id,
            user_id=registrant.owner_user_id,
            amount=registrant.amount_paid,
            error=type(cause).__name__,
        )
        await self._ledger.compensate(
            registrant.owner_user_id,
            registrant.amount_paid,
            Reason.REFUND,
            note="refund: failed registration",
            operation="registration",
            session_id=session.id,
        )

    async def _warn_low_balance(self, user_id: str, balance: int) -> None:
        if balance < self._settings.low_balance_threshold:
            await notify_safely(self._notifier, LowBalance(user_id=user_id, balance=balance))

    # -- cancellation -------------------------------------------------------

    async def cancel_self(self, session_id: str | None, user_id: str) -> CancellationResult:
        """Cancel the user's own entry and every guest they brought, with one refund per paid entry."""
        session = await self._ensure_player_window(session_id)
        own = await self._roster.find_self(session.id, user_id)
        if own is None:
            raise NotRegistered()
        owned = await self._roster.find_by_owner(session.id, user_id)
        return await self._refund_and_remove(
            session,
            targets=owned,
            remove=lambda: self._roster.cancel(session.id, own.id, enforce_window=True),
            reason=Reason.REFUND,
            notify_name=own.display_name,
        )

    async def cancel_guest(self, session_id: str | None, host_user_id: str, guest_name: str) -> CancellationResult:
        session = await self._ensure_player_window(session_id)
        host = await self._users.get(host_user_id)
        wanted = guest_display_name(host.display_name, guest_name.strip())
        guest = next(
            (
                e
                for e in await self._roster.find_by_owner(session.id, host_user_id)
                if e.kind is RegistrantKind.GUEST and e.display_name == wanted
            ),
            None,
        )
        if guest is None:
            raise NotRegistered("Guest not registered")
        return await self._refund_and_remove(
            session,
            targets=[guest],
            remove=lambda: self._roster.cancel(session.id, guest.id, enforce_window=True),
            reason=Reason.REFUND,
            notify_name=guest.display_name,
        )

    async def _refund_and_remove(
        self,
        session: Session,
        *,
        targets: list[Registrant],
        remove: Callable[[], Awaitable[Removal]],
        reason: Reason,
        notify_name: str,
        refund: bool = True,
    ) -> CancellationResult:
        """
        Credit each paid target, then apply the roster removal once.

        If the removal fails the credits are taken back, so the roster and the
        wallets stay as they were.
        """
        refunds: list[tuple[Registrant, LedgerResult]] = []
        try:
            if refund:
                for target in targets:
                    if target.paid:
                        refunds.append((target, await self._credit(session, target, reason)))
        except (AppError, StoreError, StoreTimeout) as exc:
            await self._take_back(session, refunds, type(exc).__name__)
            raise

        target_ids = {t.id for t in targets}
        try:
            removal = await remove()
        except StoreTimeout as exc:
            remaining = {e.id for e in await self._roster.entries(session.id)}
            if target_ids & remaining:
                await self._take_back(session, refunds, "StoreTimeout")
                raise RosterWriteFailed(details={"session_id": session.id}) from exc
            removal = Removal(removed=targets, capacity=session.capacity)
        except (AppError, StoreError) as exc:
            await self._take_back(session, refunds, type(exc).__name__)
            if isinstance(exc, StoreError):
                raise RosterWriteFailed(details={"session_id": session.id}) from exc
            raise

        removed_ids = {r.id for r in removal.removed}
        # Entries removed by a concurrent call were refunded by that call.
        stale = [(t, r) for t, r in refunds if t.id not in removed_ids]
        if stale:
            await self._take_back(session, stale, "removed_concurrently")
            refunds = [(t, r) for t, r in refunds if t.id in removed_ids]
        # Guests added after our read were removed by the cascade and still need their refund.
        for extra in removal.removed:
            if refund and extra.paid and extra.id not in target_ids:
                refunds.append((extra, await self._credit(session, extra, reason)))

        refunded = sum(result.transaction.amount for _, result in refunds if result.transaction is not None)
        balance_after = refunds[-1][1].balance_after if refunds else None
        remaining_count = len(await self._roster.entries(session.id))
        slot_freed = any(r.position <= session.capacity for r in removal.removed) and remaining_count < session.capacity
        log.info(
            "cancelled",
            session_id=session.id,
            removed=[r.display_name for r in removal.removed],
            refunded=refunded,
            slot_freed=slot_freed,
        )
        await notify_safely(self._notifier, PlayerCancelled(session_id=session.id, name=notify_name, slot_freed=slot_freed))
        return CancellationResult(
            removed=removal.removed,
            refunded=refunded,
            balance_after=balance_after,
            slot_freed=slot_freed,
            refunds=[result for _, result in refunds],
        )

    async def _credit(self, session: Session, target: Registrant, reason: Reason) -> LedgerResult:
        op_id = new_id()
        try:
            return await self._ledger.credit(
                target.owner_user_id,
                target.amount_paid,
                reason,
                session_id=session.id,
                note=f"refund: {target.display_name}",
                op_id=op_id,
            )
        except StoreTimeout:
            if await self._ledger.verify(target.owner_user_id, op_id) is LedgerOutcome.NOT_APPLIED:
                raise
            return LedgerResult(op_id=op_id, balance_after=await self._ledger.balance(target.owner_user_id))

    async def _take_back(self, session: Session, refunds: list[tuple[Registrant, LedgerResult]], cause: str) -> None:
        for target, _ in refunds:
            log.warning(
                "cancellation_compensation",
                session_id=session.id,
                user_id=target.owner_user_id,
                amount=target.amount_paid,
                cause=cause,
            )
            await self._ledger.compensate(
                target.owner_user_id,
                target.amount_paid,
                Reason.CORRECTION,
                note="reversal: cancellation not applied",
                operation="cancellation",
                session_id=session.id,
                reverse_credit=True,
            )

    # -- wallet policy ------------------------------------------------------

    async def gift_transfer(self, from_user_id: str, to_user_id: str, amount: int | None = None) -> TransferResult:
        """
        Send money to a player who is running low.

        Allowed only to a recipient strictly below the low-balance threshold, and
        only if the sender stays at or above the minimum balance.
        """
        amount = self._settings.gift_amount if amount is None else amount
        if amount <= 0:
            raise BadRequestError("Gift amount must be positive")
        if from_user_id == to_user_id:
            raise TransferNotAllowed("Cannot gift to yourself")
        sender = await self._users.get_active(from_user_id)
        recipient = await self._users.get_active(to_user_id)
        if recipient.balance >= self._settings.low_balance_threshold:
            raise TransferNotAllowed("Recipient balance is not low")
        if sender.balance - amount < self._settings.minimum_balance:
            raise InsufficientFunds(sender.balance, amount, self._settings.minimum_balance)
        result = await self._ledger.transfer(
            from_user_id, to_user_id, amount, Reason.GIFT, note=f"gift {sender.display_name} -> {recipient.display_name}"
        )
        log.info("gift_transfer", from_user_id=from_user_id, to_user_id=to_user_id, amount=amount)
        await self._warn_low_balance(from_user_id, result.debit.balance_after)
        return result

    # -- admin operations (ignore maintenance and lock) ----------------------

    async def admin_add(self, session_id: str | None, user_id: str, charge: bool = True) -> RegistrationResult:
        """
        Add a player on the admin's behalf.

        Charged now when `charge` is set and the session is Published; otherwise
        added unpaid and settled by `publish`.
        """
        session = await self._lifecycle.resolve(session_id)
        if session.status is SessionStatus.CLOSED:
            raise SessionNotOpen("closed")
        user = await self._users.get_active(user_id)
        if await self._roster.find_self(session.id, user_id) is not None:
            raise AlreadyRegistered(details={"display_name": user.display_name})
        registrant = Registrant(
            session_id=session.id,
            owner_user_id=user.id,
            display_name=user.display_name,
            kind=RegistrantKind.SELF,
            created_at=self._clock(),
        )
        charge_now = charge and session.status is SessionStatus.PUBLISHED
        return await self._charge_and_place(
            session, registrant, Reason.REGISTRATION, enforce_window=False, charge=charge_now
        )

    async def admin_remove(self, session_id: str | None, registrant_id: str, refund: bool = True) -> CancellationResult:
        """Remove one entry (no guest cascade); the owner is refunded when the entry was paid."""
        session = await self._lifecycle.resolve(session_id)
        if session.status is SessionStatus.CLOSED:
            raise SessionNotOpen("closed")
        target = await self._roster.get(session.id, registrant_id)
        if target is None:
            raise NotRegistered()
        return await self._refund_and_remove(
            session,
            targets=[target],
            remove=lambda: self._roster.remove(session.id, [registrant_id], enforce_window=False),
            reason=Reason.ADMIN_REMOVAL,
            notify_name=target.display_name,
            refund=refund,
        )

    async def adjust_balance(self, user_id: str, amount: int, note: str | None = None) -> LedgerResult:
        """Positive amounts are deposits; negative amounts are corrections and may go below zero."""
        if amount == 0:
            raise BadRequestError("Amount must not be zero")
        await self._users.get(user_id)
        if amount > 0:
            result = await self._ledger.credit(user_id, amount, Reason.DEPOSIT, note=note)
        else:
            result = await self._ledger.debit(user_id, -amount, Reason.CORRECTION, note=note, admin_correction=True)
        log.info("balance_adjusted", user_id=user_id, amount=amount, balance_after=result.balance_after)
        return result
