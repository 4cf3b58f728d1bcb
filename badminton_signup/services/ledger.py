"""
Wallet ledger: per-user balance plus an append-only transaction log.

- `balance` on the user document is a cache of sum(transactions.amount).
- A debit/credit is one optimistic write on the user document (new balance and
  the operation appended to `recent_transactions`), then the Transaction insert.
  The embedded copy lets `verify` repair a missing log record after a crash or
  timeout between the two writes.
- No idempotency key: the same debit submitted twice is two transactions.
- `transfer` is debit then credit with a compensating credit on failure. It is
  not atomic across the two users.
"""

from dataclasses import dataclass
from enum import Enum

from badminton_signup.core.audit import record_unreconciled
from badminton_signup.core.clock import Clock, utcnow
from badminton_signup.core.exceptions import AppError, BadRequestError, InsufficientFunds, NotFoundError, Unreconciled
from badminton_signup.core.logging import get_logger
from badminton_signup.models.common import new_id, to_document
from badminton_signup.models.transaction import Reason, Transaction
from badminton_signup.models.user import User
from badminton_signup.storage.base import DocumentStore, DuplicateKeyError, StoreError, StoreTimeout

log = get_logger(__name__)

RECENT_TRANSACTIONS_LIMIT = 100


class LedgerOutcome(str, Enum):
    APPLIED = "applied"
    NOT_APPLIED = "not_applied"


@dataclass
class LedgerResult:
    op_id: str
    balance_after: int
    transaction: Transaction | None = None  # None for zero-amount operations


@dataclass
class TransferResult:
    debit: LedgerResult
    credit: LedgerResult


@dataclass
class LedgerAudit:
    user_id: str
    balance: int
    ledger_total: int

    @property
    def drift(self) -> int:
        return self.balance - self.ledger_total

    @property
    def consistent(self) -> bool:
        return self.drift == 0


class WalletLedger:
    def __init__(
        self,
        store: DocumentStore,
        *,
        minimum_balance: int = 10,
        cas_max_attempts: int = 8,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self.minimum_balance = minimum_balance
        self._cas_max_attempts = cas_max_attempts
        self._clock = clock

    async def _get_user(self, user_id: str) -> User:
        doc = await self._store.get(User.collection, user_id)
        if doc is None:
            raise NotFoundError("User not found")
        return User.model_validate(doc)

    async def balance(self, user_id: str) -> int:
        return (await self._get_user(user_id)).balance

    async def transactions(self, user_id: str, limit: int | None = None, offset: int = 0) -> list[Transaction]:
        """Transactions for user, newest first."""
        docs = await self._store.find(Transaction.collection, user_id=user_id)
        # Stable sort over reversed insertion order: on equal timestamps the latest insert comes first.
        txns = sorted(
            (Transaction.model_validate(d) for d in reversed(docs)), key=lambda t: t.created_at, reverse=True
        )
        if limit is None:
            return txns[offset:]
        return txns[offset : offset + limit]

    async def debit(
        self,
        user_id: str,
        amount: int,
        reason: Reason,
        *,
        session_id: str | None = None,
        note: str | None = None,
        admin_correction: bool = False,
        op_id: str | None = None,
    ) -> LedgerResult:
        """
        Take `amount` from the user's wallet.

        Fails with InsufficientFunds if the balance would drop below the minimum,
        unless `admin_correction` is set, which allows negative balances.
        """
        if amount < 0:
            raise BadRequestError("Debit amount must not be negative")
        return await self._apply(
            user_id,
            -amount,
            reason,
            session_id=session_id,
            note=note,
            enforce_minimum=not admin_correction,
            op_id=op_id,
        )

    async def credit(
        self,
        user_id: str,
        amount: int,
        reason: Reason,
        *,
        session_id: str | None = None,
        note: str | None = None,
        op_id: str | None = None,
    ) -> LedgerResult:
        if amount < 0:
            raise BadRequestError("Credit amount must not be negative")
        return await self._apply(user_id, amount, reason, session_id=session_id, note=note, op_id=op_id)

    async def transfer(
        self,
        from_user_id: str,
        to_user_id: str,
        amount: int,
        reason: Reason,
        *,
        note: str | None = None,
    ) -> TransferResult:
        debit = await self.debit(from_user_id, amount, reason, note=note)
        credit_op_id = new_id()
        try:
            credit = await self.credit(to_user_id, amount, reason, note=note, op_id=credit_op_id)
        except (AppError, StoreError, StoreTimeout) as exc:
            log.warning("transfer_credit_failed", from_user_id=from_user_id, to_user_id=to_user_id, amount=amount)
            if isinstance(exc, StoreTimeout) and await self.verify(to_user_id, credit_op_id) is LedgerOutcome.APPLIED:
                credit = LedgerResult(op_id=credit_op_id, balance_after=await self.balance(to_user_id))
                return TransferResult(debit=debit, credit=credit)
            await self.compensate(
                from_user_id, amount, Reason.ROLLBACK, note=f"rollback of {debit.op_id}", operation="transfer"
            )
            raise
        log.info("transfer", from_user_id=from_user_id, to_user_id=to_user_id, amount=amount, reason=reason.value)
        return TransferResult(debit=debit, credit=credit)

    async def compensate(
        self,
        user_id: str,
        amount: int,
        reason: Reason,
        *,
        note: str,
        operation: str,
        session_id: str | None = None,
        reverse_credit: bool = False,
    ) -> LedgerResult:
        """
        Undo an earlier entry with a new opposite one.

        Credits `amount` back, or with `reverse_credit` takes it back as an admin
        correction debit. If the compensating entry cannot be written the
        discrepancy is recorded for manual repair and Unreconciled is raised.
        """
        op_id = new_id()
        try:
            if reverse_credit:
                return await self.debit(
                    user_id, amount, reason, session_id=session_id, note=note, admin_correction=True, op_id=op_id
                )
            return await self.credit(user_id, amount, reason, session_id=session_id, note=note, op_id=op_id)
        except StoreTimeout as exc:
            if await self._verify_quietly(user_id, op_id) is LedgerOutcome.APPLIED:
                return LedgerResult(op_id=op_id, balance_after=await self.balance(user_id))
            error: BaseException = exc
        except (AppError, StoreError) as exc:
            if isinstance(exc, Unreconciled):
                raise
            error = exc
        await record_unreconciled(
            self._store,
            operation=f"{operation}_compensation",
            user_id=user_id,
            amount=-amount if reverse_credit else amount,
            op_id=op_id,
            session_id=session_id,
            error=error,
        )
        raise Unreconciled(
            f"Compensation for {operation} failed",
            details={"user_id": user_id, "amount": amount, "operation": operation, "op_id": op_id},
        ) from error

    async def _verify_quietly(self, user_id: str, op_id: str) -> LedgerOutcome:
        try:
            return await self.verify(user_id, op_id)
        except (AppError, StoreError, StoreTimeout):
            return LedgerOutcome.NOT_APPLIED

    async def verify(self, user_id: str, op_id: str | None) -> LedgerOutcome:
        """
        Re-check an operation whose outcome is unknown (timeout, crash).

        If the balance write landed but the transaction record did not, the record
        is written from the copy kept on the user document.
        """
        if op_id is None:
            return LedgerOutcome.NOT_APPLIED
        if await self._store.get(Transaction.collection, op_id) is not None:
            return LedgerOutcome.APPLIED
        user = await self._get_user(user_id)
        pending = next((t for t in user.recent_transactions if t.id == op_id), None)
        if pending is None:
            return LedgerOutcome.NOT_APPLIED
        await self._record(pending)
        log.warning("ledger_record_repaired", user_id=user_id, op_id=op_id, amount=pending.amount)
        return LedgerOutcome.APPLIED

    async def repair(self, user_id: str) -> int:
        """Write any missing transaction records for the user's recent operations."""
        user = await self._get_user(user_id)
        repaired = 0
        for txn in user.recent_transactions:
            if await self._store.get(Transaction.collection, txn.id) is None:
                await self._record(txn)
                repaired += 1
        if repaired:
            log.warning("ledger_records_repaired", user_id=user_id, count=repaired)
        return repaired

    async def audit(self, user_id: str) -> LedgerAudit:
        user = await self._get_user(user_id)
        docs = await self._store.find(Transaction.collection, user_id=user_id)
        return LedgerAudit(user_id=user_id, balance=user.balance, ledger_total=sum(d["amount"] for d in docs))

    async def _apply(
        self,
        user_id: str,
        delta: int,
        reason: Reason,
        *,
        session_id: str | None,
        note: str | None,
        enforce_minimum: bool = False,
        op_id: str | None = None,
    ) -> LedgerResult:
        op_id = op_id or new_id()
        if delta == 0:
            # Zero-amount operations are accepted but leave no record.
            return LedgerResult(op_id=op_id, balance_after=await self.balance(user_id))

        for attempt in range(self._cas_max_attempts):
            user = await self._get_user(user_id)
            already = next((t for t in user.recent_transactions if t.id == op_id), None)
            if already is not None:
                # An earlier attempt landed even though its reply was lost.
                txn = already
                break
            if enforce_minimum and delta < 0 and user.balance + delta < self.minimum_balance:
                raise InsufficientFunds(user.balance, -delta, self.minimum_balance)
            txn = Transaction(
                id=op_id,
                user_id=user_id,
                amount=delta,
                balance_after=user.balance + delta,
                reason=reason,
                session_id=session_id,
                note=note,
                created_at=self._clock(),
            )
            updated = user.model_copy(
                update={
                    "balance": txn.balance_after,
                    "recent_transactions": (user.recent_transactions + [txn])[-RECENT_TRANSACTIONS_LIMIT:],
                }
            )
            if await self._store.compare_and_set(User.collection, user_id, user.version, to_document(updated)):
                break
            log.debug("ledger_write_conflict", user_id=user_id, attempt=attempt + 1)
        else:
            await record_unreconciled(
                self._store, operation=f"ledger_{reason.value}", user_id=user_id, amount=delta, op_id=op_id
            )
            raise Unreconciled(
                "Ledger write retry budget exhausted",
                details={"user_id": user_id, "amount": delta, "op_id": op_id},
            )

        try:
            await self._record(txn)
        except (StoreError, StoreTimeout) as exc:
            # Balance moved but the log record is missing; `verify`/`repair` can rebuild it.
            await record_unreconciled(
                self._store, operation=f"ledger_{reason.value}", user_id=user_id, amount=delta, op_id=op_id, error=exc
            )
            raise Unreconciled(
                "Transaction record write failed",
                details={"user_id": user_id, "amount": delta, "op_id": op_id},
            ) from exc

        log.info(
            "ledger_entry",
            user_id=user_id,
            amount=delta,
            reason=reason.value,
            balance_after=txn.balance_after,
            session_id=session_id,
            op_id=op_id,
        )
        return LedgerResult(op_id=op_id, balance_after=txn.balance_after, transaction=txn)

    async def _record(self, txn: Transaction) -> None:
        try:
            await self._store.insert(Transaction.collection, to_document(txn))
        except DuplicateKeyError:
            # Already recorded by an earlier attempt.
            pass
