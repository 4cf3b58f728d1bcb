import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-memory store, log notifications
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("NOTIFICATION_BACKEND", "log")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")

from badminton_signup.core.config import Settings  # noqa: E402
from badminton_signup.models.transaction import Reason, Transaction  # noqa: E402
from badminton_signup.models.user import Role, User  # noqa: E402
from badminton_signup.services.container import Services, build_services  # noqa: E402
from badminton_signup.services.notifications import RecordingNotificationGateway  # noqa: E402
from badminton_signup.storage.base import Document, DocumentStore  # noqa: E402
from badminton_signup.storage.memory import MemoryDocumentStore  # noqa: E402

# Friday 2026-03-06 08:00 UTC
START = datetime(2026, 3, 6, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@dataclass
class Fault:
    method: str
    collection: str
    exc: BaseException | None  # None = report a CAS version conflict
    doc_id: str | None = None
    after: bool = False  # apply the call, then raise
    skip: int = 0  # let this many matching calls through first


class FlakyStore(DocumentStore):
    """Memory store with scripted failures, for compensation and timeout paths."""

    def __init__(self, backend: DocumentStore) -> None:
        self.backend = backend
        self.faults: list[Fault] = []
        self.calls: list[tuple[str, str, str | None]] = []

    def fail(
        self,
        method: str,
        collection: str,
        exc: BaseException | None = None,
        *,
        doc_id: str | None = None,
        after: bool = False,
        times: int = 1,
        skip: int = 0,
    ) -> None:
        for _ in range(times):
            self.faults.append(Fault(method, collection, exc, doc_id, after, skip))

    def writes(self, collection: str) -> int:
        return sum(1 for m, c, _ in self.calls if c == collection and m in ("insert", "compare_and_set", "delete"))

    def _take_fault(self, method: str, collection: str, doc_id: str | None) -> Fault | None:
        for fault in self.faults:
            if fault.method != method or fault.collection != collection:
                continue
            if fault.doc_id is not None and fault.doc_id != doc_id:
                continue
            if fault.skip:
                fault.skip -= 1
                return None
            self.faults.remove(fault)
            return fault
        return None

    async def _run(self, method: str, collection: str, doc_id: str | None, call) -> Any:
        self.calls.append((method, collection, doc_id))
        fault = self._take_fault(method, collection, doc_id)
        if fault is not None and not fault.after:
            if fault.exc is None:
                return False
            raise fault.exc
        result = await call()
        if fault is not None:
            raise fault.exc
        return result

    async def get(self, collection: str, doc_id: str) -> Document | None:
        return await self._run("get", collection, doc_id, lambda: self.backend.get(collection, doc_id))

    async def find(self, collection: str, **equals: Any) -> list[Document]:
        return await self._run("find", collection, None, lambda: self.backend.find(collection, **equals))

    async def insert(self, collection: str, doc: Document) -> None:
        return await self._run("insert", collection, doc.get("id"), lambda: self.backend.insert(collection, doc))

    async def compare_and_set(self, collection: str, doc_id: str, expected_version: int, doc: Document) -> bool:
        return await self._run(
            "compare_and_set",
            collection,
            doc_id,
            lambda: self.backend.compare_and_set(collection, doc_id, expected_version, doc),
        )

    async def delete(self, collection: str, doc_id: str) -> bool:
        return await self._run("delete", collection, doc_id, lambda: self.backend.delete(collection, doc_id))


class Checks:
    """Invariant assertions shared by the test modules."""

    def __init__(self, services: Services) -> None:
        self.services = services

    async def positions_dense(self, session_id: str) -> None:
        entries = await self.services.roster.entries(session_id)
        assert sorted(e.position for e in entries) == list(range(1, len(entries) + 1))

    async def ledger_consistent(self, user_id: str) -> None:
        audit = await self.services.ledger.audit(user_id)
        assert audit.consistent, f"balance {audit.balance} != ledger total {audit.ledger_total}"

    async def transactions(self, user_id: str) -> list[Transaction]:
        return list(reversed(await self.services.ledger.transactions(user_id)))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        secret_key="test-secret-key-min-32-characters-long",
        minimum_balance=10,
        low_balance_threshold=10,
        gift_amount=100,
        default_capacity=2,
        default_fee=100,
        lock_window_minutes=120,
        players_per_court=6,
        court_rate=220,
        equipment_unit_rate=85,
        report_base_price=150,
        report_weeks_to_distribute=4,
        cas_max_attempts=8,
    )


@pytest.fixture
def store() -> FlakyStore:
    return FlakyStore(MemoryDocumentStore())


@pytest.fixture
def notifier() -> RecordingNotificationGateway:
    return RecordingNotificationGateway()


@pytest.fixture
def services(store, settings, notifier, clock) -> Services:
    return build_services(store, settings, notifier, clock)


@pytest.fixture
def checks(services) -> Checks:
    return Checks(services)


@pytest.fixture
def make_user(services):
    async def _make(name: str, balance: int = 0, role: Role = Role.PLAYER, password: str | None = None) -> User:
        user = await services.users.create(name, password, role)
        if balance:
            await services.ledger.credit(user.id, balance, Reason.DEPOSIT, note="opening balance")
        return await services.users.get(user.id)

    return _make


@pytest.fixture
def open_session(services, clock):
    """Configure the current Draft and publish it. Starts a day after `clock`."""

    async def _open(capacity: int = 2, fee: int = 100, starts_in: timedelta = timedelta(hours=24)):
        session = await services.lifecycle.current()
        await services.lifecycle.configure(
            session.id, capacity=capacity, fee=fee, scheduled_start=clock() + starts_in
        )
        await services.lifecycle.publish(session.id)
        return await services.lifecycle.get(session.id)

    return _open


@pytest_asyncio.fixture
async def client(services) -> AsyncGenerator[AsyncClient, None]:
    from badminton_signup.main import app
    from badminton_signup.services.container import get_services

    app.dependency_overrides[get_services] = lambda: services
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
