"""RosterManager: dense positions, derived classification, cascade cancel, recompaction."""

import asyncio
from datetime import timedelta

import pytest

from badminton_signup.core.exceptions import AlreadyRegistered, NotRegistered, RosterWriteFailed, SessionNotOpen
from badminton_signup.models.registrant import Classification, Registrant, RegistrantKind, Roster
from badminton_signup.services import roster as roster_module

pytestmark = pytest.mark.asyncio


def entry(session_id: str, name: str, owner: str | None = None, kind: RegistrantKind = RegistrantKind.SELF) -> Registrant:
    return Registrant(session_id=session_id, owner_user_id=owner or name, display_name=name, kind=kind)


@pytest.fixture
def roster(services):
    return services.roster


async def draft(services, capacity: int = 2):
    session = await services.lifecycle.current()
    return await services.lifecycle.configure(session.id, capacity=capacity)


async def test_register_assigns_next_position_and_classification(services, roster, checks):
    session = await draft(services, capacity=2)
    placements = [await roster.register(session.id, entry(session.id, name)) for name in ("A", "B", "C")]

    assert [p.position for p in placements] == [1, 2, 3]
    assert [p.classification for p in placements] == [
        Classification.ACTIVE,
        Classification.ACTIVE,
        Classification.WAITLISTED,
    ]
    assert [e.display_name for e in await roster.waitlisted(session.id)] == ["C"]
    await checks.positions_dense(session.id)


async def test_duplicate_display_name_is_rejected(services, roster):
    session = await draft(services)
    await roster.register(session.id, entry(session.id, "A"))
    with pytest.raises(AlreadyRegistered):
        await roster.register(session.id, entry(session.id, "A", owner="someone-else"))
    assert len(await roster.entries(session.id)) == 1


async def test_register_with_same_registrant_id_is_idempotent(services, roster):
    session = await draft(services)
    registrant = entry(session.id, "A")
    first = await roster.register(session.id, registrant)
    again = await roster.register(session.id, registrant)
    assert again.registrant.id == first.registrant.id
    assert len(await roster.entries(session.id)) == 1


async def test_cancel_promotes_waitlisted_by_renumbering(services, roster, checks):
    session = await draft(services, capacity=2)
    ids = {}
    for name in ("A", "B", "C"):
        ids[name] = (await roster.register(session.id, entry(session.id, name))).registrant.id

    removal = await roster.cancel(session.id, ids["A"])

    entries = await roster.entries(session.id)
    assert [(e.display_name, e.position) for e in entries] == [("B", 1), ("C", 2)]
    assert all(e.classification(session.capacity) is Classification.ACTIVE for e in entries)
    assert removal.freed_active_slot
    assert removal.moved == 2
    await checks.positions_dense(session.id)


async def test_cancel_self_removes_owned_guests_in_one_write(services, store, roster, checks):
    session = await draft(services, capacity=3)
    host = await roster.register(session.id, entry(session.id, "host", owner="u1"))
    await roster.register(session.id, entry(session.id, "other", owner="u2"))
    await roster.register(session.id, entry(session.id, "host/g1", owner="u1", kind=RegistrantKind.GUEST))
    await roster.register(session.id, entry(session.id, "host/g2", owner="u1", kind=RegistrantKind.GUEST))
    writes_before = store.writes(Roster.collection)

    removal = await roster.cancel(session.id, host.registrant.id)

    assert sorted(r.display_name for r in removal.removed) == ["host", "host/g1", "host/g2"]
    assert [(e.display_name, e.position) for e in await roster.entries(session.id)] == [("other", 1)]
    assert store.writes(Roster.collection) == writes_before + 1
    await checks.positions_dense(session.id)


async def test_cancel_guest_leaves_host(services, roster):
    session = await draft(services)
    await roster.register(session.id, entry(session.id, "host", owner="u1"))
    guest = await roster.register(session.id, entry(session.id, "host/g1", owner="u1", kind=RegistrantKind.GUEST))
    await roster.cancel(session.id, guest.registrant.id)
    assert [e.display_name for e in await roster.entries(session.id)] == ["host"]


async def test_cancel_unknown_registrant(services, roster):
    session = await draft(services)
    with pytest.raises(NotRegistered):
        await roster.cancel(session.id, "missing")


async def test_cancel_renumbers_once_per_batch(services, roster, monkeypatch):
    session = await draft(services, capacity=4)
    host = await roster.register(session.id, entry(session.id, "host", owner="u1"))
    for name in ("host/g1", "host/g2"):
        await roster.register(session.id, entry(session.id, name, owner="u1", kind=RegistrantKind.GUEST))
    await roster.register(session.id, entry(session.id, "late", owner="u2"))

    calls = []
    original = roster_module.recompact_entries

    def spy(entries):
        result = original(entries)
        calls.append(result[1])
        return result

    monkeypatch.setattr(roster_module, "recompact_entries", spy)
    await roster.cancel(session.id, host.registrant.id)

    assert calls == [1]  # "late" moved from 4 to 1 in a single pass


async def test_recompact_is_idempotent(services, store, roster, checks):
    session = await draft(services, capacity=4)
    for name in ("A", "B", "C"):
        await roster.register(session.id, entry(session.id, name))
    # open gaps as left by an interrupted writer
    doc = await store.get(Roster.collection, session.id)
    for e, position in zip(doc["entries"], (2, 5, 9)):
        e["position"] = position
    assert await store.compare_and_set(Roster.collection, session.id, doc["version"], doc)

    assert await roster.recompact(session.id) == 3
    await checks.positions_dense(session.id)
    writes = store.writes(Roster.collection)
    assert await roster.recompact(session.id) == 0
    assert store.writes(Roster.collection) == writes
    assert [e.display_name for e in await roster.entries(session.id)] == ["A", "B", "C"]


async def test_concurrent_registrations_get_distinct_positions(services, roster, checks):
    session = await draft(services, capacity=3)
    await asyncio.gather(*(roster.register(session.id, entry(session.id, f"p{i}")) for i in range(6)))

    await checks.positions_dense(session.id)
    assert len(await roster.active(session.id)) == 3
    assert len(await roster.waitlisted(session.id)) == 3


async def test_concurrent_cancellations_keep_positions_dense(services, roster, checks):
    session = await draft(services, capacity=2)
    ids = [(await roster.register(session.id, entry(session.id, f"p{i}"))).registrant.id for i in range(6)]

    await asyncio.gather(roster.cancel(session.id, ids[0]), roster.cancel(session.id, ids[3]))

    await checks.positions_dense(session.id)
    assert [e.display_name for e in await roster.entries(session.id)] == ["p1", "p2", "p4", "p5"]


async def test_register_blocked_when_locked_unless_admin(services, roster, open_session, clock):
    session = await open_session(capacity=2, starts_in=timedelta(hours=1))  # inside the 2h window
    with pytest.raises(SessionNotOpen) as exc_info:
        await roster.register(session.id, entry(session.id, "A"))
    assert exc_info.value.reason == "locked"

    placement = await roster.register(session.id, entry(session.id, "A"), enforce_window=False)
    assert placement.position == 1


async def test_write_contention_exhaustion(services, store, roster, settings):
    session = await draft(services)
    store.fail("compare_and_set", Roster.collection, None, times=settings.cas_max_attempts)
    with pytest.raises(RosterWriteFailed):
        await roster.register(session.id, entry(session.id, "A"))
    assert await roster.entries(session.id) == []


async def test_mark_paid(services, roster):
    session = await draft(services)
    placement = await roster.register(session.id, entry(session.id, "A"))
    updated = await roster.mark_paid(session.id, placement.registrant.id, 120)
    assert (updated.paid, updated.amount_paid) == (True, 120)
    # already paid: the recorded amount is kept
    assert (await roster.mark_paid(session.id, placement.registrant.id, 80)).amount_paid == 120
    assert (await roster.get(session.id, placement.registrant.id)).paid
    with pytest.raises(NotRegistered):
        await roster.mark_paid(session.id, "missing", 100)
