"""SessionLifecycle: draft/publish/close, settlement, archives, waitlist refund, regulars."""

from datetime import date, timedelta

import pytest

from badminton_signup.core.exceptions import BadRequestError, InvalidTransition, RosterWriteFailed
from badminton_signup.models.registrant import Roster
from badminton_signup.models.session import SessionStatus
from badminton_signup.models.transaction import Reason
from badminton_signup.services.notifications import SessionPublished
from badminton_signup.storage.base import StoreTimeout

pytestmark = pytest.mark.asyncio


async def test_current_creates_one_draft(services, settings):
    first = await services.lifecycle.current()
    again = await services.lifecycle.current()

    assert first.id == again.id
    assert first.status is SessionStatus.DRAFT
    assert (first.capacity, first.fee) == (settings.default_capacity, settings.default_fee)
    assert await services.roster.entries(first.id) == []


async def test_reset_replaces_empty_draft_but_refuses_with_registrants(services, make_user):
    first = await services.lifecycle.current()
    second = await services.lifecycle.reset()
    assert second.id != first.id
    assert (await services.lifecycle.current()).id == second.id

    user = await make_user("A", balance=500)
    await services.coordinator.admin_add(None, user.id)
    with pytest.raises(InvalidTransition):
        await services.lifecycle.reset()
    assert (await services.lifecycle.current()).id == second.id


async def test_configure_validates_input(services):
    session = await services.lifecycle.current()
    updated = await services.lifecycle.configure(session.id, capacity=8, fee=120, label="Friday")
    assert (updated.capacity, updated.fee, updated.label) == (8, 120, "Friday")

    with pytest.raises(BadRequestError):
        await services.lifecycle.configure(session.id, capacity=0)
    with pytest.raises(BadRequestError):
        await services.lifecycle.configure(session.id, fee=-1)


async def test_publish_settles_active_unpaid_players(services, make_user, notifier, checks):
    session = await services.lifecycle.current()
    await services.lifecycle.configure(session.id, capacity=2, fee=100)
    a = await make_user("A", balance=500)
    b = await make_user("B", balance=50)
    c = await make_user("C", balance=500)
    for user in (a, b, c):
        await services.coordinator.admin_add(None, user.id)

    report = await services.lifecycle.publish()

    assert len(report.charged) == 1
    assert report.total_collected == 100
    assert [(f.display_name, f.reason, f.balance) for f in report.failures] == [("B", "insufficient_funds", 50)]
    assert not report.complete
    # nobody is removed, waitlisted players are not charged
    entries = await services.roster.entries(session.id)
    assert [(e.display_name, e.paid) for e in entries] == [("A", True), ("B", False), ("C", False)]
    assert await services.ledger.balance(a.id) == 400
    assert await services.ledger.balance(c.id) == 500
    assert [t.reason for t in await checks.transactions(a.id)] == [Reason.DEPOSIT, Reason.SESSION_SETTLEMENT]

    published = await services.lifecycle.get(session.id)
    assert published.status is SessionStatus.PUBLISHED
    [event] = notifier.of_kind(SessionPublished)
    assert (event.available_slots, event.waitlist_count, event.capacity) == (0, 1, 2)


async def test_publish_settlement_timeout_is_verified(services, store, make_user):
    session = await services.lifecycle.current()
    landed = await make_user("landed", balance=500)
    lost = await make_user("lost", balance=500)
    await services.coordinator.admin_add(None, landed.id)
    await services.coordinator.admin_add(None, lost.id)
    store.fail("compare_and_set", "users", StoreTimeout("slow"), doc_id=landed.id, after=True)
    store.fail("compare_and_set", "users", StoreTimeout("slow"), doc_id=lost.id)

    report = await services.lifecycle.publish(session.id)

    assert [f.display_name for f in report.failures] == ["lost"]
    assert [f.reason for f in report.failures] == ["timeout"]
    assert await services.ledger.balance(landed.id) == 400
    assert await services.ledger.balance(lost.id) == 500
    assert (await services.roster.find_self(session.id, landed.id)).paid


async def test_publish_twice_is_rejected(services, open_session):
    await open_session()
    with pytest.raises(InvalidTransition):
        await services.lifecycle.publish()


async def test_close_archives_and_opens_next_draft(services, make_user, clock):
    session = await services.lifecycle.current()
    await services.lifecycle.configure(
        session.id, capacity=2, fee=100, scheduled_start=clock() + timedelta(hours=24), equipment_units_used=2
    )
    await services.lifecycle.publish()
    for name in ("A", "B", "C"):
        await services.coordinator.register_self(None, (await make_user(name, balance=500)).id)

    result = await services.lifecycle.close()

    archive = result.archive
    assert archive.id == "2026-03-07"
    assert archive.session_date == date(2026, 3, 7)
    assert (archive.active_count, archive.paid_active_count, archive.waitlist_count) == (2, 2, 1)
    assert archive.courts == 1
    assert (archive.income, archive.court_cost, archive.equipment_cost) == (200, 220, 170)
    assert (archive.expense, archive.profit) == (390, -190)
    assert [r.display_name for r in archive.registrants] == ["A", "B", "C"]

    closed = await services.lifecycle.get(session.id)
    assert closed.status is SessionStatus.CLOSED
    current = await services.lifecycle.current()
    assert current.id == result.next_session.id
    assert current.status is SessionStatus.DRAFT
    assert await services.roster.entries(current.id) == []


async def test_closed_session_is_read_only(services, open_session):
    session = await open_session()
    await services.lifecycle.close()

    with pytest.raises(InvalidTransition, match="already closed"):
        await services.lifecycle.close(session.id)
    with pytest.raises(InvalidTransition):
        await services.lifecycle.configure(session.id, capacity=10)
    # the fresh draft cannot be closed before it is published
    with pytest.raises(InvalidTransition):
        await services.lifecycle.close()


async def test_second_session_on_same_date_gets_suffixed_archive(services, open_session, clock):
    await open_session()
    first = await services.lifecycle.close()

    clock.advance(hours=1)
    session = await services.lifecycle.current()
    await services.lifecycle.configure(session.id, scheduled_start=clock() + timedelta(hours=24))
    await services.lifecycle.publish()
    second = await services.lifecycle.close()

    assert (first.archive.id, second.archive.id) == ("2026-03-07", "2026-03-07-2")
    assert [a.id for a in await services.lifecycle.archives()] == ["2026-03-07-2", "2026-03-07"]
    assert (await services.lifecycle.get_archive("2026-03-07")).session_id == first.archive.session_id


async def test_empty_session_books_no_courts(services, open_session):
    await open_session()
    archive = (await services.lifecycle.close()).archive
    assert (archive.courts, archive.court_cost, archive.profit) == (0, 0, 0)


async def test_maintenance_flag(services):
    assert not await services.lifecycle.maintenance()
    await services.lifecycle.set_maintenance(True)
    assert await services.lifecycle.maintenance()
    await services.lifecycle.set_maintenance(False)
    assert not await services.lifecycle.maintenance()


async def test_refund_waitlist(services, make_user, open_session, checks):
    session = await open_session(capacity=2, fee=100)
    users = [await make_user(n, balance=500) for n in ("A", "B", "C", "D")]
    for user in users:
        await services.coordinator.register_self(None, user.id)

    result = await services.lifecycle.refund_waitlist()

    assert [r.display_name for r in result.removed] == ["C", "D"]
    assert result.refunded == 200
    assert [e.display_name for e in await services.roster.entries(session.id)] == ["A", "B"]
    for user in users[2:]:
        assert await services.ledger.balance(user.id) == 500
        assert (await checks.transactions(user.id))[-1].reason is Reason.WAITLIST_REFUND
    # nothing left to refund
    assert (await services.lifecycle.refund_waitlist()).removed == []


async def test_fee_change_does_not_alter_refunds_or_income(services, make_user, open_session):
    session = await open_session(capacity=2, fee=100)
    a, b, c = [await make_user(n, balance=500) for n in ("A", "B", "C")]
    for user in (a, b):
        await services.coordinator.register_self(None, user.id)
    await services.lifecycle.configure(session.id, fee=150)
    await services.coordinator.register_self(None, c.id)

    result = await services.lifecycle.refund_waitlist()

    assert result.refunded == 150
    assert await services.ledger.balance(c.id) == 500
    archive = (await services.lifecycle.close()).archive
    assert (archive.fee, archive.income) == (150, 200)


async def test_refund_waitlist_takes_credits_back_when_removal_fails(services, store, make_user, open_session, settings, checks):
    session = await open_session(capacity=1, fee=100)
    users = [await make_user(n, balance=500) for n in ("A", "B")]
    for user in users:
        await services.coordinator.register_self(None, user.id)
    store.fail("compare_and_set", Roster.collection, None, times=settings.cas_max_attempts)

    with pytest.raises(RosterWriteFailed):
        await services.lifecycle.refund_waitlist()

    assert len(await services.roster.entries(session.id)) == 2
    assert await services.ledger.balance(users[1].id) == 400
    await checks.ledger_consistent(users[1].id)


async def test_load_regulars_for_session_weekday(services, make_user, clock):
    session = await services.lifecycle.current()
    with pytest.raises(BadRequestError):
        await services.lifecycle.load_regulars()

    start = clock() + timedelta(hours=24)
    await services.lifecycle.configure(session.id, scheduled_start=start)
    a = await make_user("A", balance=500)
    b = await make_user("B", balance=500)
    gone = await make_user("gone", balance=500)
    await services.users.deactivate(gone.id)
    await services.regulars.set(start.weekday(), [a.id, b.id, a.id, gone.id, "missing"])

    placements = await services.lifecycle.load_regulars()

    assert [p.registrant.display_name for p in placements] == ["A", "B"]
    assert not any(p.registrant.paid for p in placements)
    assert await services.lifecycle.load_regulars() == []

    report = await services.lifecycle.publish()
    assert len(report.charged) == 2


async def test_regulars_per_weekday(services):
    saved = await services.regulars.set(2, ["u1", "u2", "u1"])
    assert saved.user_ids == ["u1", "u2"]
    assert (await services.regulars.get(2)).user_ids == ["u1", "u2"]
    assert (await services.regulars.get(3)).user_ids == []

    await services.regulars.set(2, ["u3"])
    assert (await services.regulars.get(2)).user_ids == ["u3"]
    with pytest.raises(BadRequestError):
        await services.regulars.get(7)
