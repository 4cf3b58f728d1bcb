from datetime import date, datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from badminton_signup.core.audit import list_events, log_event
from badminton_signup.deps import require_admin, require_staff
from badminton_signup.models.archive import SessionArchive
from badminton_signup.models.session import Session
from badminton_signup.models.user import Role, User
from badminton_signup.routers.auth import user_out
from badminton_signup.routers.session import cancellation_out, registrant_out, registration_out, session_out
from badminton_signup.services import reports
from badminton_signup.services.container import Services, get_services

router = APIRouter()


class ConfigureRequest(BaseModel):
    capacity: int | None = Field(default=None, ge=1)
    fee: int | None = Field(default=None, ge=0)
    scheduled_start: datetime | None = None
    lock_window_minutes: int | None = Field(default=None, ge=0)
    label: str | None = Field(default=None, max_length=120)
    equipment_units_used: int | None = Field(default=None, ge=0)


class MaintenanceRequest(BaseModel):
    enabled: bool


class AddPlayerRequest(BaseModel):
    user_id: str
    charge: bool = True


class RemovePlayerRequest(BaseModel):
    registrant_id: str
    refund: bool = True


class AdjustBalanceRequest(BaseModel):
    amount: int  # positive = deposit, negative = correction
    note: str | None = Field(default=None, max_length=200)


class CreateUserRequest(BaseModel):
    display_name: str = Field(min_length=1, max_length=64)
    password: str | None = Field(default=None, min_length=4, max_length=72)
    role: Role = Role.PLAYER


class RoleRequest(BaseModel):
    role: Role


class RegularsRequest(BaseModel):
    user_ids: list[str]


def archive_out(a: SessionArchive, with_registrants: bool = False) -> dict:
    out = a.model_dump(mode="json", exclude={"registrants", "version"})
    if with_registrants:
        out["registrants"] = [registrant_out(r, a.capacity) for r in a.registrants]
    return out


# -- session lifecycle ------------------------------------------------------


async def _session_view(services: Services, session: Session) -> dict:
    return session_out(
        session,
        await services.roster.entries(session.id),
        maintenance=await services.lifecycle.maintenance(),
        locked=services.lifecycle.is_locked(session),
    )


@router.get("/session")
async def admin_session(user: User = Depends(require_staff), services: Services = Depends(get_services)):
    return await _session_view(services, await services.lifecycle.current())


@router.patch("/session")
async def admin_configure(
    body: ConfigureRequest,
    user: User = Depends(require_staff),
    services: Services = Depends(get_services),
):
    """Edit the current session (capacity, fee, start time, lock window, equipment used)."""
    session = await services.lifecycle.current()
    updated = await services.lifecycle.configure(session.id, **body.model_dump(exclude_none=True))
    return await _session_view(services, updated)


@router.post("/session/publish")
async def admin_publish(user: User = Depends(require_staff), services: Services = Depends(get_services)):
    """Charge active unpaid players and open the session. Players who cannot pay stay unpaid."""
    report = await services.lifecycle.publish()
    await log_event(services.store, user.id, "session_published", "session", report.session_id)
    return {
        "session_id": report.session_id,
        "charged": len(report.charged),
        "total_collected": report.total_collected,
        "failures": [
            {
                "registrant_id": f.registrant_id,
                "display_name": f.display_name,
                "reason": f.reason,
                "balance": f.balance,
            }
            for f in report.failures
        ],
    }


@router.post("/session/close")
async def admin_close(user: User = Depends(require_staff), services: Services = Depends(get_services)):
    """Archive the current session and start a new Draft."""
    result = await services.lifecycle.close()
    return {"archive": archive_out(result.archive), "next_session_id": result.next_session.id}


@router.post("/session/reset")
async def admin_reset(user: User = Depends(require_admin), services: Services = Depends(get_services)):
    session = await services.lifecycle.reset()
    await log_event(services.store, user.id, "session_reset", "session", session.id)
    return {"session_id": session.id}


@router.post("/maintenance")
async def admin_maintenance(
    body: MaintenanceRequest,
    user: User = Depends(require_staff),
    services: Services = Depends(get_services),
):
    enabled = await services.lifecycle.set_maintenance(body.enabled)
    await log_event(services.store, user.id, "maintenance_set", "flag", "maintenance", {"enabled": enabled})
    return {"maintenance": enabled}


# -- roster -----------------------------------------------------------------


@router.post("/session/players")
async def admin_add_player(
    body: AddPlayerRequest,
    user: User = Depends(require_staff),
    services: Services = Depends(get_services),
):
    """Add a player; ignores lock and maintenance."""
    result = await services.coordinator.admin_add(None, body.user_id, charge=body.charge)
    session = await services.lifecycle.current()
    await log_event(services.store, user.id, "player_added", "registrant", result.registrant.id, {"user_id": body.user_id})
    return registration_out(result, session.capacity)


@router.post("/session/players/remove")
async def admin_remove_player(
    body: RemovePlayerRequest,
    user: User = Depends(require_staff),
    services: Services = Depends(get_services),
):
    result = await services.coordinator.admin_remove(None, body.registrant_id, refund=body.refund)
    await log_event(services.store, user.id, "player_removed", "registrant", body.registrant_id, {"refund": body.refund})
    return cancellation_out(result)


@router.post("/session/waitlist/refund")
async def admin_refund_waitlist(user: User = Depends(require_staff), services: Services = Depends(get_services)):
    result = await services.lifecycle.refund_waitlist()
    await log_event(services.store, user.id, "waitlist_refunded", "session", result.session_id, {"refunded": result.refunded})
    return {"removed": [r.display_name for r in result.removed], "refunded": result.refunded}


@router.post("/session/regulars/load")
async def admin_load_regulars(user: User = Depends(require_staff), services: Services = Depends(get_services)):
    placements = await services.lifecycle.load_regulars()
    return {"added": [p.registrant.display_name for p in placements]}


@router.get("/regulars/{weekday}")
async def admin_get_regulars(weekday: int, user: User = Depends(require_staff), services: Services = Depends(get_services)):
    regulars = await services.regulars.get(weekday)
    return {"weekday": weekday, "user_ids": regulars.user_ids}


@router.put("/regulars/{weekday}")
async def admin_set_regulars(
    weekday: int,
    body: RegularsRequest,
    user: User = Depends(require_staff),
    services: Services = Depends(get_services),
):
    regulars = await services.regulars.set(weekday, body.user_ids)
    return {"weekday": weekday, "user_ids": regulars.user_ids}


# -- wallets and users ------------------------------------------------------


@router.post("/users/{user_id}/balance")
async def admin_adjust_balance(
    user_id: str,
    body: AdjustBalanceRequest,
    user: User = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Deposit (positive) or correct (negative, may go below zero)."""
    result = await services.coordinator.adjust_balance(user_id, body.amount, note=body.note)
    await log_event(services.store, user.id, "balance_adjusted", "user", user_id, {"amount": body.amount})
    return {"balance": result.balance_after, "transaction_id": result.op_id}


@router.get("/users/{user_id}/audit")
async def admin_ledger_audit(user_id: str, user: User = Depends(require_admin), services: Services = Depends(get_services)):
    """Compare the cached balance with the transaction log."""
    repaired = await services.ledger.repair(user_id)
    audit = await services.ledger.audit(user_id)
    return {
        "user_id": user_id,
        "balance": audit.balance,
        "ledger_total": audit.ledger_total,
        "drift": audit.drift,
        "consistent": audit.consistent,
        "repaired": repaired,
    }


@router.get("/users")
async def admin_list_users(
    user: User = Depends(require_staff),
    services: Services = Depends(get_services),
    active_only: bool = Query(True),
):
    users = await services.users.list_users(active_only=active_only)
    return {"users": [user_out(u) for u in users]}


@router.post("/users")
async def admin_create_user(
    body: CreateUserRequest,
    user: User = Depends(require_admin),
    services: Services = Depends(get_services),
):
    created = await services.users.create(body.display_name, body.password, body.role)
    return user_out(created)


@router.post("/users/{user_id}/deactivate")
async def admin_deactivate_user(user_id: str, user: User = Depends(require_admin), services: Services = Depends(get_services)):
    return user_out(await services.users.deactivate(user_id))


@router.post("/users/{user_id}/role")
async def admin_set_role(
    user_id: str,
    body: RoleRequest,
    user: User = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return user_out(await services.users.set_role(user_id, body.role))


# -- history and reports ----------------------------------------------------


@router.get("/archives")
async def admin_archives(
    user: User = Depends(require_staff),
    services: Services = Depends(get_services),
    limit: int = Query(20, ge=1, le=200),
):
    archives = await services.lifecycle.archives(limit)
    return {"archives": [archive_out(a) for a in archives]}


@router.get("/archives/{key}")
async def admin_archive(key: str, user: User = Depends(require_staff), services: Services = Depends(get_services)):
    return archive_out(await services.lifecycle.get_archive(key), with_registrants=True)


@router.get("/reports/weekly")
async def admin_weekly_report(
    week_start: date,
    user: User = Depends(require_staff),
    services: Services = Depends(get_services),
):
    report = await reports.weekly_report(services.store, services.settings, week_start)
    return report.model_dump(mode="json")


@router.get("/audit")
async def admin_audit_log(
    user: User = Depends(require_admin),
    services: Services = Depends(get_services),
    event_type: str | None = None,
    limit: int = Query(100, ge=1, le=500),
):
    events = await list_events(services.store, event_type)
    return {"events": [e.model_dump(mode="json") for e in events[:limit]]}
