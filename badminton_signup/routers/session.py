from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from badminton_signup.deps import get_current_user
from badminton_signup.models.registrant import Registrant
from badminton_signup.models.session import Session
from badminton_signup.models.user import User
from badminton_signup.services.container import Services, get_services
from badminton_signup.services.coordinator import CancellationResult, RegistrationResult

router = APIRouter()


class GuestRequest(BaseModel):
    guest_name: str = Field(min_length=1, max_length=64)


def registrant_out(entry: Registrant, capacity: int) -> dict:
    return {
        "id": entry.id,
        "display_name": entry.display_name,
        "kind": entry.kind.value,
        "owner_user_id": entry.owner_user_id,
        "position": entry.position,
        "classification": entry.classification(capacity).value,
        "paid": entry.paid,
        "amount_paid": entry.amount_paid,
    }


def session_out(session: Session, entries: list[Registrant], *, maintenance: bool, locked: bool) -> dict:
    active = [e for e in entries if e.position <= session.capacity]
    return {
        "id": session.id,
        "status": session.status.value,
        "locked": locked,
        "maintenance": maintenance,
        "label": session.label,
        "capacity": session.capacity,
        "fee": session.fee,
        "scheduled_start": session.scheduled_start.isoformat() if session.scheduled_start else None,
        "lock_time": session.lock_time.isoformat() if session.lock_time else None,
        "equipment_units_used": session.equipment_units_used,
        "active_count": len(active),
        "waitlist_count": len(entries) - len(active),
        "available_slots": max(session.capacity - len(entries), 0),
        "registrants": [registrant_out(e, session.capacity) for e in entries],
    }


def registration_out(result: RegistrationResult, capacity: int) -> dict:
    return {
        "registrant": registrant_out(result.registrant, capacity),
        "classification": result.classification.value,
        "charged": result.charged,
        "balance": result.balance_after,
    }


def cancellation_out(result: CancellationResult) -> dict:
    return {
        "removed": [r.display_name for r in result.removed],
        "refunded": result.refunded,
        "balance": result.balance_after,
        "slot_freed": result.slot_freed,
    }


@router.get("")
async def session_current(user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    """Current session with its ordered roster."""
    session = await services.lifecycle.current()
    entries = await services.roster.entries(session.id)
    out = session_out(
        session,
        entries,
        maintenance=await services.lifecycle.maintenance(),
        locked=services.lifecycle.is_locked(session),
    )
    out["me"] = [registrant_out(e, session.capacity) for e in entries if e.owner_user_id == user.id]
    return out


@router.post("/register")
async def session_register(user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    result = await services.coordinator.register_self(None, user.id)
    session = await services.lifecycle.current()
    return registration_out(result, session.capacity)


@router.post("/guests")
async def session_register_guest(
    body: GuestRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Register a guest paid from the host's wallet."""
    result = await services.coordinator.register_guest(None, user.id, body.guest_name)
    session = await services.lifecycle.current()
    return registration_out(result, session.capacity)


@router.post("/cancel")
async def session_cancel(user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    """Cancel own registration and every guest brought by the user."""
    result = await services.coordinator.cancel_self(None, user.id)
    return cancellation_out(result)


@router.post("/guests/cancel")
async def session_cancel_guest(
    body: GuestRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    result = await services.coordinator.cancel_guest(None, user.id, body.guest_name)
    return cancellation_out(result)
