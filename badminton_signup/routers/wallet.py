from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from badminton_signup.deps import get_current_user
from badminton_signup.models.transaction import Transaction
from badminton_signup.models.user import User
from badminton_signup.services.container import Services, get_services

router = APIRouter()


class GiftRequest(BaseModel):
    to_user_id: str
    amount: int | None = Field(default=None, gt=0)


def transaction_out(t: Transaction) -> dict:
    return {
        "id": t.id,
        "amount": t.amount,
        "balance_after": t.balance_after,
        "reason": t.reason.value,
        "session_id": t.session_id,
        "note": t.note,
        "created_at": t.created_at.isoformat(),
    }


@router.get("/balance")
async def wallet_balance(user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    """Return current wallet balance."""
    return {"balance": await services.ledger.balance(user.id)}


@router.get("/transactions")
async def wallet_transactions(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return transactions for current user (newest first)."""
    entries = await services.ledger.transactions(user.id, limit=limit, offset=offset)
    return {"entries": [transaction_out(t) for t in entries], "limit": limit, "offset": offset}


@router.get("/gift/candidates")
async def wallet_gift_candidates(user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    """Players whose balance is low enough to receive a gift."""
    threshold = services.settings.low_balance_threshold
    users = await services.users.low_balance(threshold, exclude=user.id)
    return {
        "candidates": [{"id": u.id, "display_name": u.display_name, "balance": u.balance} for u in users],
        "gift_amount": services.settings.gift_amount,
    }


@router.post("/gift")
async def wallet_gift(
    body: GiftRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    result = await services.coordinator.gift_transfer(user.id, body.to_user_id, body.amount)
    return {
        "amount": -result.debit.transaction.amount if result.debit.transaction else 0,
        "balance": result.debit.balance_after,
        "recipient_balance": result.credit.balance_after,
    }
