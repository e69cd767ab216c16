from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query

from app.deps import get_current_account_id, get_ledger, require_cron_secret
from app.services.credits import Balance, CreditLedger

router = APIRouter()


def balance_out(balance: Balance) -> dict:
    return {"credits_remaining": balance.current, "max_credits": balance.max}


@router.get("")
async def credits_balance(
    account_id: int = Depends(get_current_account_id),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Return current credit balance (provisions the default grant on first read)."""
    return balance_out(await ledger.get_balance(account_id))


@router.post("/use")
async def credits_use(
    account_id: int = Depends(get_current_account_id),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Consume one credit; returns the balance after the deduction."""
    return balance_out(await ledger.consume(account_id, 1))


@router.get("/history")
async def credits_history(
    account_id: int = Depends(get_current_account_id),
    ledger: CreditLedger = Depends(get_ledger),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return consumption records for current account (newest first)."""
    records = await ledger.recent_consumptions(account_id, limit=limit, offset=offset)
    out = [
        {
            "id": r.id,
            "amount": r.amount,
            "balance_before": r.balance_before,
            "balance_after": r.balance_after,
            "created_at": r.created_at.isoformat(),
        }
        for r in records
    ]
    return {"entries": out, "limit": limit, "offset": offset}


@router.post("/reset", dependencies=[Depends(require_cron_secret)])
async def credits_reset(ledger: CreditLedger = Depends(get_ledger)):
    """Scheduled job: restore every balance to its max."""
    count = await ledger.reset_all()
    return {
        "success": True,
        "reset_count": count,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
