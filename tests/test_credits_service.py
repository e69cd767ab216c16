"""Credit ledger against a real SQLite database."""

import asyncio

import pytest
from sqlalchemy import func, select

from app.core.exceptions import (
    DatastoreUnavailableError,
    InsufficientCreditError,
    InvalidAccountError,
    InvalidAmountError,
)
from app.models.consumption_record import ConsumptionRecord
from app.models.credit_balance import CreditBalance
from app.services.credits import Balance, CreditLedger

pytestmark = pytest.mark.asyncio


async def _count(db, model, **where) -> int:
    async def op(session):
        stmt = select(func.count()).select_from(model)
        for key, value in where.items():
            stmt = stmt.where(getattr(model, key) == value)
        return await session.scalar(stmt)

    return await db.run(op)


async def _set_balance(db, account_id: int, current: int, max_credits: int | None = None) -> None:
    async def op(session):
        row = await session.scalar(select(CreditBalance).where(CreditBalance.account_id == account_id))
        row.credits_remaining = current
        if max_credits is not None:
            row.max_credits = max_credits

    await db.run(op)


async def test_end_to_end_scenario(ledger, make_account):
    account = await make_account()

    assert await ledger.get_balance(account.id) == Balance(current=3, max=3)
    assert await ledger.consume(account.id) == Balance(current=2, max=3)
    assert await ledger.consume(account.id) == Balance(current=1, max=3)
    assert await ledger.consume(account.id) == Balance(current=0, max=3)

    with pytest.raises(InsufficientCreditError) as exc_info:
        await ledger.consume(account.id)
    assert exc_info.value.status_code == 402
    assert exc_info.value.details == {"current": 0, "max": 3, "requested": 1}
    assert await ledger.get_balance(account.id) == Balance(current=0, max=3)

    await ledger.reset_all()
    assert await ledger.get_balance(account.id) == Balance(current=3, max=3)


async def test_consume_provisions_unseen_account(ledger, make_account, db):
    account = await make_account()
    assert await ledger.consume(account.id) == Balance(current=2, max=3)
    assert await _count(db, CreditBalance, account_id=account.id) == 1


async def test_no_double_spend_under_concurrency(ledger, make_account, db):
    account = await make_account()
    await ledger.get_balance(account.id)
    n = 3

    results = await asyncio.gather(
        *(ledger.consume(account.id) for _ in range(n + 1)),
        return_exceptions=True,
    )

    successes = [r for r in results if isinstance(r, Balance)]
    failures = [r for r in results if isinstance(r, InsufficientCreditError)]
    assert len(successes) == n
    assert len(failures) == 1
    assert sorted(b.current for b in successes) == [0, 1, 2]
    assert await ledger.get_balance(account.id) == Balance(current=0, max=3)


async def test_last_credit_has_exactly_one_winner(ledger, make_account):
    account = await make_account()
    await ledger.get_balance(account.id)
    await ledger.consume(account.id, 2)

    first, second = await asyncio.gather(
        ledger.consume(account.id),
        ledger.consume(account.id),
        return_exceptions=True,
    )
    outcomes = sorted(type(r).__name__ for r in (first, second))
    assert outcomes == ["Balance", "InsufficientCreditError"]
    assert (await ledger.get_balance(account.id)).current == 0


async def test_amount_above_balance_leaves_balance_unchanged(ledger, make_account):
    account = await make_account()
    await ledger.consume(account.id)

    with pytest.raises(InsufficientCreditError) as exc_info:
        await ledger.consume(account.id, 5)
    assert exc_info.value.current == 2
    assert exc_info.value.requested == 5
    assert await ledger.get_balance(account.id) == Balance(current=2, max=3)


async def test_consume_whole_balance_at_once(ledger, make_account):
    account = await make_account()
    assert await ledger.consume(account.id, 3) == Balance(current=0, max=3)


@pytest.mark.parametrize("amount", [0, -1, 1.5, "1", True])
async def test_invalid_amount_rejected(ledger, make_account, amount):
    account = await make_account()
    with pytest.raises(InvalidAmountError):
        await ledger.consume(account.id, amount)
    assert (await ledger.get_balance(account.id)).current == 3


@pytest.mark.parametrize("account_id", [0, -4, None, "12", 1.0, False])
async def test_invalid_account_rejected_before_datastore(db, account_id):
    # A disconnected database proves no query is attempted
    await db.dispose()
    ledger = CreditLedger(db)
    with pytest.raises(InvalidAccountError):
        await ledger.get_balance(account_id)
    with pytest.raises(InvalidAccountError):
        await ledger.consume(account_id)


async def test_unknown_account_is_invalid(ledger, db):
    with pytest.raises(InvalidAccountError):
        await ledger.get_balance(9999)
    assert await _count(db, CreditBalance) == 0


async def test_provisioning_is_idempotent_under_concurrency(ledger, make_account, db):
    account = await make_account()

    balances = await asyncio.gather(*(ledger.get_balance(account.id) for _ in range(10)))

    assert set(balances) == {Balance(current=3, max=3)}
    assert await _count(db, CreditBalance, account_id=account.id) == 1


async def test_read_your_write_after_consume(ledger, make_account, db):
    account = await make_account()
    before = await ledger.get_balance(account.id)
    await ledger.consume(account.id, 2)

    other_caller = CreditLedger(db, default_grant=3)
    after = await other_caller.get_balance(account.id)
    assert after.current <= before.current - 2


async def test_reset_is_idempotent(ledger, make_account, db):
    a = await make_account()
    b = await make_account()
    await ledger.consume(a.id, 2)
    await ledger.consume(b.id)
    await _set_balance(db, b.id, current=1, max_credits=10)

    assert await ledger.reset_all() == 2
    once = (await ledger.get_balance(a.id), await ledger.get_balance(b.id))
    await ledger.reset_all()
    twice = (await ledger.get_balance(a.id), await ledger.get_balance(b.id))

    assert once == twice == (Balance(current=3, max=3), Balance(current=10, max=10))


async def test_reset_skips_unprovisioned_accounts(ledger, make_account, db):
    await make_account()
    assert await ledger.reset_all() == 0
    assert await _count(db, CreditBalance) == 0


async def test_reset_concurrent_with_consume_keeps_bounds(ledger, make_account):
    account = await make_account()
    await ledger.get_balance(account.id)

    results = await asyncio.gather(
        *(ledger.consume(account.id) for _ in range(4)),
        ledger.reset_all(),
        *(ledger.consume(account.id) for _ in range(4)),
        return_exceptions=True,
    )
    assert not [r for r in results if isinstance(r, Exception) and not isinstance(r, InsufficientCreditError)]
    balance = await ledger.get_balance(account.id)
    assert 0 <= balance.current <= balance.max == 3


async def test_refund_is_capped_at_max(ledger, make_account):
    account = await make_account()
    await ledger.consume(account.id)
    assert await ledger.refund(account.id) == Balance(current=3, max=3)
    assert await ledger.refund(account.id) == Balance(current=3, max=3)


async def test_consumption_records_are_appended(ledger, make_account):
    account = await make_account()
    await ledger.consume(account.id)
    await ledger.consume(account.id, 2)

    records = await ledger.recent_consumptions(account.id)
    assert [(r.amount, r.balance_before, r.balance_after) for r in records] == [(2, 2, 0), (1, 3, 2)]


async def test_record_failure_does_not_undo_consume(ledger, make_account, db, monkeypatch):
    account = await make_account()
    await ledger.get_balance(account.id)

    async def broken(*args, **kwargs):
        raise DatastoreUnavailableError()

    original_run = db.run

    async def run(op, *, idempotent=True, name="datastore"):
        if name == "consumption_record":
            return await broken()
        return await original_run(op, idempotent=idempotent, name=name)

    monkeypatch.setattr(db, "run", run)

    assert await ledger.consume(account.id) == Balance(current=2, max=3)
    monkeypatch.setattr(db, "run", original_run)
    assert await ledger.get_balance(account.id) == Balance(current=2, max=3)
    assert await _count(db, ConsumptionRecord) == 0


async def test_datastore_outage_is_reported_not_defaulted(tmp_path):
    from app.core.retry import RetryPolicy
    from app.db.init import Database

    broken = Database(
        f"sqlite+aiosqlite:///{tmp_path / 'missing-dir' / 'nope.db'}",
        retry_policy=RetryPolicy(attempts=2, base_delay=0),
    )
    broken.connect()
    ledger = CreditLedger(broken)
    try:
        with pytest.raises(DatastoreUnavailableError):
            await ledger.get_balance(1)
        with pytest.raises(DatastoreUnavailableError):
            await ledger.consume(1)
    finally:
        await broken.dispose()


async def test_default_grant_must_be_positive(db):
    with pytest.raises(ValueError):
        CreditLedger(db, default_grant=0)
