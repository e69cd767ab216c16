import pytest

from app.worker.tasks import reset_credits

pytestmark = pytest.mark.asyncio


async def test_reset_credits_job(ledger, make_account):
    a = await make_account()
    b = await make_account()
    await ledger.consume(a.id, 3)
    await ledger.consume(b.id, 1)

    count = await reset_credits({"ledger": ledger, "job_id": "cron:reset_credits"})
    assert count == 2
    assert (await ledger.get_balance(a.id)).current == 3
    assert (await ledger.get_balance(b.id)).current == 3


async def test_reset_credits_job_propagates_errors(ledger, db):
    await db.dispose()
    with pytest.raises(RuntimeError):
        await reset_credits({"ledger": ledger})
