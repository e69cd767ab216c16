"""Credit ledger: balance reads, atomic consumption and periodic reset."""

from pydantic import BaseModel, ConfigDict
from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    AppError,
    InsufficientCreditError,
    InvalidAccountError,
    InvalidAmountError,
    ProvisioningConflict,
)
from app.core.logging import get_logger
from app.db.base import utcnow
from app.db.init import Database
from app.models.consumption_record import ConsumptionRecord
from app.models.credit_balance import CreditBalance

log = get_logger(__name__)

DEFAULT_GRANT = 3


class Balance(BaseModel):
    model_config = ConfigDict(frozen=True)

    current: int
    max: int


def validate_account_id(account_id: object) -> int:
    if isinstance(account_id, bool) or not isinstance(account_id, int) or account_id <= 0:
        raise InvalidAccountError("Account id must be a positive integer")
    return account_id


def validate_amount(amount: object) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError()
    return amount


async def _select_balance(session: AsyncSession, account_id: int) -> Balance | None:
    row = (
        await session.execute(
            select(CreditBalance.credits_remaining, CreditBalance.max_credits).where(
                CreditBalance.account_id == account_id
            )
        )
    ).first()
    return Balance(current=row[0], max=row[1]) if row else None


class CreditLedger:
    """
    Sole writer of credit_balances.

    Balances are provisioned lazily with `current = max = default_grant`.
    `consume` is one conditional UPDATE, so concurrent callers can never
    spend the same credit twice or push a balance below zero.
    """

    def __init__(self, db: Database, default_grant: int = DEFAULT_GRANT) -> None:
        if default_grant < 1:
            raise ValueError("default_grant must be >= 1")
        self._db = db
        self.default_grant = default_grant

    async def get_balance(self, account_id: int) -> Balance:
        account_id = validate_account_id(account_id)
        return await self._ensure_balance(account_id)

    async def consume(self, account_id: int, amount: int = 1) -> Balance:
        """Deduct `amount` credits; return the balance after the deduction."""
        account_id = validate_account_id(account_id)
        amount = validate_amount(amount)
        await self._ensure_balance(account_id)

        async def op(session: AsyncSession) -> tuple[Balance, bool]:
            stmt = (
                update(CreditBalance)
                .where(
                    CreditBalance.account_id == account_id,
                    CreditBalance.credits_remaining >= amount,
                )
                .values(
                    credits_remaining=CreditBalance.credits_remaining - amount,
                    updated_at=utcnow(),
                )
                .returning(CreditBalance.credits_remaining, CreditBalance.max_credits)
                .execution_options(synchronize_session=False)
            )
            row = (await session.execute(stmt)).first()
            if row is not None:
                return Balance(current=row[0], max=row[1]), True
            # Read under the same transaction for the error details
            current = await _select_balance(session, account_id)
            if current is None:
                raise InvalidAccountError("Unknown account")
            return current, False

        balance, applied = await self._db.run(op, idempotent=False, name="consume")
        if not applied:
            log.info(
                "credit_insufficient",
                account_id=account_id,
                requested=amount,
                current=balance.current,
            )
            raise InsufficientCreditError(balance.current, balance.max, amount)

        log.info(
            "credit_consumed",
            account_id=account_id,
            amount=amount,
            current=balance.current,
            max=balance.max,
        )
        await self._append_record(account_id, amount, balance)
        return balance

    async def refund(self, account_id: int, amount: int = 1) -> Balance:
        """Give back credits taken for a paid action that then failed. Never exceeds max."""
        account_id = validate_account_id(account_id)
        amount = validate_amount(amount)

        async def op(session: AsyncSession) -> Balance | None:
            restored = CreditBalance.credits_remaining + amount
            stmt = (
                update(CreditBalance)
                .where(CreditBalance.account_id == account_id)
                .values(
                    credits_remaining=case(
                        (restored > CreditBalance.max_credits, CreditBalance.max_credits),
                        else_=restored,
                    ),
                    updated_at=utcnow(),
                )
                .returning(CreditBalance.credits_remaining, CreditBalance.max_credits)
                .execution_options(synchronize_session=False)
            )
            row = (await session.execute(stmt)).first()
            return Balance(current=row[0], max=row[1]) if row else None

        balance = await self._db.run(op, idempotent=False, name="refund")
        if balance is None:
            raise InvalidAccountError("Unknown account")
        log.info("credit_refunded", account_id=account_id, amount=amount, current=balance.current)
        return balance

    async def reset_all(self) -> int:
        """Set every balance back to its max; return the number of balances reset."""

        async def op(session: AsyncSession) -> int:
            result = await session.execute(
                update(CreditBalance)
                .values(credits_remaining=CreditBalance.max_credits, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

        count = await self._db.run(op, name="reset_all")
        log.info("credits_reset", count=count)
        return count

    async def recent_consumptions(
        self, account_id: int, limit: int = 50, offset: int = 0
    ) -> list[ConsumptionRecord]:
        """Newest first."""
        account_id = validate_account_id(account_id)

        async def op(session: AsyncSession) -> list[ConsumptionRecord]:
            stmt = (
                select(ConsumptionRecord)
                .where(ConsumptionRecord.account_id == account_id)
                .order_by(ConsumptionRecord.created_at.desc(), ConsumptionRecord.id.desc())
                .offset(offset)
                .limit(limit)
            )
            return list((await session.scalars(stmt)).all())

        return await self._db.run(op, name="consumption_history")

    async def _read(self, account_id: int) -> Balance | None:
        async def op(session: AsyncSession) -> Balance | None:
            return await _select_balance(session, account_id)

        return await self._db.run(op, name="balance_read")

    async def _provision(self, account_id: int) -> None:
        grant = self.default_grant

        async def op(session: AsyncSession) -> None:
            session.add(
                CreditBalance(account_id=account_id, credits_remaining=grant, max_credits=grant)
            )
            await session.flush()

        try:
            await self._db.run(op, name="balance_provision")
        except IntegrityError as e:
            raise ProvisioningConflict(str(e.orig)) from e
        log.info("balance_provisioned", account_id=account_id, grant=grant)

    async def _ensure_balance(self, account_id: int) -> Balance:
        balance = await self._read(account_id)
        if balance is not None:
            return balance
        try:
            await self._provision(account_id)
        except ProvisioningConflict:
            # Another caller provisioned first, or the account does not exist
            log.debug("balance_provision_conflict", account_id=account_id)
        balance = await self._read(account_id)
        if balance is None:
            raise InvalidAccountError("Unknown account")
        return balance

    async def _append_record(self, account_id: int, amount: int, after: Balance) -> None:
        async def op(session: AsyncSession) -> None:
            session.add(
                ConsumptionRecord(
                    account_id=account_id,
                    amount=amount,
                    balance_before=after.current + amount,
                    balance_after=after.current,
                )
            )

        try:
            await self._db.run(op, name="consumption_record")
        except (AppError, SQLAlchemyError) as e:
            # The deduction is already committed; the audit row is best effort
            log.warning("consumption_record_failed", account_id=account_id, error=str(e)[:200])
