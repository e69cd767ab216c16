from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, utcnow


class CreditBalance(Base):
    """Current balance per account; written only by CreditLedger."""

    __tablename__ = "credit_balances"
    __table_args__ = (
        CheckConstraint("credits_remaining >= 0", name="credits_remaining_non_negative"),
        CheckConstraint("max_credits >= 1", name="max_credits_positive"),
        CheckConstraint("credits_remaining <= max_credits", name="credits_remaining_within_max"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), unique=True, index=True
    )
    credits_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    max_credits: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
