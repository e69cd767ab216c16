from app.models.account import Account
from app.models.credit_balance import CreditBalance
from app.models.consumption_record import ConsumptionRecord

__all__ = [
    "Account",
    "CreditBalance",
    "ConsumptionRecord",
]
