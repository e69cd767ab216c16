"""Plan catalogue. Upgrades need a payment provider, which is not wired up."""

from app.core.config import get_settings
from app.core.exceptions import BadRequestError, NotImplementedAppError

PAID_PLANS = {
    "basic": {"name": "Basic", "credits": 100, "price": 9.99},
    "pro": {"name": "Pro", "credits": 300, "price": 19.99},
    "enterprise": {"name": "Enterprise", "credits": 1000, "price": 49.99},
}


def list_plans() -> list[dict]:
    free = {"id": "free", "name": "Free", "credits": get_settings().default_credit_grant, "price": 0.0}
    return [free] + [{"id": plan_id, **plan} for plan_id, plan in PAID_PLANS.items()]


def upgrade_plan(account_id: int, plan_id: str) -> dict:
    if plan_id not in PAID_PLANS:
        raise BadRequestError("Invalid plan ID")
    raise NotImplementedAppError("Plan upgrades are not available yet")
