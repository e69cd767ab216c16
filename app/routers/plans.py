from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.deps import get_current_account_id
from app.services import plans as plans_service

router = APIRouter()


class UpgradeRequest(BaseModel):
    plan_id: str


@router.get("")
async def plans_list():
    return {"plans": plans_service.list_plans()}


@router.post("/upgrade")
async def plans_upgrade(body: UpgradeRequest, account_id: int = Depends(get_current_account_id)):
    """Validate the plan; payment processing is not implemented."""
    return plans_service.upgrade_plan(account_id, body.plan_id)
