from fastapi import APIRouter, Depends

from app.deps import get_optional_account_id, get_storage_backend
from app.services import feedback as feedback_service
from app.storage.base import StorageBackend

router = APIRouter()


@router.post("")
async def submit_feedback(
    body: feedback_service.Feedback,
    account_id: int | None = Depends(get_optional_account_id),
    storage: StorageBackend = Depends(get_storage_backend),
):
    """Rate a generated section (1-5) with an optional comment."""
    feedback_id = await feedback_service.save_feedback(storage, body, account_id=account_id)
    return {"success": True, "id": feedback_id}
