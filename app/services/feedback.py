"""User feedback on generated sections, stored one JSON document per entry."""

import uuid

import orjson
from pydantic import BaseModel, Field

from app.core.logging import get_logger
from app.db.base import utcnow
from app.storage.base import StorageBackend

log = get_logger(__name__)

FEEDBACK_PREFIX = "feedback"


class Feedback(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str = Field(default="", max_length=5000)
    generated_code: str = Field(default="", max_length=200_000)
    email: str | None = Field(default=None, max_length=255)


async def save_feedback(storage: StorageBackend, feedback: Feedback, account_id: int | None = None) -> str:
    """Persist feedback with a server timestamp; returns the feedback id."""
    now = utcnow()
    feedback_id = uuid.uuid4().hex
    entry = {
        "id": feedback_id,
        **feedback.model_dump(),
        "account_id": account_id,
        "timestamp": now.isoformat(),
    }
    key = f"{FEEDBACK_PREFIX}/{now.strftime('%Y%m%d')}/{now.strftime('%H%M%S')}_{feedback_id}.json"
    await storage.put(key, orjson.dumps(entry, option=orjson.OPT_INDENT_2), content_type="application/json")
    log.info("feedback_saved", feedback_id=feedback_id, rating=feedback.rating, account_id=account_id)
    return feedback_id
