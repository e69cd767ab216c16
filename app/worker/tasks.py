"""ARQ job definitions."""

from typing import Any
from urllib.parse import urlparse

from arq.connections import RedisSettings

from app.core.config import get_settings
from app.core.logging import configure_logging, get_logger
from app.services.credits import CreditLedger

log = get_logger(__name__)


async def reset_credits(ctx: dict[str, Any]) -> int:
    """Cron job: restore every balance to its max."""
    ledger: CreditLedger = ctx["ledger"]
    log.info("job_start", job="reset_credits", job_id=ctx.get("job_id"))
    try:
        count = await ledger.reset_all()
    except Exception:
        log.exception("job_failed", job="reset_credits", job_id=ctx.get("job_id"))
        raise
    log.info("job_done", job="reset_credits", reset_count=count)
    return count


async def startup(ctx: dict) -> None:
    from app.db.init import init_db

    settings = get_settings()
    configure_logging(debug=settings.debug, db_echo=settings.db_echo)
    db = await init_db()
    ctx["ledger"] = CreditLedger(db, default_grant=settings.default_credit_grant)


async def shutdown(ctx: dict) -> None:
    from app.db.init import close_db

    await close_db()


def get_redis_settings() -> RedisSettings:
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )
