"""Shared FastAPI dependencies."""

from fastapi import Header, Request

from app.core.config import get_settings
from app.core.exceptions import AppError, UnauthorizedError
from app.core.logging import bind_account_id
from app.core.security import load_session_cookie, verify_bearer_secret
from app.db.init import Database
from app.services.credits import CreditLedger
from app.services.generation import SectionGenerator
from app.storage.base import StorageBackend

SESSION_COOKIE_NAME = "section_studio_session"


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_ledger(request: Request) -> CreditLedger:
    return request.app.state.ledger


def get_generator(request: Request) -> SectionGenerator:
    generator = getattr(request.app.state, "generator", None)
    if generator is None:
        generator = SectionGenerator()
        request.app.state.generator = generator
    return generator


def get_storage_backend(request: Request) -> StorageBackend:
    return request.app.state.storage


def _account_id_from_cookie(request: Request) -> int | None:
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        return None
    payload = load_session_cookie(cookie)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    account_id = payload.get("account_id")
    if not isinstance(account_id, int) or isinstance(account_id, bool) or account_id <= 0:
        raise UnauthorizedError("Invalid session")
    return account_id


async def get_current_account_id(request: Request) -> int:
    """Dependency: canonical account id from the signed session cookie."""
    account_id = _account_id_from_cookie(request)
    if account_id is None:
        raise UnauthorizedError("Not authenticated")
    bind_account_id(account_id)
    return account_id


async def get_optional_account_id(request: Request) -> int | None:
    try:
        account_id = _account_id_from_cookie(request)
    except UnauthorizedError:
        return None
    if account_id is not None:
        bind_account_id(account_id)
    return account_id


async def require_cron_secret(authorization: str | None = Header(default=None)) -> None:
    """Dependency: `Authorization: Bearer <CRON_SECRET>` for scheduled jobs."""
    secret = get_settings().cron_secret
    if not secret:
        raise AppError("Scheduled jobs are not configured", code="CRON_DISABLED", status_code=503)
    if not verify_bearer_secret(authorization, secret):
        raise UnauthorizedError("Unauthorized")
