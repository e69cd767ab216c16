from google.auth.exceptions import GoogleAuthError
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.exceptions import BadRequestError, ConflictError, NotFoundError, UnauthorizedError
from app.core.logging import get_logger
from app.db.base import utcnow
from app.db.init import Database
from app.models.account import Account

log = get_logger(__name__)


def verify_google_id_token(token: str) -> dict:
    """Verify Google ID token; return decoded claims (sub, email, name, picture, etc.)."""
    settings = get_settings()
    try:
        claims = id_token.verify_oauth2_token(
            token,
            google_requests.Request(),
            settings.google_client_id,
        )
        return claims
    except (ValueError, GoogleAuthError) as e:
        raise UnauthorizedError(f"Invalid Google token: {e}") from e


async def sync_account_from_google(db: Database, claims: dict) -> tuple[Account, bool]:
    """Create or refresh the account for a Google identity. Returns (account, is_new)."""
    google_sub = claims.get("sub")
    if not google_sub:
        raise BadRequestError("Missing sub in token")
    email = claims.get("email") or None
    name = claims.get("name") or None
    picture = claims.get("picture") or None

    async def op(session: AsyncSession) -> tuple[Account, bool]:
        account = await session.scalar(select(Account).where(Account.google_sub == google_sub))
        now = utcnow()
        if account:
            account.email = email
            account.name = name
            account.image = picture
            account.last_login_at = now
            await session.flush()
            return account, False
        account = Account(
            google_sub=google_sub,
            email=email,
            name=name,
            image=picture,
            last_login_at=now,
        )
        session.add(account)
        await session.flush()
        return account, True

    try:
        account, is_new = await db.run(op, name="account_sync")
    except IntegrityError:
        # Concurrent first sign-in for the same sub, or the email belongs to another account
        existing = await get_account_by_google_sub(db, google_sub)
        if existing is None:
            raise ConflictError("Email is already linked to another account")
        return existing, False
    log.info("user_created" if is_new else "user_login", account_id=account.id)
    return account, is_new


async def get_account(db: Database, account_id: int) -> Account:
    async def op(session: AsyncSession) -> Account | None:
        return await session.get(Account, account_id)

    account = await db.run(op, name="account_read")
    if account is None:
        raise NotFoundError("Account not found")
    return account


async def get_account_by_google_sub(db: Database, google_sub: str) -> Account | None:
    async def op(session: AsyncSession) -> Account | None:
        return await session.scalar(select(Account).where(Account.google_sub == google_sub))

    return await db.run(op, name="account_lookup")


async def update_profile(db: Database, account_id: int, changes: dict) -> Account:
    """Apply name/email/image changes; only keys present in `changes` are touched."""
    allowed = {k: v for k, v in changes.items() if k in ("name", "email", "image")}

    async def op(session: AsyncSession) -> Account | None:
        account = await session.get(Account, account_id)
        if account is None:
            return None
        for key, value in allowed.items():
            setattr(account, key, value)
        await session.flush()
        return account

    try:
        account = await db.run(op, name="profile_update")
    except IntegrityError as e:
        raise ConflictError("Email is already in use") from e
    if account is None:
        raise NotFoundError("Account not found")
    log.info("profile_updated", account_id=account_id, fields=sorted(allowed))
    return account


def session_payload_for_account(account: Account) -> dict:
    return {"account_id": account.id}
