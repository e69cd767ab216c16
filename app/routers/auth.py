from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field, field_validator

from app.core.config import get_settings
from app.core.security import SESSION_MAX_AGE, create_session_cookie
from app.db.init import Database
from app.deps import SESSION_COOKIE_NAME, get_current_account_id, get_db, get_ledger
from app.models.account import Account
from app.services import users as user_service
from app.services.credits import CreditLedger

router = APIRouter()


class GoogleAuthRequest(BaseModel):
    id_token: str


class ProfileUpdateRequest(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    email: str | None = Field(default=None, max_length=255)
    image: str | None = Field(default=None, max_length=2000)

    @field_validator("email")
    @classmethod
    def _email_shape(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip().lower()
        local, _, domain = v.partition("@")
        if not local or "." not in domain or " " in v:
            raise ValueError("Invalid email address")
        return v


def account_out(account: Account) -> dict:
    return {
        "id": str(account.id),
        "name": account.name,
        "email": account.email,
        "image": account.image,
    }


@router.post("/google")
async def auth_google(
    body: GoogleAuthRequest,
    response: Response,
    db: Database = Depends(get_db),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Exchange Google ID token for session; set httpOnly cookie."""
    claims = user_service.verify_google_id_token(body.id_token)
    account, is_new = await user_service.sync_account_from_google(db, claims)
    balance = await ledger.get_balance(account.id)
    session_value = create_session_cookie(user_service.session_payload_for_account(account))
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=session_value,
        max_age=SESSION_MAX_AGE,
        httponly=True,
        secure=get_settings().session_cookie_secure,
        samesite="lax",
        path="/",
    )
    return {
        "user": account_out(account),
        "credits_remaining": balance.current,
        "max_credits": balance.max,
        "is_new_user": is_new,
    }


@router.post("/logout")
async def auth_logout(response: Response):
    response.delete_cookie(key=SESSION_COOKIE_NAME, path="/")
    return {"status": "ok"}


@router.get("/me")
async def auth_me(
    account_id: int = Depends(get_current_account_id),
    db: Database = Depends(get_db),
):
    """Return current account. Requires session cookie."""
    account = await user_service.get_account(db, account_id)
    return account_out(account)


@router.patch("/me")
async def auth_update_me(
    body: ProfileUpdateRequest,
    account_id: int = Depends(get_current_account_id),
    db: Database = Depends(get_db),
):
    """Update display name, email or avatar."""
    account = await user_service.update_profile(db, account_id, body.model_dump(exclude_unset=True))
    return account_out(account)
