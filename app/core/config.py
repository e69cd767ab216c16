from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except ValueError:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")
    session_cookie_secure: bool = Field(default=False, alias="SESSION_COOKIE_SECURE")

    # Database (SQLAlchemy async URL)
    database_url: str = Field(default="sqlite+aiosqlite:///./section_studio.db", alias="DATABASE_URL")
    db_echo: bool = Field(default=False, alias="DB_ECHO")
    db_pool_size: int = Field(default=5, alias="DB_POOL_SIZE")
    db_operation_timeout: float = Field(default=15.0, alias="DB_OPERATION_TIMEOUT")
    db_retry_attempts: int = Field(default=3, ge=1, alias="DB_RETRY_ATTEMPTS")
    db_retry_base_delay: float = Field(default=0.1, ge=0, alias="DB_RETRY_BASE_DELAY")

    # Credits
    default_credit_grant: int = Field(default=3, ge=1, alias="DEFAULT_CREDIT_GRANT")
    credit_reset_hour: int = Field(default=0, ge=0, le=23, alias="CREDIT_RESET_HOUR")
    cron_secret: str = Field(default="", alias="CRON_SECRET")

    # Redis (arq worker)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Google sign-in
    google_client_id: str = Field(default="", alias="GOOGLE_CLIENT_ID")

    # Anthropic
    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")
    anthropic_model: str = Field(default="claude-3-5-sonnet-20241022", alias="ANTHROPIC_MODEL")
    generation_max_tokens: int = Field(default=4000, alias="GENERATION_MAX_TOKENS")
    generation_timeout: float = Field(default=50.0, alias="GENERATION_TIMEOUT")
    max_reference_image_bytes: int = Field(default=5 * 1024 * 1024, alias="MAX_REFERENCE_IMAGE_BYTES")

    # Storage
    storage_local_path: str = Field(default="./data", alias="STORAGE_LOCAL_PATH")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))


@lru_cache
def get_settings() -> Settings:
    return Settings()
