import asyncio
import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Use test settings
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("DEFAULT_CREDIT_GRANT", "3")
os.environ.setdefault("DB_RETRY_BASE_DELAY", "0")

from app.core.security import create_session_cookie  # noqa: E402
from app.db.init import Database  # noqa: E402
from app.deps import SESSION_COOKIE_NAME  # noqa: E402
from app.models.account import Account  # noqa: E402
from app.services.credits import CreditLedger  # noqa: E402
from app.storage.local import LocalStorage  # noqa: E402


@pytest_asyncio.fixture
async def db(tmp_path) -> AsyncGenerator[Database, None]:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", operation_timeout=30)
    database.connect()
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
def ledger(db: Database) -> CreditLedger:
    return CreditLedger(db, default_grant=3)


@pytest.fixture
def make_account(db: Database):
    counter = {"n": 0}

    async def _make(**fields) -> Account:
        counter["n"] += 1
        n = counter["n"]
        account = Account(
            google_sub=fields.pop("google_sub", f"google-sub-{n}"),
            email=fields.pop("email", f"user{n}@example.com"),
            name=fields.pop("name", f"User {n}"),
            **fields,
        )

        async def op(session):
            session.add(account)
            await session.flush()
            return account

        return await db.run(op)

    return _make


class FakeGenerator:
    """Stands in for SectionGenerator; records calls."""

    def __init__(self, code: str = "<html></html>", error: Exception | None = None, delay: float = 0) -> None:
        self.code = code
        self.error = error
        self.delay = delay
        self.calls: list[dict] = []

    async def generate(self, section_type, requirements="", image_descriptions="", image=None) -> str:
        self.calls.append(
            {
                "section_type": section_type,
                "requirements": requirements,
                "image_descriptions": image_descriptions,
                "image": image,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.code


@pytest.fixture
def fake_generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def slow_generator() -> FakeGenerator:
    """Still generating long after any test timeout."""
    return FakeGenerator(delay=10)


@pytest.fixture
def app(db: Database, ledger: CreditLedger, fake_generator: FakeGenerator, tmp_path):
    from app.main import create_app

    application = create_app()
    application.state.db = db
    application.state.ledger = ledger
    application.state.generator = fake_generator
    application.state.storage = LocalStorage(tmp_path / "storage")
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def login(client: AsyncClient):
    """Sign the test client in as `account_id`."""

    def _login(account_id: int) -> None:
        client.cookies.set(SESSION_COOKIE_NAME, create_session_cookie({"account_id": account_id}))

    return _login
