"""Engine lifecycle and transactional access to the relational store."""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import Settings, get_settings
from app.core.exceptions import DatastoreUnavailableError
from app.core.logging import get_logger
from app.core.retry import RetryPolicy, is_transient
from app.db.base import Base

log = get_logger(__name__)

T = TypeVar("T")

SQLITE_BUSY_TIMEOUT = 30  # seconds a writer waits for the database lock


class CommitFailed(Exception):
    """Commit of a non-idempotent transaction failed; its outcome is unknown."""

    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(str(cause))


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _on_sqlite_connect(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
    # SQLAlchemy emits BEGIN itself (see _on_sqlite_begin)
    dbapi_connection.isolation_level = None


def _on_sqlite_begin(conn: Any) -> None:
    # Take the write lock up front; a deferred transaction that later upgrades
    # its lock gets SQLITE_BUSY instead of waiting on the busy timeout
    conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """
    Owns the engine and session factory.

    `connect()` once at process start, `dispose()` at shutdown. Every unit of
    work goes through `session()` or `run()`, which release the connection on
    all exit paths.
    """

    def __init__(
        self,
        url: str,
        echo: bool = False,
        pool_size: int = 5,
        operation_timeout: float = 15.0,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.url = url
        self.echo = echo
        self.pool_size = pool_size
        self.operation_timeout = operation_timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._engine: AsyncEngine | None = None
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "Database":
        s = settings or get_settings()
        return cls(
            s.database_url,
            echo=s.db_echo,
            pool_size=s.db_pool_size,
            operation_timeout=s.db_operation_timeout,
            retry_policy=RetryPolicy(attempts=s.db_retry_attempts, base_delay=s.db_retry_base_delay),
        )

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database is not connected")
        return self._engine

    def connect(self) -> None:
        if self._engine is not None:
            return
        kwargs: dict[str, Any] = {"echo": self.echo, "pool_pre_ping": True}
        if _is_sqlite(self.url):
            kwargs["connect_args"] = {"timeout": SQLITE_BUSY_TIMEOUT}
        else:
            kwargs["pool_size"] = self.pool_size
        self._engine = create_async_engine(self.url, **kwargs)
        if _is_sqlite(self.url):
            event.listen(self._engine.sync_engine, "connect", _on_sqlite_connect)
            event.listen(self._engine.sync_engine, "begin", _on_sqlite_begin)
        self._sessionmaker = async_sessionmaker(self._engine, expire_on_commit=False)
        log.info("db_connected", dialect=self._engine.dialect.name)

    async def dispose(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None
        log.info("db_disposed")

    async def create_all(self) -> None:
        # Registers every table on Base.metadata
        import app.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if self._sessionmaker is None:
            raise RuntimeError("Database is not connected")
        async with self._sessionmaker() as session:
            yield session

    async def _attempt(self, op: Callable[[AsyncSession], Awaitable[T]], idempotent: bool) -> T:
        async with self.session() as session:
            try:
                result = await op(session)
            except BaseException:
                await session.rollback()
                raise
            try:
                await session.commit()
            except SQLAlchemyError as e:
                if not idempotent:
                    raise CommitFailed(e) from e
                raise
            return result

    async def run(
        self,
        op: Callable[[AsyncSession], Awaitable[T]],
        *,
        idempotent: bool = True,
        name: str = "datastore",
    ) -> T:
        """
        Run `op(session)` in one transaction and commit it.

        Transient failures are retried under the retry policy; a failed commit
        of a non-idempotent op is not, since it may or may not have applied.
        The whole call is bounded by `operation_timeout`. Exhausted retries,
        unknown commit outcomes and timeouts raise DatastoreUnavailableError;
        other errors (e.g. IntegrityError) propagate unchanged.
        """
        try:
            return await asyncio.wait_for(
                self.retry_policy.run(lambda: self._attempt(op, idempotent), is_transient, op=name),
                timeout=self.operation_timeout,
            )
        except asyncio.TimeoutError as e:
            log.error("datastore_timeout", op=name, timeout=self.operation_timeout)
            raise DatastoreUnavailableError("Datastore operation timed out, please retry") from e
        except CommitFailed as e:
            log.error("datastore_commit_failed", op=name, error=str(e.cause)[:200])
            raise DatastoreUnavailableError() from e
        except SQLAlchemyError as e:
            if not is_transient(e):
                raise
            log.error("datastore_unavailable", op=name, error=str(e)[:200])
            raise DatastoreUnavailableError() from e


_database: Database | None = None


def get_database() -> Database:
    """Process-wide Database built from settings; connected by init_db()."""
    global _database
    if _database is None:
        _database = Database.from_settings()
    return _database


async def init_db(create_tables: bool = True) -> Database:
    db = get_database()
    db.connect()
    if create_tables:
        await db.create_all()
    return db


async def close_db() -> None:
    global _database
    if _database is not None:
        await _database.dispose()
        _database = None
