"""
Database Connection Management for the Client Verification Portal

One process-wide ``DatabaseSessionProvider`` owns the engine and session
factory. Request handlers get a session per request through ``get_db``; the
import worker thread opens its own ``UnitOfWork``.

Settings come from ``DATABASE_URL`` or the ``DB_*`` variables. PostgreSQL
(psycopg2) in production; SQLite is accepted for development and tests.
"""

import os
import logging
from typing import Generator, Optional
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import create_engine, event, text, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from database.models import Base

logger = logging.getLogger(__name__)


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class DatabaseSettings:
    """Connection and pool settings."""
    host: str = "localhost"
    port: int = 5432
    database: str = "verification_portal"
    user: str = "portal_user"
    password: str = "portal_password"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    connect_attempts: int = 3
    echo: bool = False
    url: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'DatabaseSettings':
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "verification_portal"),
            user=os.getenv("DB_USER", "portal_user"),
            password=os.getenv("DB_PASSWORD", "portal_password"),
            pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "1800")),
            connect_attempts=int(os.getenv("DB_CONNECT_ATTEMPTS", "3")),
            echo=os.getenv("DB_ECHO", "false").lower() == "true",
            url=os.getenv("DATABASE_URL") or None
        )

    def get_url(self) -> str:
        """DATABASE_URL if set, otherwise a PostgreSQL URL from the parts."""
        if self.url:
            return self.url
        return (
            f"postgresql+psycopg2://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )

    @property
    def is_sqlite(self) -> bool:
        return self.get_url().startswith("sqlite")

    def engine_options(self) -> dict:
        """Keyword arguments for create_engine"""
        if self.is_sqlite:
            return {"connect_args": {"check_same_thread": False}}
        return {
            "poolclass": QueuePool,
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": True,
        }


def _enable_sqlite_foreign_keys(engine: Engine) -> None:
    """SQLite ignores REFERENCES unless asked per connection."""
    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# ============================================
# UNIT OF WORK
# ============================================

class UnitOfWork:
    """
    A session with an explicit transaction boundary.

    Rolls back when the block raises and always closes the session.
    Committing is left to the code inside the block.

    Usage:
        with provider.get_unit_of_work() as uow:
            ImportPipeline(uow.session, issuer).run(path, filename)
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._session: Optional[Session] = None

    def __enter__(self) -> 'UnitOfWork':
        self._session = self._session_factory()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self.rollback()
        self.close()

    @property
    def session(self) -> Session:
        if self._session is None:
            raise RuntimeError("UnitOfWork not started. Use as context manager.")
        return self._session

    def commit(self) -> None:
        if self._session:
            self._session.commit()

    def rollback(self) -> None:
        if self._session:
            self._session.rollback()

    def close(self) -> None:
        if self._session:
            self._session.close()
            self._session = None


# ============================================
# SESSION PROVIDER
# ============================================

class DatabaseSessionProvider:
    """Owns the engine and hands out sessions."""

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None
    ):
        """
        Args:
            settings: Database settings (read from the environment if omitted)
            engine: Pre-created engine (tests)
        """
        self._settings = settings or DatabaseSettings.from_env()
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def init(self, echo: Optional[bool] = None) -> None:
        """
        Create the engine (unless one was given) and the session factory.

        Args:
            echo: Override echo setting for SQL logging
        """
        if self._initialized:
            return

        if echo is not None:
            self._settings.echo = echo

        if self._engine is None:
            self._engine = self._connect()

        # Records returned from a committed session are read by the API layer
        self._session_factory = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False
        )

        self._initialized = True
        logger.info(f"Database session provider initialized ({self._engine.dialect.name})")

    def _connect(self) -> Engine:
        """Create the engine and prove it with SELECT 1, retrying operational errors."""

        @retry(
            stop=stop_after_attempt(self._settings.connect_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(OperationalError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )
        def _attempt() -> Engine:
            engine = create_engine(
                self._settings.get_url(),
                echo=self._settings.echo,
                **self._settings.engine_options()
            )
            # Before the first connect, or the pooled SELECT 1 connection misses the pragma
            _enable_sqlite_foreign_keys(engine)
            try:
                with engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
            except OperationalError:
                engine.dispose()
                raise
            return engine

        return _attempt()

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._session_factory

    def get_session(self) -> Generator[Session, None, None]:
        """Session for one request; closed when the request ends."""
        session = self.session_factory()
        try:
            yield session
        finally:
            session.close()

    def get_unit_of_work(self) -> UnitOfWork:
        """Session for work outside a request (the import worker thread)."""
        return UnitOfWork(self.session_factory)

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Short-lived session that commits on success and rolls back on error.

        Usage:
            with provider.session_scope() as session:
                ContactRecordRepository(session).count()
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        """Create missing tables (development; production uses Alembic)."""
        Base.metadata.create_all(self.engine)
        logger.info("Database tables created")

    def health_check(self) -> bool:
        try:
            with self.session_scope() as session:
                session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self) -> None:
        if self._engine:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._initialized = False


# ============================================
# GLOBAL PROVIDER INSTANCE
# ============================================

_db_provider: Optional[DatabaseSessionProvider] = None


def get_db_provider() -> DatabaseSessionProvider:
    """Process-wide provider, created on first use."""
    global _db_provider
    if _db_provider is None:
        _db_provider = DatabaseSessionProvider()
    return _db_provider


def init_db(echo: bool = False) -> DatabaseSessionProvider:
    """
    Initialize the global provider. Called at application startup.

    Args:
        echo: If True, log all SQL statements

    Returns:
        The initialized provider
    """
    provider = get_db_provider()
    provider.init(echo=echo)
    return provider


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency for a per-request session.

    Usage:
        @app.get("/api/admin/users")
        def list_users(db: Session = Depends(get_db)):
            ...
    """
    provider = get_db_provider()
    if not provider.initialized:
        provider.init()

    yield from provider.get_session()


def close_db() -> None:
    """Dispose the global provider. Called at application shutdown."""
    global _db_provider
    if _db_provider:
        _db_provider.close()
        _db_provider = None


def create_test_provider(
    engine: Optional[Engine] = None,
    settings: Optional[DatabaseSettings] = None
) -> DatabaseSessionProvider:
    """
    Provider for tests, defaulting to in-memory SQLite.

    Args:
        engine: Pre-created engine (e.g., a StaticPool SQLite engine)
        settings: Custom settings

    Returns:
        Uninitialized DatabaseSessionProvider
    """
    return DatabaseSessionProvider(
        settings=settings or DatabaseSettings(url="sqlite://"),
        engine=engine
    )
