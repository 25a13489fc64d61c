"""
Database Connection Management for the Enforcement Ingest pipeline

Sessions are handed out through DatabaseSessionProvider.session_scope(),
one transaction per scope. The tracker, the upsert engine and the
repositories never commit on their own; a scope commits when its block
exits cleanly and rolls back otherwise.

Settings come from the database section of config.yaml, with DATABASE_URL
and DB_* environment variables taking precedence. Tests use an in-memory
SQLite engine that all threads share.
"""

import os
import logging
from typing import Any, Generator, Mapping, Optional
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import create_engine, event, text, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
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

MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class DatabaseSettings:
    """Where the enforcement database lives and how to pool connections."""
    host: str = "localhost"
    port: int = 5432
    name: str = "enforcement"
    user: str = "ingest_user"
    password: str = "ingest_password"
    url: Optional[str] = None
    pool_size: int = 5
    max_overflow: int = 10
    echo: bool = False
    connect_attempts: int = 3

    @classmethod
    def from_config(
        cls,
        database_config: Any = None,
        environ: Optional[Mapping[str, str]] = None
    ) -> 'DatabaseSettings':
        """
        Build settings from a DatabaseConfig section.

        DATABASE_URL replaces the whole connection description; DB_HOST,
        DB_PORT, DB_NAME, DB_USER and DB_PASSWORD replace single fields.
        """
        environ = os.environ if environ is None else environ
        settings = cls()
        if database_config is not None:
            for name in ('host', 'port', 'name', 'user', 'password', 'url', 'pool_size', 'echo'):
                if hasattr(database_config, name):
                    setattr(settings, name, getattr(database_config, name))

        overrides = {
            'DB_HOST': ('host', str),
            'DB_PORT': ('port', int),
            'DB_NAME': ('name', str),
            'DB_USER': ('user', str),
            'DB_PASSWORD': ('password', str),
            'DATABASE_URL': ('url', str),
        }
        for env_name, (attr, convert) in overrides.items():
            if environ.get(env_name):
                setattr(settings, attr, convert(environ[env_name]))
        return settings

    def get_url(self) -> str:
        if self.url:
            return self.url
        return (
            f"postgresql+psycopg2://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.name}"
        )

    @property
    def is_sqlite(self) -> bool:
        return self.get_url().startswith("sqlite")

    def describe(self) -> str:
        """Connection target without credentials, for logs."""
        if self.url:
            return self.url.split("@")[-1] if "@" in self.url else self.url
        return f"{self.host}:{self.port}/{self.name}"


# ============================================
# SQLITE SUPPORT
# ============================================

def _enable_sqlite_transactions(engine: Engine) -> None:
    """Make pysqlite honour BEGIN/SAVEPOINT and foreign keys."""

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_sqlite_engine(url: str = "sqlite://", echo: bool = False) -> Engine:
    """
    Create a SQLite engine usable from several threads.

    In-memory databases share one connection (StaticPool) so every session
    sees the same data.
    """
    kwargs = {"connect_args": {"check_same_thread": False}, "echo": echo}
    if url in MEMORY_URLS:
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    _enable_sqlite_transactions(engine)
    return engine


# ============================================
# DATABASE SESSION PROVIDER
# ============================================

class DatabaseSessionProvider:
    """
    Hands out transaction-scoped sessions.

    Usage:
        provider = DatabaseSessionProvider(DatabaseSettings.from_config(config.database))
        with provider.session_scope() as db:
            OffenderRepository(db).get_by_identity(normalized_name, postcode)
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None
    ):
        self._settings = settings or DatabaseSettings.from_config()
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None

    @property
    def initialized(self) -> bool:
        return self._session_factory is not None

    def init(self) -> None:
        """Connect (retrying while the server is unreachable) and build the session factory."""
        if self.initialized:
            return

        if self._engine is None:
            self._engine = self._connect()

        self._session_factory = sessionmaker(
            bind=self._engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False
        )
        logger.info(f"✓ Database session provider ready ({self._settings.describe()})")

    def _connect(self) -> Engine:
        attempt = retry(
            stop=stop_after_attempt(self._settings.connect_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(OperationalError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )
        return attempt(self._create_engine)()

    def _create_engine(self) -> Engine:
        url = self._settings.get_url()
        if self._settings.is_sqlite:
            engine = create_sqlite_engine(url, echo=self._settings.echo)
        else:
            engine = create_engine(
                url,
                echo=self._settings.echo,
                poolclass=QueuePool,
                pool_size=self._settings.pool_size,
                max_overflow=self._settings.max_overflow,
                pool_pre_ping=True,
                pool_recycle=1800,
            )

        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return engine

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        One transaction: commit on clean exit, rollback on any exception.

        Scopes must not be nested within a thread; each opens its own
        connection checkout.
        """
        if not self.initialized:
            self.init()

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        """Create missing tables (agencies, offenders, records and ingestion tracking)."""
        Base.metadata.create_all(self.engine)
        logger.info("Database tables created")

    def health_check(self) -> bool:
        try:
            with self.session_scope() as session:
                session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"✗ Database health check failed: {e}")
            return False

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._session_factory = None


# ============================================
# GLOBAL PROVIDER INSTANCE
# ============================================

_db_provider: Optional[DatabaseSessionProvider] = None


def get_db_provider(settings: Optional[DatabaseSettings] = None) -> DatabaseSessionProvider:
    """Get the process-wide provider, creating it from settings on first use."""
    global _db_provider
    if _db_provider is None:
        _db_provider = DatabaseSessionProvider(settings)
    return _db_provider


def init_db(settings: Optional[DatabaseSettings] = None, create_tables: bool = False) -> DatabaseSessionProvider:
    """
    Initialize the global provider. Call during application startup.

    Raises:
        OperationalError: The database stayed unreachable after all attempts
    """
    provider = get_db_provider(settings)
    provider.init()
    if create_tables:
        provider.create_tables()
    return provider


def close_db() -> None:
    """Close the global provider. Call during application shutdown."""
    global _db_provider
    if _db_provider:
        _db_provider.close()
        _db_provider = None


# ============================================
# PYTEST FIXTURES SUPPORT
# ============================================

def create_test_provider(engine: Optional[Engine] = None) -> DatabaseSessionProvider:
    """In-memory SQLite provider with every table created."""
    provider = DatabaseSessionProvider(
        settings=DatabaseSettings(url="sqlite://", connect_attempts=1),
        engine=engine or create_sqlite_engine()
    )
    provider.init()
    provider.create_tables()
    return provider
