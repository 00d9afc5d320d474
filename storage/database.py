"""
Storage - Database.

============================================================
RESPONSIBILITY
============================================================
Engine, session factory and schema bootstrap for the account
store.

- Connection pooling sized from DatabaseConfig
- Session factory with explicit transaction boundaries
- Table creation and the public binding catalogue

============================================================
DATABASE REQUIREMENTS
============================================================
- PostgreSQL as primary database (psycopg2)
- SQLite accepted for tests; the connection is set up so
  SAVEPOINTs and foreign keys behave as on PostgreSQL, and
  transactions take the write lock up front (BEGIN IMMEDIATE)

============================================================
"""

import logging
from contextlib import contextmanager
from typing import Dict, Generator, Iterable, List, Optional

from sqlalchemy import create_engine, event, inspect, select, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from core.config import DatabaseConfig
from core.exceptions import AccountStoreException, ErrorCode
from storage.models import Base, ExchangeBinding
from storage.models.enums import BindingStatus, BindingVisibility


logger = logging.getLogger(__name__)


# =============================================================
# CUSTOM EXCEPTIONS
# =============================================================


class DatabasePersistenceError(AccountStoreException):
    """Raised when database persistence fails."""


class DatabaseConnectionError(DatabasePersistenceError):
    """Raised when the database cannot be reached."""

    code = ErrorCode.TRANSIENT
    retryable = True


class DatabaseInitializationError(DatabasePersistenceError):
    """Raised when schema bootstrap fails."""


# =============================================================
# PUBLIC BINDING CATALOGUE
# =============================================================

PUBLIC_BINDINGS: List[Dict[str, str]] = [
    {"name": "Binance", "exchange_type": "binance", "description": "Binance spot market data"},
    {"name": "Kraken", "exchange_type": "kraken", "description": "Kraken spot market data"},
    {"name": "Gate.io", "exchange_type": "gate", "description": "Gate.io spot market data"},
    {"name": "Coinbase", "exchange_type": "coinbase", "description": "Coinbase spot market data"},
    {"name": "Virtual", "exchange_type": "virtual", "description": "Paper trading without an exchange account"},
]

REQUIRED_TABLES = [
    "users",
    "oauth_tokens",
    "exchanges",
    "tradings",
    "sub_accounts",
    "transactions",
    "trading_logs",
    "event_processing",
]


# =============================================================
# DATABASE ENGINE
# =============================================================


def create_database_engine(config: DatabaseConfig) -> Engine:
    """
    Create SQLAlchemy engine with connection pooling.

    Args:
        config: Pool sizing and connection URL

    Returns:
        SQLAlchemy Engine
    """
    url = make_url(config.url)
    logger.info(f"Creating database engine for: {url.render_as_string(hide_password=True)}")

    if url.get_backend_name() == "sqlite":
        engine = _create_sqlite_engine(config)
    else:
        engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_timeout=config.pool_timeout,
            pool_recycle=config.pool_recycle,
            pool_pre_ping=True,
            echo=config.echo,
        )

    @event.listens_for(engine, "checkout")
    def on_checkout(dbapi_conn, connection_record, connection_proxy):
        logger.debug("Database connection checked out from pool")

    return engine


def _create_sqlite_engine(config: DatabaseConfig) -> Engine:
    url = make_url(config.url)
    in_memory = url.database in (None, "", ":memory:")
    kwargs = {"echo": config.echo, "connect_args": {"check_same_thread": False}}
    if in_memory:
        kwargs["poolclass"] = StaticPool

    engine = create_engine(url, **kwargs)

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_conn, connection_record):
        # pysqlite's own transaction handling breaks SAVEPOINT
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def on_begin(conn):
        # SQLite has no FOR UPDATE; writers queue on the database lock instead
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def get_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to ``engine``."""
    return sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
    )


# =============================================================
# SESSION MANAGEMENT
# =============================================================


@contextmanager
def transaction_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for explicit transaction boundaries.

    Commits only if no exception occurs.
    Rolls back on ANY exception and re-raises it unchanged.

    Usage:
        with transaction_scope(factory) as session:
            UserRepository(session).create(user)
            # Commits automatically at end
    """
    session = session_factory()
    try:
        yield session
        session.commit()
        logger.debug("Database transaction committed successfully")
    except Exception as e:
        logger.debug(f"Database transaction rolled back: {type(e).__name__}")
        session.rollback()
        raise
    finally:
        session.close()


# =============================================================
# DATABASE INITIALIZATION
# =============================================================


def verify_database_connection(engine: Engine) -> bool:
    """
    Verify database connection is working.

    Raises:
        DatabaseConnectionError: If connection fails
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        logger.info("Database connection verified successfully")
        return True
    except OperationalError as e:
        logger.error(f"Database connection failed: {e}")
        raise DatabaseConnectionError(f"Cannot connect to database: {e}", cause=e) from e


def create_all_tables(engine: Engine) -> None:
    """
    Create all tables defined in ORM models.

    Raises:
        DatabaseInitializationError: If table creation fails
    """
    try:
        logger.info("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")
    except SQLAlchemyError as e:
        logger.error(f"Failed to create database tables: {e}")
        raise DatabaseInitializationError(f"Table creation failed: {e}", cause=e) from e


def verify_required_tables(engine: Engine) -> List[str]:
    """Return the required tables that are missing (logged as warnings)."""
    existing = set(inspect(engine).get_table_names())
    missing = []
    for table in REQUIRED_TABLES:
        if table in existing:
            logger.info(f"  [OK] Table verified: {table}")
        else:
            logger.warning(f"  [!!] Table missing: {table}")
            missing.append(table)
    return missing


def seed_public_bindings(
    session: Session,
    catalogue: Optional[Iterable[Dict[str, str]]] = None,
) -> int:
    """
    Insert the ownerless public bindings that do not exist yet.

    Idempotent: a live public binding with the same name is left
    untouched.

    Returns:
        Number of bindings inserted
    """
    inserted = 0
    for entry in catalogue or PUBLIC_BINDINGS:
        stmt = select(ExchangeBinding.id).where(
            ExchangeBinding.user_id.is_(None),
            ExchangeBinding.name == entry["name"],
            ExchangeBinding.deleted_at.is_(None),
        )
        if session.execute(stmt).first() is not None:
            continue

        binding = ExchangeBinding(
            name=entry["name"],
            exchange_type=entry["exchange_type"],
            visibility=BindingVisibility.PUBLIC.value,
            status=BindingStatus.ACTIVE.value,
            info={"description": entry.get("description", "")},
        )
        binding.apply_defaults()
        binding.validate()
        session.add(binding)
        inserted += 1

    session.flush()
    if inserted:
        logger.info(f"Seeded {inserted} public exchange bindings")
    return inserted


def initialize_database(engine: Engine, seed: bool = True) -> None:
    """
    Full database initialization sequence.

    1. Verify connection
    2. Create tables if not exist
    3. Seed the public binding catalogue
    4. Abort on any failure
    """
    logger.info("=" * 60)
    logger.info("INITIALIZING ACCOUNT STORE DATABASE")
    logger.info("=" * 60)

    try:
        verify_database_connection(engine)
        create_all_tables(engine)
        missing = verify_required_tables(engine)
        if missing:
            raise DatabaseInitializationError(
                f"Required tables missing: {', '.join(missing)}",
                context={"missing": missing},
            )
        if seed:
            with transaction_scope(get_session_factory(engine)) as session:
                seed_public_bindings(session)
    except AccountStoreException as e:
        logger.critical(f"DATABASE INITIALIZATION FAILED: {e}")
        raise
    except SQLAlchemyError as e:
        logger.critical(f"DATABASE INITIALIZATION FAILED: {e}")
        raise DatabaseInitializationError(f"Initialization failed: {e}", cause=e) from e

    logger.info("DATABASE INITIALIZATION COMPLETE")


__all__ = [
    "PUBLIC_BINDINGS",
    "REQUIRED_TABLES",
    "create_database_engine",
    "get_session_factory",
    "transaction_scope",
    "verify_database_connection",
    "create_all_tables",
    "verify_required_tables",
    "seed_public_bindings",
    "initialize_database",
    "DatabasePersistenceError",
    "DatabaseConnectionError",
    "DatabaseInitializationError",
]
