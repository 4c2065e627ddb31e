"""Database configuration and transaction helpers for the billing engine."""

from __future__ import annotations

import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Generator, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

LOGGER = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path(__file__).resolve().parent.parent / "billing.db"
_DEFAULT_DATABASE_URL = f"sqlite:///{_DEFAULT_DB_PATH.as_posix()}"
REQUIRE_POSTGRES_ENV = "REQUIRE_POSTGRES"
POOL_SIZE_ENV = "DATABASE_POOL_SIZE"
POOL_MAX_OVERFLOW_ENV = "DATABASE_MAX_OVERFLOW"
POOL_TIMEOUT_ENV = "DATABASE_POOL_TIMEOUT"
POOL_RECYCLE_ENV = "DATABASE_POOL_RECYCLE"
CONNECT_TIMEOUT_ENV = "DATABASE_CONNECT_TIMEOUT"
RETRY_ATTEMPTS_ENV = "SERIALIZATION_RETRY_ATTEMPTS"
RETRY_BACKOFF_ENV = "SERIALIZATION_RETRY_BACKOFF_MS"

DEFAULT_POOL_SIZE = 5
DEFAULT_MAX_OVERFLOW = 10
DEFAULT_POOL_TIMEOUT = 30
DEFAULT_POOL_RECYCLE = 1800
DEFAULT_CONNECT_TIMEOUT = 10
DEFAULT_RETRY_ATTEMPTS = 5
DEFAULT_RETRY_BACKOFF_MS = 50

SERIALIZABLE = "SERIALIZABLE"
# Connection execution option naming the SQLite BEGIN mode (DEFERRED, IMMEDIATE).
SQLITE_BEGIN_MODE_OPTION = "sqlite_begin_mode"

# SQLSTATE 40001 (serialization_failure) and 40P01 (deadlock_detected).
_SERIALIZATION_SQLSTATES = {"40001", "40P01"}
_SERIALIZATION_MESSAGES = (
    "could not serialize",
    "deadlock",
    "database is locked",
    "write conflict",
)

T = TypeVar("T")


def _ensure_directory(path: str | os.PathLike[str]) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)


def _read_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if value < 0:
        raise ValueError(f"{name} must be non-negative")
    return value


def _read_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _resolve_database_url(raw_url: str | None) -> str:
    if not raw_url:
        if _read_bool_env(REQUIRE_POSTGRES_ENV, False):
            raise RuntimeError(
                "DATABASE_URL must be configured for PostgreSQL when REQUIRE_POSTGRES=1"
            )
        _ensure_directory(_DEFAULT_DB_PATH)
        return _DEFAULT_DATABASE_URL

    url = make_url(raw_url)
    if url.drivername.startswith("sqlite") and url.database not in (None, "", ":memory:"):
        _ensure_directory(url.database)
    if _read_bool_env(REQUIRE_POSTGRES_ENV, False) and url.drivername.startswith("sqlite"):
        raise RuntimeError(
            "SQLite is not permitted when REQUIRE_POSTGRES=1; configure DATABASE_URL"
        )
    return url.render_as_string(hide_password=False)


SQLALCHEMY_DATABASE_URL = _resolve_database_url(os.getenv("DATABASE_URL"))

engine_kwargs: Dict[str, Any] = {}
if SQLALCHEMY_DATABASE_URL.startswith("sqlite"):
    engine_kwargs["connect_args"] = {"check_same_thread": False}
else:
    engine_kwargs.update(
        {
            "pool_pre_ping": True,
            "pool_size": _read_int_env(POOL_SIZE_ENV, DEFAULT_POOL_SIZE),
            "max_overflow": _read_int_env(POOL_MAX_OVERFLOW_ENV, DEFAULT_MAX_OVERFLOW),
            "pool_timeout": _read_int_env(POOL_TIMEOUT_ENV, DEFAULT_POOL_TIMEOUT),
            "pool_recycle": _read_int_env(POOL_RECYCLE_ENV, DEFAULT_POOL_RECYCLE),
            "connect_args": {
                "connect_timeout": _read_int_env(
                    CONNECT_TIMEOUT_ENV, DEFAULT_CONNECT_TIMEOUT
                )
            },
        }
    )


def configure_sqlite_transactions(sqlite_engine: Engine) -> Engine:
    """Let SQLAlchemy, not pysqlite, decide where SQLite transactions begin.

    pysqlite only emits ``BEGIN`` ahead of DML, so reads inside a session
    transaction run outside of it. Connections opened with the
    ``sqlite_begin_mode`` execution option start with ``BEGIN <mode>``;
    ``IMMEDIATE`` takes the database write lock before the first read.
    File databases switch to WAL so readers do not block the writer's commit.
    """

    journal_wal = sqlite_engine.url.database not in (None, "", ":memory:")

    @event.listens_for(sqlite_engine, "connect")
    def _take_over_transactions(dbapi_connection, _connection_record) -> None:
        dbapi_connection.isolation_level = None
        if journal_wal:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    @event.listens_for(sqlite_engine, "begin")
    def _emit_begin(connection) -> None:
        mode = connection.get_execution_options().get(SQLITE_BEGIN_MODE_OPTION)
        connection.exec_driver_sql(f"BEGIN {mode}" if mode else "BEGIN")

    return sqlite_engine


engine = create_engine(SQLALCHEMY_DATABASE_URL, **engine_kwargs)
if engine.dialect.name == "sqlite":
    configure_sqlite_transactions(engine)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator:
    """Yield a database session and ensure it is closed afterwards."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def supports_row_locks(db: Session) -> bool:
    bind = db.get_bind()
    return bool(getattr(bind.dialect, "supports_for_update", False)) and (
        bind.dialect.name != "sqlite"
    )


@contextmanager
def serializable_transaction(db: Session) -> Generator[Session, None, None]:
    """Run a read-modify-write unit of work at SERIALIZABLE isolation.

    Whatever transaction the session already had open is committed first, so
    every read performed inside the block comes from a snapshot taken after
    the block started. The block commits on success and rolls back on any
    exception, which is re-raised unchanged.

    When the session is bound to an engine the isolation level is applied to
    the connection checked out for this transaction. SQLite has no row locks,
    so there the transaction starts with ``BEGIN IMMEDIATE`` and holds the
    database write lock from the first re-read; this requires an engine set
    up with :func:`configure_sqlite_transactions`. Sessions bound to an
    already-open ``Connection`` (nested test transactions) keep the
    transaction of that connection.
    """

    if db.in_transaction():
        db.commit()

    bind = db.get_bind()
    if isinstance(bind, Engine):
        if bind.dialect.name == "sqlite":
            options = {SQLITE_BEGIN_MODE_OPTION: "IMMEDIATE"}
        else:
            options = {"isolation_level": SERIALIZABLE}
        db.connection(execution_options=options)

    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def is_serialization_failure(error: BaseException) -> bool:
    """Return ``True`` when ``error`` is a retryable transaction conflict."""

    if not isinstance(error, DBAPIError):
        return False
    original = getattr(error, "orig", None)
    sqlstate = getattr(original, "sqlstate", None) or getattr(original, "pgcode", None)
    if sqlstate in _SERIALIZATION_SQLSTATES:
        return True
    message = str(original or error).lower()
    return any(fragment in message for fragment in _SERIALIZATION_MESSAGES)


def run_with_serialization_retry(
    operation: Callable[[], T],
    *,
    attempts: int | None = None,
    backoff_ms: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Invoke ``operation`` again when it fails with a serialization conflict.

    This is meant for callers of the billing engine (routers, scheduler
    hooks). Every attempt re-runs the whole operation, so the balance is
    always re-read inside a fresh transaction. Non-conflict errors and the
    last conflict are raised to the caller.
    """

    max_attempts = max(
        attempts if attempts is not None else _read_int_env(RETRY_ATTEMPTS_ENV, DEFAULT_RETRY_ATTEMPTS),
        1,
    )
    delay_ms = (
        backoff_ms
        if backoff_ms is not None
        else _read_int_env(RETRY_BACKOFF_ENV, DEFAULT_RETRY_BACKOFF_MS)
    )

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except DBAPIError as exc:
            if not is_serialization_failure(exc) or attempt == max_attempts:
                raise
            LOGGER.warning(
                "Serialization conflict, retrying",
                extra={"attempt": attempt, "max_attempts": max_attempts},
            )
            sleep(delay_ms * attempt / 1000)

    raise RuntimeError("unreachable")  # pragma: no cover
