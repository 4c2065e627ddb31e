"""Bring the billing schema to the latest Alembic revision on startup."""

from __future__ import annotations

import errno
import logging
import os
import time
from pathlib import Path
from typing import IO, Callable, Optional, Sequence

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, inspect
from sqlalchemy.engine.reflection import Inspector

from .database import SQLALCHEMY_DATABASE_URL

LOGGER = logging.getLogger(__name__)

BACKEND_DIR = Path(__file__).resolve().parent.parent
LOCK_FILENAME = ".alembic-migration.lock"
LOCK_TIMEOUT_ENV = "ALEMBIC_MIGRATION_LOCK_TIMEOUT"
DEFAULT_LOCK_TIMEOUT = 30.0

if os.name == "posix":  # pragma: no cover - platform specific
    import fcntl
else:  # pragma: no cover - platform specific
    import msvcrt


def _column_exists(inspector: Inspector, table_name: str, column_name: str) -> bool:
    if not inspector.has_table(table_name):
        return False
    return column_name in {column["name"] for column in inspector.get_columns(table_name)}


# Newest first. Each check recognises a schema created with ``create_all``.
REVISION_SENTINELS: Sequence[tuple[str, Callable[[Inspector], bool]]] = (
    (
        "20261019_0001",
        lambda inspector: _column_exists(inspector, "prepaid_transactions", "invoice_requested")
        and inspector.has_table("invoice_delivery_logs"),
    ),
)


def _read_lock_timeout() -> float:
    raw = os.getenv(LOCK_TIMEOUT_ENV)
    if not raw:
        return DEFAULT_LOCK_TIMEOUT
    try:
        value = float(raw)
    except ValueError:
        value = 0.0
    if value <= 0:
        LOGGER.warning(
            "Ignoring %s=%s; using %.1f seconds", LOCK_TIMEOUT_ENV, raw, DEFAULT_LOCK_TIMEOUT
        )
        return DEFAULT_LOCK_TIMEOUT
    return value


class MigrationLock:
    """Inter-process file lock so only one worker runs Alembic at a time."""

    retry_delay = 0.25

    def __init__(self, path: Path, *, timeout: float) -> None:
        self.path = path
        self.timeout = timeout
        self._handle: Optional[IO[str]] = None

    @staticmethod
    def _is_conflict(error: OSError) -> bool:
        if isinstance(error, BlockingIOError):
            return True
        if error.errno in {errno.EACCES, errno.EAGAIN, errno.EBUSY}:
            return True
        # ERROR_SHARING_VIOLATION / ERROR_LOCK_VIOLATION on Windows.
        return getattr(error, "winerror", None) in {32, 33}

    def _try_lock(self) -> None:
        if os.name == "posix":  # pragma: no cover - platform specific
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        else:  # pragma: no cover - platform specific
            msvcrt.locking(self._handle.fileno(), msvcrt.LK_NBLCK, 1)

    def _unlock(self) -> None:
        if os.name == "posix":  # pragma: no cover - platform specific
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        else:  # pragma: no cover - platform specific
            msvcrt.locking(self._handle.fileno(), msvcrt.LK_UNLCK, 1)

    def __enter__(self) -> "MigrationLock":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = self.path.open("a+")
        deadline = time.monotonic() + self.timeout
        LOGGER.debug("Acquiring migration lock at %s", self.path)
        while True:
            try:
                self._try_lock()
                return self
            except OSError as error:
                if not self._is_conflict(error):
                    self._handle.close()
                    raise
                if time.monotonic() >= deadline:
                    self._handle.close()
                    raise TimeoutError("Timed out waiting for the migration lock") from error
                time.sleep(self.retry_delay)

    def __exit__(self, *exc_info) -> None:
        try:
            self._unlock()
        except OSError:  # pragma: no cover - lock dies with the handle
            LOGGER.debug("Could not release migration lock at %s", self.path)
        finally:
            self._handle.close()
            self._handle = None


def build_alembic_config(database_url: str | None = None) -> Config:
    config = Config(str(BACKEND_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(BACKEND_DIR / "alembic"))
    config.set_main_option(
        "sqlalchemy.url", database_url or os.getenv("DATABASE_URL") or SQLALCHEMY_DATABASE_URL
    )
    return config


def _detect_unversioned_revision(inspector: Inspector) -> str | None:
    has_tables = any(name != "alembic_version" for name in inspector.get_table_names())
    if not has_tables:
        return None
    for revision, matches in REVISION_SENTINELS:
        if matches(inspector):
            return revision
    return None


def run_database_migrations() -> None:
    """Upgrade the configured database to head.

    Databases created outside Alembic (``Base.metadata.create_all``) are
    stamped with the revision their tables correspond to instead of being
    migrated from scratch.
    """

    config = build_alembic_config()
    url = config.get_main_option("sqlalchemy.url")
    LOGGER.info("Running database migrations at %s", url)

    with MigrationLock(BACKEND_DIR / LOCK_FILENAME, timeout=_read_lock_timeout()):
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        engine = create_engine(url, connect_args=connect_args)
        try:
            inspector = inspect(engine)
            detected = (
                None
                if inspector.has_table("alembic_version")
                else _detect_unversioned_revision(inspector)
            )
        finally:
            engine.dispose()

        if detected is not None:
            LOGGER.info("Existing schema matches revision %s; stamping", detected)
            command.stamp(config, detected)
            if detected == ScriptDirectory.from_config(config).get_current_head():
                return
        command.upgrade(config, "head")
