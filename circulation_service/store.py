"""
Relational store access: engine/session setup, the transaction boundary every
mutating operation runs inside, and translation of driver failures into
StoreTimeout / StoreConflict.
"""
import functools
import logging
import time
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker

from .errors import StoreConflict, StoreTimeout
from .models import Base

logger = logging.getLogger(__name__)

_CONFLICT_MARKERS = (
    "database is locked",
    "database table is locked",
    "could not serialize",
    "deadlock",
)
_TIMEOUT_MARKERS = (
    "statement timeout",
    "lock timeout",
    "lock wait timeout",
    "timeout expired",
    "timed out",
)


def _engine_options(config):
    uri = config.SQLALCHEMY_DATABASE_URI
    timeout = config.STORE_TIMEOUT_SECONDS
    options = {"echo": getattr(config, "SQLALCHEMY_ECHO", False), "future": True}

    if uri.startswith("sqlite"):
        # busy timeout bounds how long a writer waits for the lock
        options["connect_args"] = {"timeout": timeout, "check_same_thread": False}
    else:
        options["pool_timeout"] = timeout
        options["pool_pre_ping"] = True
        if uri.startswith("postgresql"):
            options["connect_args"] = {
                "connect_timeout": max(1, int(timeout)),
                "options": f"-c statement_timeout={int(timeout * 1000)}",
            }
    return options


def translate_error(exc):
    """Map a driver exception onto the store taxonomy, or None if unrelated."""
    if isinstance(exc, PoolTimeoutError):
        return StoreTimeout(f"Store connection pool timed out: {exc}")

    if isinstance(exc, OperationalError):
        text = str(exc.orig if exc.orig is not None else exc).lower()
        if any(marker in text for marker in _TIMEOUT_MARKERS):
            return StoreTimeout(f"Store call timed out: {text}")
        if any(marker in text for marker in _CONFLICT_MARKERS):
            return StoreConflict(f"Concurrent update conflict: {text}")
    return None


class Store:
    def __init__(self, config):
        self.conflict_attempts = max(1, int(config.CONFLICT_RETRY_ATTEMPTS))
        self.conflict_backoff = float(config.CONFLICT_RETRY_BACKOFF)

        self.engine = create_engine(
            config.SQLALCHEMY_DATABASE_URI, **_engine_options(config)
        )
        if self.engine.dialect.name == "sqlite":
            _enable_sqlite_immediate_transactions(self.engine)

        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
        )

    def create_all(self):
        Base.metadata.create_all(self.engine)

    def dispose(self):
        self.engine.dispose()

    @contextmanager
    def transaction(self):
        """
        One unit of work: commit on success, roll back and re-raise on any
        failure. Driver errors come out as StoreTimeout/StoreConflict.
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception as exc:
            session.rollback()
            translated = translate_error(exc)
            if translated is not None:
                raise translated from exc
            raise
        finally:
            session.close()

    @contextmanager
    def read_session(self):
        session = self.SessionLocal()
        try:
            yield session
        except Exception as exc:
            translated = translate_error(exc)
            if translated is not None:
                raise translated from exc
            raise
        finally:
            session.close()


def _enable_sqlite_immediate_transactions(engine):
    # pysqlite defers BEGIN until the first write, which lets two writers both
    # read and then deadlock on upgrade. Take the write lock up front instead.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def retry_on_conflict(func):
    """
    Retry a service method when the store reports a conflict. Attempts and
    backoff come from the owning service's store. Timeouts are not retried
    here: their effect is unknown, so the caller decides.
    """
    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        attempts = self.store.conflict_attempts
        delay = self.store.conflict_backoff
        for attempt in range(1, attempts + 1):
            try:
                return func(self, *args, **kwargs)
            except StoreConflict:
                if attempt == attempts:
                    logger.error(
                        "%s gave up after %d conflicting attempts",
                        func.__name__,
                        attempts,
                    )
                    raise
                logger.warning(
                    "%s hit a store conflict, retrying (%d/%d)",
                    func.__name__,
                    attempt,
                    attempts,
                )
                time.sleep(delay)
                delay *= 2

    return wrapper
