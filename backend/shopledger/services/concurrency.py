# Overview: Transaction boundary, row locking, and retry on concurrency failures.

from __future__ import annotations

import logging
import time

from flask import current_app, has_app_context
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from .errors import ConcurrencyConflict

logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write() covers it there.
    """
    return query.with_for_update()


def begin_write(session) -> None:
    """
    Take the database write lock up front on SQLite.

    SQLite has no row locks, so two checkouts could both read the last unit
    before either writes. BEGIN IMMEDIATE serializes writers for the whole
    transaction. No-op on other dialects and when a transaction is already
    open on the connection.
    """
    if session.get_bind().dialect.name != "sqlite":
        return
    raw = session.connection().connection.dbapi_connection
    if not getattr(raw, "in_transaction", False):
        session.execute(text("BEGIN IMMEDIATE"))


def _setting(name: str, default):
    if has_app_context():
        return current_app.config.get(name, default)
    return default


def run_in_transaction(session, func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute func() as one database transaction and commit it.

    - Any exception rolls the session back and propagates (no partial commit).
    - OperationalError (deadlock, lock timeout) and StaleDataError (version_id
      conflict) are retried; when the last attempt also fails the caller gets
      ConcurrencyConflict.
    """
    if attempts is None:
        attempts = _setting("TX_RETRY_ATTEMPTS", 2)
    if backoff_base is None:
        backoff_base = _setting("TX_RETRY_BACKOFF", 0.05)

    for attempt in range(attempts):
        try:
            begin_write(session)
            result = func()
            session.commit()
            return result
        except (OperationalError, StaleDataError) as exc:
            session.rollback()
            if attempt >= attempts - 1:
                raise ConcurrencyConflict(
                    "Concurrent update conflict, please retry",
                    details={"attempts": attempts, "cause": exc.__class__.__name__},
                ) from exc
            logger.warning(
                "Concurrency conflict on attempt %s/%s, retrying: %s",
                attempt + 1,
                attempts,
                exc.__class__.__name__,
            )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            session.rollback()
            raise
