# Overview: Transaction helpers shared by the order, inventory and promo services.

from __future__ import annotations

import time

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; use begin_write() there.
    """
    return query.with_for_update()


def begin_write():
    """
    Take the database write lock up front on SQLite.

    SQLite has no row locks: BEGIN IMMEDIATE serializes writers so a
    check-then-insert inside the transaction cannot interleave with another
    writer. Other databases rely on row locks and unique constraints instead.
    """
    if db.engine.dialect.name == "sqlite":
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            # Release the write transaction before the error leaves the service
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc
