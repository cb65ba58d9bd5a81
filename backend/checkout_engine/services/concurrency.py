# Overview: Service-layer operations for concurrency; row locks, write transactions and bounded retry.

from __future__ import annotations

import logging
import time

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..errors import ConcurrencyConflictError

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write() covers it there.
    """
    return query.with_for_update().populate_existing()


def begin_write() -> None:
    """
    Open the write transaction for a compare-and-commit step.

    SQLite has no row locks, so the transaction is taken with BEGIN IMMEDIATE:
    a concurrent writer waits on the busy timeout instead of reading a value
    that is about to change. Other databases rely on lock_for_update().
    Must be the first statement of the transaction.
    """
    if db.engine.dialect.name == "sqlite":
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(
    func,
    *,
    attempts: int = 3,
    backoff_base: float = 0.1,
    retry_on: tuple = RETRYABLE_ERRORS,
    label: str = "operation",
):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts), plus anything in retry_on.
    Any other exception rolls the session back and propagates untouched.
    When the retry budget is spent, ConcurrencyConflictError is raised.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except retry_on as exc:
            db.session.rollback()
            last_exc = exc
            logger.debug("%s conflicted (attempt %d/%d): %s", label, attempt + 1, attempts, exc)
            if attempt < attempts - 1:
                time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise

    logger.warning("%s gave up after %d attempts", label, attempts)
    raise ConcurrencyConflictError(
        f"{label} could not be committed due to concurrent updates, please retry",
        details={"attempts": attempts, "cause": type(last_exc).__name__},
    ) from last_exc
