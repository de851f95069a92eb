# Overview: Service-layer helpers for concurrency; guarded updates, fresh reads and retry.

from __future__ import annotations

import logging
import time

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


logger = logging.getLogger(__name__)


class ConcurrencyConflict(Exception):
    """Raised when a lost update is still detected after a fresh re-read."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def guarded_update(model, *criteria, **values) -> int:
    """
    Conditional UPDATE; returns the number of rows that matched.

    This is the compare-and-swap primitive: the WHERE clause carries the
    precondition (stock >= qty, status != 'completed', ...), so two writers
    racing on the same row cannot both succeed. In-session objects are not
    synchronized; callers re-read with populate_existing when they need the
    new values.
    """
    if hasattr(model, "version_id") and "version_id" not in values:
        values["version_id"] = model.version_id + 1

    stmt = (
        update(model)
        .where(*criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    return result.rowcount or 0


def reload(model, pk):
    """Fresh read of a row, overwriting whatever the session holds."""
    return db.session.get(model, pk, populate_existing=True)


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    - OperationalError (deadlocks, "database is locked"): retried with
      exponential backoff up to `attempts` times.
    - StaleDataError (optimistic version_id conflict): retried once with a
      fresh session state, then surfaced as ConcurrencyConflict.
    """
    stale_retried = False
    attempt = 0
    while True:
        try:
            return func()
        except StaleDataError as exc:
            db.session.rollback()
            if stale_retried:
                raise ConcurrencyConflict(
                    "Record was modified concurrently; please retry",
                ) from exc
            stale_retried = True
            logger.warning("Optimistic lock conflict, retrying once: %s", exc)
        except OperationalError:
            db.session.rollback()
            attempt += 1
            if attempt >= attempts:
                raise
            time.sleep(backoff_base * (2 ** (attempt - 1)))

