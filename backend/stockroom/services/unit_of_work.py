# Overview: Transaction boundary and concurrency helpers shared by the write services.

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db

logger = logging.getLogger(__name__)

# Lock waits, deadlocks and optimistic version conflicts are worth another attempt.
RETRYABLE_ERRORS = (OperationalError, StaleDataError)


class PersistenceError(Exception):
    """Raised when a unit of work cannot be committed; nothing was written."""


def lock_for_update(query):
    """
    Apply row-level locking for read-modify-write sequences.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; version_id columns cover it there.
    populate_existing() makes sure a row already in the identity map is re-read
    under the lock instead of being served stale.
    """
    return query.with_for_update().populate_existing()


class UnitOfWork:
    """
    Explicit all-or-nothing boundary around db.session.

    Usage:
        with UnitOfWork():
            ...writes...

    Any exception inside the block rolls back every write of the block. A
    commit failure rolls back too; retryable failures propagate unchanged so
    run_with_retry can try again, anything else becomes PersistenceError.
    """

    def __init__(self, session=None):
        self.session = session if session is not None else db.session
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def begin(self) -> "UnitOfWork":
        if self._active:
            raise RuntimeError("unit of work already started")
        self._active = True
        return self

    def commit(self) -> None:
        try:
            self.session.commit()
        except RETRYABLE_ERRORS:
            self.rollback()
            raise
        except SQLAlchemyError as exc:
            self.rollback()
            logger.error("Commit failed, unit of work rolled back: %s", exc)
            raise PersistenceError("could not commit changes") from exc
        self._active = False

    def rollback(self) -> None:
        self.session.rollback()
        self._active = False

    def __enter__(self) -> "UnitOfWork":
        return self.begin()

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self.commit()
            return False

        self.rollback()
        if isinstance(exc, SQLAlchemyError) and not isinstance(exc, RETRYABLE_ERRORS):
            raise PersistenceError("could not apply changes") from exc
        return False


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    func must re-read everything it needs: after a rollback every ORM instance
    loaded by the previous attempt is expired.
    """
    for attempt in range(attempts):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            logger.warning("Retrying after concurrency failure (attempt %d): %s", attempt + 1, exc)
            time.sleep(backoff_base * (2 ** attempt))


def run_in_unit_of_work(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """Run func inside a fresh UnitOfWork, retrying the whole unit on conflicts."""
    def _op():
        with UnitOfWork():
            return func()

    return run_with_retry(_op, attempts=attempts, backoff_base=backoff_base)
