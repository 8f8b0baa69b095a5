# Overview: Service-layer concurrency primitives: row locks, optimistic retry, isolation, cancellation.

from __future__ import annotations

import threading
import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..validation import ConflictError, OperationCancelled


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def begin_serializable() -> None:
    """
    Ask for SERIALIZABLE isolation for the transaction about to start.

    Must be called before the first statement of the unit of work. SQLite
    serializes writers already, so it is skipped there.
    """
    if db.engine.dialect.name == "sqlite":
        return
    db.session.connection(execution_options={"isolation_level": "SERIALIZABLE"})


class Cancellation:
    """
    Cancellation signal shared between a request handler and the service call.

    The handler calls cancel() when the client goes away; services call
    raise_if_cancelled() before committing so nothing half-applied is written.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("operation cancelled by caller")


def check_cancelled(cancel: Cancellation | None) -> None:
    if cancel is not None:
        cancel.raise_if_cancelled()


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB unit of work with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic version mismatch). func must re-read everything it needs, so a
    retry re-validates from scratch. A StaleDataError that survives every
    attempt becomes ConflictError. OperationCancelled rolls back and is never
    retried.
    """
    if attempts is None:
        attempts = current_app.config.get("CONCURRENCY_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("CONCURRENCY_RETRY_BACKOFF", 0.05)

    for attempt in range(attempts):
        try:
            return func()
        except OperationCancelled:
            db.session.rollback()
            raise
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                if isinstance(exc, StaleDataError):
                    raise ConflictError("concurrent update detected, please retry") from exc
                raise
            current_app.logger.warning(
                "Concurrency conflict (%s), retrying attempt %d/%d",
                type(exc).__name__, attempt + 2, attempts,
            )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
