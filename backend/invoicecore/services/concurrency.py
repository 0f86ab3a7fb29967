# Overview: Service-layer operations for concurrency; the atomic unit of work every lifecycle transition runs in.

from __future__ import annotations

import time
from typing import Callable, TypeVar

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db

T = TypeVar("T")


class RetryableConflictError(Exception):
    """
    Raised inside a unit of work to ask for a clean retry.

    Used for conflicts that a fresh transaction resolves, e.g. two
    transitions that picked the same auto-assigned invoice number.
    """


RETRYABLE_ERRORS = (OperationalError, StaleDataError, RetryableConflictError)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def begin_write_transaction() -> None:
    """
    Take the database write lock up front on SQLite.

    WHY: pysqlite defers BEGIN until the first DML, so reads done before it
    (stock checks, invoice number lookups) would run outside the
    transaction. BEGIN IMMEDIATE serializes writers from the first read.
    Server databases rely on guarded UPDATEs and unique constraints instead.
    """
    if db.engine.dialect.name != "sqlite":
        return
    raw = db.session.connection().connection.dbapi_connection
    if raw is not None and raw.in_transaction:
        return
    db.session.execute(text("BEGIN IMMEDIATE"))


def run_atomic(
    func: Callable[[], T],
    *,
    attempts: int | None = None,
    backoff_base: float | None = None,
    label: str = "transaction",
) -> T:
    """
    Run func as one atomic unit of work: commit on success, roll back on any error.

    Retries the WHOLE unit on transient conflicts (OperationalError such as
    "database is locked", StaleDataError from optimistic locking, and
    RetryableConflictError). Every other error is rolled back and
    propagated untouched on the first attempt; business rejections such as
    insufficient stock would not change on retry.

    Because every attempt starts from a rolled-back session, nothing done by
    a failed attempt (stock decrement, postings, balance increments) can
    survive into the next one.
    """
    if attempts is None:
        attempts = current_app.config.get("INVOICE_TXN_MAX_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("INVOICE_TXN_BACKOFF_BASE", 0.1)
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        try:
            begin_write_transaction()
            result = func()
            db.session.commit()
            return result
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            if attempt >= attempts:
                current_app.logger.error(
                    "%s failed after %d attempts: %s", label, attempts, exc
                )
                raise
            current_app.logger.warning(
                "%s conflict on attempt %d/%d, retrying: %s", label, attempt, attempts, exc
            )
            time.sleep(backoff_base * (2 ** (attempt - 1)))
        except Exception:
            db.session.rollback()
            raise
