# Overview: Service-layer helpers for transactional retries and idempotency fences.

from __future__ import annotations

import time

from sqlalchemy import UniqueConstraint, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, "database is locked") and
    StaleDataError (optimistic locking conflicts). Business errors and
    IntegrityError propagate immediately.
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
    if last_exc:
        raise last_exc


def claim_row(model, *, where, values: dict) -> bool:
    """
    Atomic conditional UPDATE used as an execution claim.

    Returns True when exactly one row matched `where` and was updated, i.e.
    the caller won the claim. Does not commit.
    """
    result = db.session.execute(
        update(model)
        .where(*where)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _constrained_columns(constraint_name: str) -> list[str]:
    for table in db.metadata.tables.values():
        for constraint in table.constraints:
            if isinstance(constraint, UniqueConstraint) and constraint.name == constraint_name:
                return [f"{table.name}.{column.name}" for column in constraint.columns]
    return []


def is_unique_violation(exc: IntegrityError, constraint_name: str) -> bool:
    """
    Check that an IntegrityError came from the named unique fence.

    PostgreSQL names the violated constraint. SQLite only lists the
    constrained columns ("UNIQUE constraint failed: orders.order_number"),
    so those are matched against the constraint declared in the metadata.
    """
    message = str(getattr(exc, "orig", exc)).lower()
    if constraint_name.lower() in message:
        return True
    prefix = "unique constraint failed:"
    if prefix not in message:
        return False
    failed = [part.strip() for part in message.split(prefix, 1)[1].splitlines()[0].split(",")]
    columns = [c.lower() for c in _constrained_columns(constraint_name)]
    return bool(columns) and failed == columns
