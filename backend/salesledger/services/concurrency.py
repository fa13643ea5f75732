# Overview: Atomic unit-of-work execution, row locking and post-commit side effects.

from __future__ import annotations

import time
from dataclasses import dataclass

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from salesledger.errors import CommitConflictError

_CONFLICT_MARKERS = ("locked", "deadlock", "serializ", "busy", "could not obtain lock")


@dataclass(frozen=True)
class SideEffectResult:
    label: str
    ok: bool
    error: str | None = None


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; there the writer lock comes
    from BEGIN IMMEDIATE in execute_atomic. populate_existing() makes the
    locked read overwrite any stale copy in the identity map.
    """
    return query.populate_existing().with_for_update()


def is_isolation_conflict(exc: Exception) -> bool:
    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, OperationalError):
        message = str(getattr(exc, "orig", exc)).lower()
        return any(marker in message for marker in _CONFLICT_MARKERS)
    return False


def _begin_unit(session) -> None:
    if session.get_bind().dialect.name != "sqlite":
        return
    connection = session.connection()
    dbapi_connection = connection.connection.dbapi_connection
    # pysqlite opens its implicit transaction lazily; only take the writer
    # lock when nothing has been written on this connection yet
    if not dbapi_connection.in_transaction:
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def execute_atomic(fn, *, attempts: int | None = None, backoff_base: float | None = None, label: str = "unit"):
    """
    Run fn(session) as one all-or-nothing database transaction.

    - On success the session is flushed and committed and fn's result returned.
    - Any exception rolls the whole unit back. Business errors are re-raised
      untouched and never retried.
    - Isolation conflicts (lock timeouts, deadlocks, optimistic version
      mismatches) are retried with exponential backoff. fn must therefore be
      safe to call again from scratch. When attempts run out,
      CommitConflictError is raised from the last database error.
    """
    if attempts is None:
        attempts = int(current_app.config.get("COMMIT_RETRY_ATTEMPTS", 3))
    if backoff_base is None:
        backoff_base = float(current_app.config.get("COMMIT_RETRY_BACKOFF", 0.1))
    attempts = max(1, attempts)

    session = db.session
    last_exc = None
    for attempt in range(attempts):
        try:
            _begin_unit(session)
            result = fn(session)
            session.flush()
            session.commit()
            return result
        except (OperationalError, StaleDataError) as exc:
            session.rollback()
            if not is_isolation_conflict(exc):
                raise
            last_exc = exc
            current_app.logger.warning(
                "%s: isolation conflict on attempt %d/%d: %s", label, attempt + 1, attempts, exc
            )
            if attempt < attempts - 1:
                time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            session.rollback()
            raise

    raise CommitConflictError(
        f"{label} could not be committed after {attempts} attempts",
        details={"attempts": attempts},
    ) from last_exc


def run_after_commit(fn, *args, label: str | None = None, **kwargs) -> SideEffectResult:
    """
    Execute a best-effort side effect after the business commit.

    Failures are logged and reported in the result; they never propagate.
    """
    label = label or getattr(fn, "__name__", "side_effect")
    try:
        fn(*args, **kwargs)
    except Exception as exc:
        current_app.logger.exception("Side effect %s failed", label)
        db.session.rollback()
        return SideEffectResult(label=label, ok=False, error=str(exc))
    return SideEffectResult(label=label, ok=True)
