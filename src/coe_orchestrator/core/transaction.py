"""Transaction execution and transient-error retry for the ticket store."""

import logging
import sqlite3
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from coe_orchestrator.errors import StoreBusyError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSACTION_MODES = ("DEFERRED", "IMMEDIATE", "EXCLUSIVE")

_RETRYABLE_MARKERS = ("sqlite_busy", "sqlite_locked", "database is locked", "database is busy")


class Executor(Protocol):
    def run(self, sql: str, params: Sequence[Any] = ()) -> None: ...

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]: ...

    def get(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None: ...


class SqliteExecutor:
    """Executor over an autocommit sqlite3 connection."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def run(self, sql: str, params: Sequence[Any] = ()) -> None:
        self.conn.execute(sql, params)

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        return self.conn.execute(sql, params).fetchall()

    def get(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        return self.conn.execute(sql, params).fetchone()


@dataclass
class TransactionResult:
    committed: bool
    rolled_back: bool
    value: Any = None
    error: Exception | None = None
    commit_attempted: bool = False


def with_transaction(
    executor: Executor,
    body: Callable[[Executor], T],
    mode: str = "DEFERRED",
) -> TransactionResult:
    """Run ``body`` between BEGIN and COMMIT, rolling back if anything raises.

    A call either commits or rolls back, never both. A COMMIT that raises
    leaves SQLite's transaction open, so it is followed by a ROLLBACK and
    the result has ``commit_attempted`` set. A failed ROLLBACK is logged;
    the result still reports the transaction as rolled back.
    """
    mode = mode.upper()
    if mode not in TRANSACTION_MODES:
        raise ValueError(f"Invalid transaction mode: {mode}")

    commit_attempted = False
    try:
        executor.run(f"BEGIN {mode}")
        value = body(executor)
        commit_attempted = True
        executor.run("COMMIT")
    except Exception as e:
        if commit_attempted:
            logger.error("Commit failed, rolling back: %s", e)
        else:
            logger.error("Transaction failed: %s", e)
        try:
            executor.run("ROLLBACK")
        except sqlite3.Error as rollback_error:
            logger.warning("Rollback also failed: %s", rollback_error)
        return TransactionResult(
            committed=False, rolled_back=True, error=e, commit_attempted=commit_attempted
        )

    return TransactionResult(
        committed=True, rolled_back=False, value=value, commit_attempted=True
    )


def is_retryable_error(error: BaseException) -> bool:
    """Contention errors are worth retrying; constraint violations are not."""
    if isinstance(error, sqlite3.IntegrityError):
        return False
    if isinstance(error, sqlite3.OperationalError):
        code = getattr(error, "sqlite_errorname", "") or ""
        if code.startswith(("SQLITE_BUSY", "SQLITE_LOCKED")):
            return True
    message = str(error).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)


def with_retry(
    operation: Callable[[], T],
    max_retries: int = 5,
    base_delay: float = 0.1,
    max_delay: float = 5.0,
) -> T:
    """Call ``operation``, retrying transient store errors with jittered backoff.

    Non-retryable errors propagate immediately. Exhausting the retry cap
    raises StoreBusyError chained to the last error. Backoff sleeps block
    the calling thread.
    """
    retrying = Retrying(
        retry=retry_if_exception(is_retryable_error),
        wait=wait_exponential(multiplier=base_delay, max=max_delay) + wait_random(0, base_delay),
        stop=stop_after_attempt(max_retries + 1),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=False,
    )
    try:
        return retrying(operation)
    except RetryError as e:
        last = e.last_attempt.exception()
        raise StoreBusyError(f"Store still busy after {max_retries} retries: {last}") from last
