"""
Retrying transactions and named savepoints.

Every persistence operation runs through ``TransactionalExecutor``: the work
callable receives a fresh ``Session`` per attempt, the attempt commits or
rolls back as a unit, and retryable failure classes (unique violations,
deadlocks/serialization failures, timeouts) are retried with exponential
backoff plus jitter.
"""

from __future__ import annotations

import random
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TypeVar

import structlog
from sqlalchemy import exc as sa_exc
from sqlalchemy import text
from sqlalchemy.orm import Session, SessionTransaction, sessionmaker

from ..config import Settings, get_settings
from ..errors import FatalDatabaseError, TransientDatabaseError
from .metrics import InMemoryTransactionMetrics, TransactionMetrics

logger = structlog.get_logger()

T = TypeVar("T")

# PostgreSQL SQLSTATE codes
UNIQUE_VIOLATION = "23505"
DEADLOCK_DETECTED = "40P01"
SERIALIZATION_FAILURE = "40001"
QUERY_CANCELED = "57014"

CONFLICT = "conflict"
DEADLOCK = "deadlock"
TIMEOUT = "timeout"

_SAVEPOINTS_KEY = "iudex_savepoints"


@dataclass
class TransactionOptions:
    """Retry policy for a single ``run_in_transaction`` call."""

    max_retries: int = 3
    base_delay: float = 0.1
    max_delay: float = 2.0
    retry_on_conflict: bool = True
    retry_on_deadlock: bool = True
    enable_retry: bool = True

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "TransactionOptions":
        settings = settings or get_settings()
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            retry_on_conflict=settings.retry_on_constraint_violation,
            retry_on_deadlock=settings.retry_on_deadlock,
        )


@dataclass
class SavepointResult:
    """Outcome of ``with_savepoint``."""

    success: bool
    result: Any = None
    error: Optional[BaseException] = None


def _sqlstate(error: BaseException) -> Optional[str]:
    orig = getattr(error, "orig", None)
    # psycopg 3 exposes sqlstate, psycopg2 exposes pgcode
    for attr in ("sqlstate", "pgcode"):
        code = getattr(orig, attr, None)
        if code:
            return str(code)
    return None


def classify_error(error: BaseException) -> Optional[str]:
    """Return the retryable failure class of ``error`` or None.

    Classes are ``conflict`` (unique violation), ``deadlock`` (deadlock or
    serialization failure, SQLite lock contention) and ``timeout``
    (statement timeout or pool checkout timeout).
    """
    if isinstance(error, TransientDatabaseError):
        return error.kind
    if isinstance(error, sa_exc.TimeoutError):
        return TIMEOUT
    if not isinstance(error, sa_exc.DBAPIError):
        return None

    code = _sqlstate(error)
    message = str(error.orig if error.orig is not None else error).lower()

    if code == UNIQUE_VIOLATION:
        return CONFLICT
    if isinstance(error, sa_exc.IntegrityError) and "unique constraint failed" in message:
        return CONFLICT
    if code in (DEADLOCK_DETECTED, SERIALIZATION_FAILURE):
        return DEADLOCK
    if "deadlock detected" in message or "database is locked" in message:
        return DEADLOCK
    if code == QUERY_CANCELED or "statement timeout" in message:
        return TIMEOUT
    return None


def _safe_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", name)


class TransactionalExecutor:
    """Runs units of work in retried transactions.

    Usage:
        executor = TransactionalExecutor(get_session_local())
        run_id = executor.run_in_transaction(lambda session: create_run(session, meta))
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        metrics: Optional[TransactionMetrics] = None,
        options: Optional[TransactionOptions] = None,
        long_transaction_threshold_ms: int = 1000,
        statement_timeout_ms: int = 0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session_factory = session_factory
        self.metrics = metrics or InMemoryTransactionMetrics()
        self.options = options or TransactionOptions()
        self.long_transaction_threshold_ms = long_transaction_threshold_ms
        self.statement_timeout_ms = statement_timeout_ms
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        session_factory: sessionmaker,
        settings: Optional[Settings] = None,
        metrics: Optional[TransactionMetrics] = None,
    ) -> "TransactionalExecutor":
        settings = settings or get_settings()
        return cls(
            session_factory,
            metrics=metrics,
            options=TransactionOptions.from_settings(settings),
            long_transaction_threshold_ms=settings.long_transaction_threshold_ms,
            statement_timeout_ms=settings.statement_timeout_ms,
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def backoff_delay(self, attempt: int, options: Optional[TransactionOptions] = None) -> float:
        """Delay in seconds before retrying after the 0-indexed ``attempt``."""
        opts = options or self.options
        exponential = opts.base_delay * (2 ** attempt)
        jitter = random.uniform(0, 0.3 * exponential)
        return min(exponential + jitter, opts.max_delay)

    def run_in_transaction(
        self,
        work: Callable[[Session], T],
        options: Optional[TransactionOptions] = None,
    ) -> T:
        """Execute ``work(session)`` atomically, retrying transient failures.

        Raises:
            TransientDatabaseError: a retryable failure persisted past
                ``max_retries`` (or its retry was disabled)
            FatalDatabaseError: any other database failure
        """
        opts = options or self.options

        for attempt in range(opts.max_retries + 1):
            session = self._session_factory()
            started = time.monotonic()
            try:
                self._acquire_connection(session)
                self.metrics.increment("transactions")
                self._apply_statement_timeout(session)

                result = work(session)
                session.commit()
            except Exception as e:
                self._rollback(session)
                kind = self._record_failure(e)

                if kind is None:
                    if isinstance(e, sa_exc.DBAPIError):
                        raise FatalDatabaseError(f"Database error: {e.orig or e}") from e
                    raise

                retryable = opts.enable_retry and self._retry_enabled(kind, opts)
                if retryable and attempt < opts.max_retries:
                    self.metrics.increment("retries")
                    delay = self.backoff_delay(attempt, opts)
                    logger.warning(
                        "transaction_retry",
                        attempt=attempt + 1,
                        max_retries=opts.max_retries,
                        kind=kind,
                        error=str(e),
                        delay_ms=round(delay * 1000),
                    )
                    self._sleep(delay)
                    continue

                if retryable:
                    logger.error(
                        "transaction_retries_exhausted",
                        attempts=attempt + 1,
                        kind=kind,
                        error=str(e),
                    )
                raise TransientDatabaseError(
                    f"Transaction failed after {attempt + 1} attempt(s): {e}",
                    kind=kind,
                    attempts=attempt + 1,
                ) from e
            else:
                if attempt > 0:
                    logger.info(
                        "transaction_succeeded_after_retry",
                        attempt=attempt + 1,
                        duration_ms=self._elapsed_ms(started),
                    )
                return result
            finally:
                duration_ms = self._elapsed_ms(started)
                if duration_ms > self.long_transaction_threshold_ms:
                    logger.warning(
                        "long_running_transaction",
                        duration_ms=duration_ms,
                        attempt=attempt + 1,
                    )
                session.close()

        # Unreachable: the final attempt either returns or raises
        raise AssertionError("retry loop exited without a result")

    def _acquire_connection(self, session: Session) -> None:
        # Pool exhaustion blocks here until a connection frees up or
        # pool_timeout elapses
        self.metrics.adjust_gauge("connections_waiting", 1)
        try:
            session.connection()
        finally:
            self.metrics.adjust_gauge("connections_waiting", -1)

    def _apply_statement_timeout(self, session: Session) -> None:
        if self.statement_timeout_ms <= 0:
            return
        if session.get_bind().dialect.name != "postgresql":
            return
        session.execute(text(f"SET LOCAL statement_timeout = {int(self.statement_timeout_ms)}"))

    def _rollback(self, session: Session) -> None:
        self.metrics.increment("rollbacks")
        try:
            session.rollback()
        except sa_exc.SQLAlchemyError as e:
            # The original failure is what the caller needs to see
            logger.warning("rollback_failed", error=str(e))

    def _record_failure(self, error: BaseException) -> Optional[str]:
        kind = classify_error(error)
        if kind == CONFLICT:
            self.metrics.increment("constraint_violations")
        elif kind == DEADLOCK:
            self.metrics.increment("deadlocks")
        elif kind == TIMEOUT:
            self.metrics.increment("timeouts")
        return kind

    @staticmethod
    def _retry_enabled(kind: str, opts: TransactionOptions) -> bool:
        if kind == CONFLICT:
            return opts.retry_on_conflict
        return opts.retry_on_deadlock

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    # ------------------------------------------------------------------
    # Savepoints
    # ------------------------------------------------------------------

    def savepoint(self, session: Session, name: str) -> str:
        """Create a named savepoint inside the session's transaction."""
        safe = _safe_name(name)
        savepoints: Dict[str, SessionTransaction] = session.info.setdefault(
            _SAVEPOINTS_KEY, {}
        )
        if safe in savepoints:
            raise ValueError(f"Savepoint {safe} is already active")
        savepoints[safe] = session.begin_nested()
        logger.debug("savepoint_created", savepoint=safe)
        return safe

    def rollback_to_savepoint(self, session: Session, name: str) -> None:
        """Undo everything since the savepoint; the outer transaction stays open."""
        safe = _safe_name(name)
        self._pop_savepoint(session, safe).rollback()
        logger.debug("savepoint_rolled_back", savepoint=safe)

    def release_savepoint(self, session: Session, name: str) -> None:
        """Keep the savepoint's writes and free it."""
        safe = _safe_name(name)
        self._pop_savepoint(session, safe).commit()
        logger.debug("savepoint_released", savepoint=safe)

    def with_savepoint(
        self,
        session: Session,
        name: str,
        inner: Callable[[Session], Any],
    ) -> SavepointResult:
        """Run ``inner`` under a savepoint; never raises.

        On failure only the savepoint is rolled back, so the enclosing
        transaction can still commit its other writes.
        """
        try:
            safe = self.savepoint(session, name)
        except Exception as e:
            logger.warning("savepoint_create_failed", savepoint=name, error=str(e))
            return SavepointResult(success=False, error=e)

        try:
            result = inner(session)
            # Surface constraint errors while the savepoint is still active
            session.flush()
        except Exception as e:
            logger.warning("savepoint_rollback_on_error", savepoint=safe, error=str(e))
            try:
                self.rollback_to_savepoint(session, safe)
            except Exception as rollback_error:
                logger.error(
                    "savepoint_rollback_failed", savepoint=safe, error=str(rollback_error)
                )
            return SavepointResult(success=False, error=e)

        try:
            self.release_savepoint(session, safe)
        except Exception as e:
            logger.warning("savepoint_release_failed", savepoint=safe, error=str(e))
            return SavepointResult(success=False, error=e)
        return SavepointResult(success=True, result=result)

    @staticmethod
    def _pop_savepoint(session: Session, safe: str) -> SessionTransaction:
        savepoints: Dict[str, SessionTransaction] = session.info.get(_SAVEPOINTS_KEY, {})
        if safe not in savepoints:
            raise KeyError(f"No active savepoint named {safe}")
        # Savepoints created after this one end with it
        names = list(savepoints)
        for later in names[names.index(safe) + 1:]:
            del savepoints[later]
        return savepoints.pop(safe)

    # ------------------------------------------------------------------
    # Pool
    # ------------------------------------------------------------------

    def pool_stats(self) -> Dict[str, Any]:
        """Connection pool usage for external monitoring."""
        engine = self._session_factory.kw.get("bind")
        pool = getattr(engine, "pool", None)

        def _call(method: str) -> Optional[int]:
            fn = getattr(pool, method, None)
            return fn() if callable(fn) else None

        return {
            "pool": type(pool).__name__ if pool is not None else None,
            "size": _call("size"),
            "idle": _call("checkedin"),
            "active": _call("checkedout"),
            "overflow": _call("overflow"),
            "waiting": self.metrics.snapshot().connections_waiting,
        }
