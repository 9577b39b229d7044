"""
Run persistence and chunking.

Small runs are written in one transaction: the suite, the run row, every
result and deletion reconciliation commit or roll back together. Large runs
are written as a header transaction followed by ordered chunks, each in its
own retried transaction, and a final reconciliation transaction. A failed
chunk is recorded in the summary and does not undo chunks already committed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .db.base import dialect_insert
from .db.models import TestRunModel, TestSuiteModel
from .db.transactions import TransactionalExecutor
from .deletion import DeletionDetector
from .errors import FatalDatabaseError, PartialBatchFailure
from .identity import IdentityResolver
from .schemas import (
    BatchFailure,
    DeletedTest,
    IdentityDescriptor,
    OutcomeStatus,
    PersistSummary,
    RunMeta,
    RunOutcome,
    as_utc,
    utc_now,
)

logger = structlog.get_logger()


class BatchCoordinator:
    """Persists one run's outcomes, choosing single or batched mode."""

    def __init__(
        self,
        executor: TransactionalExecutor,
        resolver: Optional[IdentityResolver] = None,
        detector: Optional[DeletionDetector] = None,
        batch_size: int = 100,
        enable_batching: bool = True,
        throw_on_error: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.executor = executor
        self.resolver = resolver or IdentityResolver(clock=clock)
        self.detector = detector or DeletionDetector(clock=clock)
        self.batch_size = batch_size
        self.enable_batching = enable_batching
        self.throw_on_error = throw_on_error
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        executor: TransactionalExecutor,
        settings: Optional[Settings] = None,
    ) -> "BatchCoordinator":
        settings = settings or get_settings()
        return cls(
            executor,
            batch_size=settings.batch_size,
            enable_batching=settings.enable_batching,
            throw_on_error=settings.throw_on_error,
        )

    def persist_run(
        self,
        run_meta: RunMeta,
        outcomes: Iterable[RunOutcome],
        throw_on_error: Optional[bool] = None,
    ) -> PersistSummary:
        """Persist a run and its outcomes in runner order.

        Args:
            run_meta: Run-level metadata
            outcomes: Ordered test outcomes
            throw_on_error: Override the configured chunk failure behaviour

        Returns:
            PersistSummary describing what committed

        Raises:
            PartialBatchFailure: a chunk failed and ``throw_on_error`` is set
            DatabaseError: single-mode or header transaction failed
        """
        outcomes = list(outcomes)
        throw = self.throw_on_error if throw_on_error is None else throw_on_error

        if not self.enable_batching or len(outcomes) < self.batch_size:
            summary = self._persist_single(run_meta, outcomes)
        else:
            summary = self._persist_batched(run_meta, outcomes, throw)

        logger.info(
            "run_persisted",
            run_id=summary.run_id,
            suite=run_meta.suite_name,
            mode=summary.mode,
            processed=summary.processed_count,
            total=summary.total_count,
            failed_batches=summary.failed_batches,
            deleted=len(summary.deleted_tests),
        )
        return summary

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    def _persist_single(
        self, run_meta: RunMeta, outcomes: List[RunOutcome]
    ) -> PersistSummary:
        suites, slugs = _observed(outcomes)

        def work(session: Session) -> Tuple[int, List[DeletedTest]]:
            run = self._create_run(session, run_meta, outcomes)
            self._persist_outcomes(session, run, outcomes)
            deleted = self.detector.reconcile(session, run, suites, slugs)
            return run.id, deleted

        run_id, deleted = self.executor.run_in_transaction(work)
        return PersistSummary(
            run_id=run_id,
            mode="single",
            processed_count=len(outcomes),
            total_count=len(outcomes),
            succeeded_batches=1,
            deleted_tests=deleted,
        )

    def _persist_batched(
        self, run_meta: RunMeta, outcomes: List[RunOutcome], throw: bool
    ) -> PersistSummary:
        run_id = self.executor.run_in_transaction(
            lambda session: self._create_run(session, run_meta, outcomes).id
        )
        summary = PersistSummary(run_id=run_id, mode="batched", total_count=len(outcomes))
        run_logger = logger.bind(run_id=run_id, batch_size=self.batch_size)
        run_logger.info("batched_persist_started", total=len(outcomes))

        for index, start in enumerate(range(0, len(outcomes), self.batch_size)):
            chunk = outcomes[start:start + self.batch_size]
            try:
                self.executor.run_in_transaction(
                    lambda session, chunk=chunk: self._persist_chunk(session, run_id, chunk)
                )
            except Exception as e:
                summary.failed_batches += 1
                summary.batch_failures.append(
                    BatchFailure(
                        batch_index=index,
                        start=start,
                        end=start + len(chunk),
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                )
                run_logger.error(
                    "batch_failed",
                    batch_index=index,
                    start=start,
                    size=len(chunk),
                    error=str(e),
                )
                if throw:
                    raise PartialBatchFailure(summary) from e
                continue

            summary.succeeded_batches += 1
            summary.processed_count += len(chunk)
            run_logger.debug("batch_committed", batch_index=index, size=len(chunk))

        suites, slugs = _observed(outcomes)
        try:
            summary.deleted_tests = self.executor.run_in_transaction(
                lambda session: self._reconcile(session, run_id, suites, slugs)
            )
        except Exception as e:
            summary.deletion_error = str(e)
            run_logger.error("deletion_reconcile_failed", error=str(e))

        return summary

    # ------------------------------------------------------------------
    # Units of work
    # ------------------------------------------------------------------

    def _create_run(
        self, session: Session, run_meta: RunMeta, outcomes: Sequence[RunOutcome]
    ) -> TestRunModel:
        suite_id = self._upsert_suite(session, run_meta)

        passed = sum(1 for o in outcomes if o.status == OutcomeStatus.PASSED)
        failed = sum(1 for o in outcomes if o.status == OutcomeStatus.FAILED)
        skipped = sum(1 for o in outcomes if o.status == OutcomeStatus.SKIPPED)

        started_at = as_utc(run_meta.started_at)
        completed_at = as_utc(run_meta.completed_at)
        if completed_at is not None:
            duration_ms = max(int((completed_at - started_at).total_seconds() * 1000), 0)
        else:
            duration_ms = int(round(sum(o.duration_ms for o in outcomes)))

        run = TestRunModel(
            suite_id=suite_id,
            environment=run_meta.environment,
            branch=run_meta.branch,
            commit_sha=run_meta.commit_sha,
            commit_message=run_meta.commit_message,
            triggered_by=run_meta.triggered_by,
            run_url=run_meta.run_url,
            status="failed" if failed else "passed",
            total_tests=len(outcomes),
            passed_tests=passed,
            failed_tests=failed,
            skipped_tests=skipped,
            duration_ms=duration_ms,
            deleted_test_ids=[],
            started_at=started_at,
            completed_at=completed_at,
            created_at=self._clock(),
        )
        session.add(run)
        session.flush()
        logger.debug("run_created", run_id=run.id, suite_id=suite_id, total=len(outcomes))
        return run

    def _upsert_suite(self, session: Session, run_meta: RunMeta) -> int:
        now = self._clock()
        insert = dialect_insert(session)
        if insert is not None:
            stmt = (
                insert(TestSuiteModel)
                .values(
                    name=run_meta.suite_name,
                    description=run_meta.suite_description,
                    created_at=now,
                    updated_at=now,
                )
                .on_conflict_do_update(index_elements=["name"], set_={"updated_at": now})
                .returning(TestSuiteModel.id)
            )
            return session.execute(stmt).scalar_one()

        suite = (
            session.query(TestSuiteModel)
            .filter(TestSuiteModel.name == run_meta.suite_name)
            .first()
        )
        if suite is None:
            suite = TestSuiteModel(
                name=run_meta.suite_name,
                description=run_meta.suite_description,
                created_at=now,
                updated_at=now,
            )
            session.add(suite)
        else:
            suite.updated_at = now
        session.flush()
        return suite.id

    def _persist_outcomes(
        self, session: Session, run: TestRunModel, outcomes: Sequence[RunOutcome]
    ) -> None:
        for outcome in outcomes:
            test_id = self.resolver.resolve_or_create(
                session, IdentityDescriptor.from_outcome(outcome), run.started_at
            )
            self.resolver.record_result(session, run.id, test_id, outcome)

    def _persist_chunk(
        self, session: Session, run_id: int, chunk: Sequence[RunOutcome]
    ) -> int:
        run = session.get(TestRunModel, run_id)
        if run is None:
            raise FatalDatabaseError(f"Run {run_id} disappeared during persistence")
        self._persist_outcomes(session, run, chunk)
        return len(chunk)

    def _reconcile(
        self,
        session: Session,
        run_id: int,
        suites: Sequence[str],
        slugs: Sequence[str],
    ) -> List[DeletedTest]:
        run = session.get(TestRunModel, run_id)
        if run is None:
            raise FatalDatabaseError(f"Run {run_id} disappeared during persistence")
        return self.detector.reconcile(session, run, suites, slugs)


def _observed(outcomes: Sequence[RunOutcome]) -> Tuple[List[str], List[str]]:
    """Executed suite names and every observed slug, persisted or not."""
    suites = {o.suite_name for o in outcomes if o.suite_name}
    slugs = [o.effective_slug for o in outcomes]
    return sorted(suites), slugs
