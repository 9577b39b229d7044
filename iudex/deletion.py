"""
Deletion reconciliation.

After every result of a run has committed, tests that belong to a suite the
run exercised but did not appear in it are marked deleted. Suites the run
did not execute are never touched. A deleted test comes back through the
identity resolver the next time its slug is observed.

Known limitation: without an explicit slug, renaming a test changes its
derived slug, so the old identity is deleted and a new one created instead
of being linked as a rename.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, List

import structlog
from sqlalchemy import desc
from sqlalchemy.orm import Session

from .db.models import TestModel, TestRunModel
from .schemas import DeletedTest, as_utc, utc_now

logger = structlog.get_logger()


class DeletionDetector:
    """Marks tests missing from executed suites as deleted."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock

    def reconcile(
        self,
        session: Session,
        run: TestRunModel,
        executed_suite_names: Iterable[str],
        observed_slugs: Iterable[str],
    ) -> List[DeletedTest]:
        """Mark absent tests of the executed suites as deleted.

        A test is marked when it is active, its suite was executed, its slug
        was not observed, and it was last seen before the run started.

        Returns:
            The tests marked deleted by this call
        """
        suites = sorted({name for name in executed_suite_names if name})
        if not suites:
            return []

        observed = set(observed_slugs)
        started_at = as_utc(run.started_at)

        candidates = (
            session.query(TestModel)
            .filter(
                TestModel.suite_name.in_(suites),
                TestModel.deleted_at.is_(None),
                TestModel.last_seen_at < started_at,
            )
            .order_by(TestModel.id)
            .with_for_update()
            .all()
        )

        now = max(self._clock(), started_at)
        deleted: List[DeletedTest] = []
        for test in candidates:
            if test.slug in observed:
                continue
            test.deleted_at = now
            deleted.append(
                DeletedTest(
                    id=test.id,
                    slug=test.slug,
                    name=test.current_name,
                    suite_name=test.suite_name,
                    deleted_at=now,
                )
            )

        if deleted:
            # Reassign so the JSON column registers the change
            run.deleted_test_ids = list(run.deleted_test_ids or []) + [t.id for t in deleted]
            logger.info(
                "tests_marked_deleted",
                run_id=run.id,
                count=len(deleted),
                slugs=[t.slug for t in deleted],
            )

        session.flush()
        return deleted

    def deleted_tests(self, session: Session, limit: int = 10) -> List[TestModel]:
        """Tests currently marked deleted, most recent first."""
        return (
            session.query(TestModel)
            .filter(TestModel.deleted_at.isnot(None))
            .order_by(desc(TestModel.deleted_at))
            .limit(limit)
            .all()
        )
