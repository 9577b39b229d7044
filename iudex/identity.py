"""
Test identity resolution.

Maps the per-run description of a test onto its stable identity row:

1. Look the test up by slug.
2. Absent: insert-if-absent, open the first history interval.
3. Present: bump run bookkeeping; on a name/description change close the
   open history interval and open a new one; clear any deletion marker.

Two runs racing to create the same slug both go through the conditional
insert; the loser sees no row back and continues down the update path.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Callable, List, Optional

import structlog
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session

from .db.base import dialect_insert
from .db.models import TestHistoryModel, TestModel, TestResultModel
from .errors import TransientDatabaseError, ValidationError
from .schemas import IdentityDescriptor, RunOutcome, as_utc, utc_now

logger = structlog.get_logger()


def compute_test_hash(name: str, description: Optional[str] = None) -> str:
    """SHA-256 fingerprint of name and description, for change detection only."""
    content = f"{name}||{description or ''}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class IdentityResolver:
    """Finds or creates the stable Test row for a descriptor."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock

    def get_by_slug(self, session: Session, slug: str) -> Optional[TestModel]:
        """Get a Test by slug."""
        return session.query(TestModel).filter(TestModel.slug == slug).first()

    def history(self, session: Session, test_id: int) -> List[TestHistoryModel]:
        """All history intervals of a test, oldest first."""
        return (
            session.query(TestHistoryModel)
            .filter(TestHistoryModel.test_id == test_id)
            .order_by(TestHistoryModel.valid_from, TestHistoryModel.id)
            .all()
        )

    def resolve_or_create(
        self,
        session: Session,
        descriptor: IdentityDescriptor,
        run_started_at: datetime,
    ) -> int:
        """Return the id of the Test identified by ``descriptor.slug``.

        Must be called inside an open transaction; all writes join it.

        Raises:
            ValidationError: the slug is empty
        """
        if not descriptor.slug or not descriptor.slug.strip():
            raise ValidationError(
                "slug is required for test identification", field="slug"
            )

        # A test seen in a run is never "last seen" before that run started
        now = max(self._clock(), as_utc(run_started_at))
        new_hash = compute_test_hash(descriptor.name, descriptor.description)

        test = self.get_by_slug(session, descriptor.slug)
        if test is None:
            test_id = self._insert_if_absent(session, descriptor, new_hash, now)
            if test_id is not None:
                session.add(
                    TestHistoryModel(
                        test_id=test_id,
                        name=descriptor.name,
                        description=descriptor.description,
                        hash=new_hash,
                        valid_from=now,
                        valid_to=None,
                        change_type="created",
                    )
                )
                session.flush()
                logger.debug("test_created", test_id=test_id, slug=descriptor.slug)
                return test_id

            # Another writer created the slug between our read and insert
            logger.info("test_slug_race_detected", slug=descriptor.slug)
            test = self.get_by_slug(session, descriptor.slug)
            if test is None:
                raise TransientDatabaseError(
                    f"Test {descriptor.slug!r} conflicted on insert but is not visible",
                    kind="conflict",
                )

        self._update_existing(session, test, descriptor, new_hash, now)
        return test.id

    def _insert_if_absent(
        self,
        session: Session,
        descriptor: IdentityDescriptor,
        test_hash: str,
        now: datetime,
    ) -> Optional[int]:
        """Insert the Test unless its slug exists; return the new id or None."""
        values = {
            "slug": descriptor.slug,
            "hash": test_hash,
            "current_name": descriptor.name,
            "current_description": descriptor.description,
            "suite_name": descriptor.suite_name,
            "test_file": descriptor.test_file,
            "endpoint": descriptor.endpoint,
            "http_method": descriptor.http_method,
            "first_seen_at": now,
            "last_seen_at": now,
            "total_runs": 1,
            "deleted_at": None,
        }

        insert = dialect_insert(session)
        if insert is not None:
            stmt = (
                insert(TestModel)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["slug"])
                .returning(TestModel.id)
            )
            return session.execute(stmt).scalar_one_or_none()

        # Dialects without ON CONFLICT: contain the violation in a savepoint
        test = TestModel(**values)
        try:
            with session.begin_nested():
                session.add(test)
                session.flush()
        except sa_exc.IntegrityError:
            return None
        return test.id

    def _update_existing(
        self,
        session: Session,
        test: TestModel,
        descriptor: IdentityDescriptor,
        new_hash: str,
        now: datetime,
    ) -> None:
        test.last_seen_at = now
        test.total_runs = (test.total_runs or 0) + 1

        if test.hash != new_hash:
            open_entry = (
                session.query(TestHistoryModel)
                .filter(
                    TestHistoryModel.test_id == test.id,
                    TestHistoryModel.valid_to.is_(None),
                )
                .one_or_none()
            )
            if open_entry is not None:
                open_entry.valid_to = max(now, as_utc(open_entry.valid_from))
                # Close before opening: at most one open interval per test
                session.flush()

            session.add(
                TestHistoryModel(
                    test_id=test.id,
                    name=descriptor.name,
                    description=descriptor.description,
                    hash=new_hash,
                    valid_from=now,
                    valid_to=None,
                    change_type="updated",
                )
            )
            logger.info(
                "test_metadata_changed",
                test_id=test.id,
                slug=test.slug,
                old_name=test.current_name,
                new_name=descriptor.name,
            )
            test.current_name = descriptor.name
            test.current_description = descriptor.description
            test.hash = new_hash

        for attr, value in (
            ("suite_name", descriptor.suite_name),
            ("test_file", descriptor.test_file),
            ("endpoint", descriptor.endpoint),
            ("http_method", descriptor.http_method),
        ):
            if value is not None and getattr(test, attr) != value:
                setattr(test, attr, value)

        if test.deleted_at is not None:
            logger.info("test_resurrected", test_id=test.id, slug=test.slug)
            test.deleted_at = None

        session.flush()

    def record_result(
        self,
        session: Session,
        run_id: int,
        test_id: int,
        outcome: RunOutcome,
    ) -> TestResultModel:
        """Append the immutable result row and update the test's last status."""
        result = TestResultModel(
            run_id=run_id,
            test_id=test_id,
            test_name=outcome.test_name,
            test_description=outcome.description,
            test_hash=compute_test_hash(outcome.test_name, outcome.description),
            suite_name=outcome.suite_name,
            test_file=outcome.test_file,
            endpoint=outcome.endpoint,
            http_method=outcome.method,
            status=outcome.status.value,
            duration_ms=int(round(outcome.duration_ms)),
            status_code=outcome.status_code,
            error_message=outcome.error_message,
            error_type=outcome.error_type,
            stack_trace=outcome.stack_trace,
            created_at=self._clock(),
        )
        session.add(result)

        test = session.get(TestModel, test_id)
        if test is not None:
            test.last_status = outcome.status.value

        session.flush()
        return result
