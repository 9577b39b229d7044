"""
SQLAlchemy models for Iudex.

- test_suites: named collections of tests, created lazily
- test_runs: one row per execution of the runner
- tests: stable identity keyed by slug, never hard-deleted
- test_history: validity intervals for each version of a test's name/description
- test_results: append-only log of per-test outcomes
"""

from typing import Any, Dict

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    event,
    text,
)
from sqlalchemy.orm import object_session, relationship
from sqlalchemy.sql import func

from ..errors import ImmutabilityError
from .base import Base


def _iso(value) -> Any:
    return value.isoformat() if value else None


class TestSuiteModel(Base):
    """SQLAlchemy model for test suites."""

    __tablename__ = "test_suites"
    __test__ = False  # keep pytest from collecting the model

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )

    runs = relationship("TestRunModel", back_populates="suite")

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class TestRunModel(Base):
    """SQLAlchemy model for a single execution of the runner."""

    __tablename__ = "test_runs"
    __test__ = False  # keep pytest from collecting the model

    id = Column(Integer, primary_key=True, autoincrement=True)
    suite_id = Column(Integer, ForeignKey("test_suites.id"), nullable=False, index=True)

    # Source metadata
    environment = Column(String(50), nullable=False, index=True)
    branch = Column(String(255), nullable=True, index=True)
    commit_sha = Column(String(40), nullable=True)
    commit_message = Column(Text, nullable=True)
    triggered_by = Column(String(255), nullable=True)
    run_url = Column(Text, nullable=True)

    # Outcome counts
    status = Column(String(20), nullable=False, index=True)
    total_tests = Column(Integer, nullable=False, default=0)
    passed_tests = Column(Integer, nullable=False, default=0)
    failed_tests = Column(Integer, nullable=False, default=0)
    skipped_tests = Column(Integer, nullable=False, default=0)
    duration_ms = Column(Integer, nullable=False, default=0)

    # Tests this run marked as deleted
    deleted_test_ids = Column(JSON, nullable=False, default=list)

    # Timestamps
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    suite = relationship("TestSuiteModel", back_populates="runs")
    results = relationship(
        "TestResultModel", back_populates="run", order_by="TestResultModel.id"
    )

    __table_args__ = (
        CheckConstraint(
            "total_tests = passed_tests + failed_tests + skipped_tests",
            name="valid_test_counts",
        ),
        Index("ix_test_runs_started_at_id", "started_at", "id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "suite_id": self.suite_id,
            "suite_name": self.suite.name if self.suite else None,
            "environment": self.environment,
            "branch": self.branch,
            "commit_sha": self.commit_sha,
            "commit_message": self.commit_message,
            "triggered_by": self.triggered_by,
            "run_url": self.run_url,
            "status": self.status,
            "total_tests": self.total_tests,
            "passed_tests": self.passed_tests,
            "failed_tests": self.failed_tests,
            "skipped_tests": self.skipped_tests,
            "duration_ms": self.duration_ms,
            "deleted_test_ids": list(self.deleted_test_ids or []),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }


class TestModel(Base):
    """Stable identity of a test, keyed by slug.

    The hash fingerprints name+description and is only used to detect
    metadata changes; identity is the slug alone.
    """

    __tablename__ = "tests"
    __test__ = False  # keep pytest from collecting the model

    id = Column(Integer, primary_key=True, autoincrement=True)
    slug = Column(String(512), nullable=False, unique=True)
    hash = Column(String(64), nullable=False, index=True)

    current_name = Column(String(512), nullable=False, index=True)
    current_description = Column(Text, nullable=True)
    suite_name = Column(String(255), nullable=True, index=True)
    test_file = Column(String(255), nullable=True)
    endpoint = Column(String(500), nullable=True, index=True)
    http_method = Column(String(10), nullable=True)

    # Lifecycle
    first_seen_at = Column(DateTime(timezone=True), nullable=False)
    last_seen_at = Column(DateTime(timezone=True), nullable=False, index=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True, index=True)
    total_runs = Column(Integer, nullable=False, default=0)
    last_status = Column(String(20), nullable=True)

    history = relationship(
        "TestHistoryModel",
        back_populates="test",
        order_by="TestHistoryModel.id",
    )

    __table_args__ = (
        Index("ix_tests_suite_active", "suite_name", "deleted_at"),
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "slug": self.slug,
            "hash": self.hash,
            "current_name": self.current_name,
            "current_description": self.current_description,
            "suite_name": self.suite_name,
            "test_file": self.test_file,
            "endpoint": self.endpoint,
            "http_method": self.http_method,
            "first_seen_at": _iso(self.first_seen_at),
            "last_seen_at": _iso(self.last_seen_at),
            "deleted_at": _iso(self.deleted_at),
            "total_runs": self.total_runs,
            "last_status": self.last_status,
        }


class TestHistoryModel(Base):
    """One version of a test's name/description, valid over [valid_from, valid_to)."""

    __tablename__ = "test_history"
    __test__ = False  # keep pytest from collecting the model

    id = Column(Integer, primary_key=True, autoincrement=True)
    test_id = Column(Integer, ForeignKey("tests.id"), nullable=False, index=True)
    name = Column(String(512), nullable=False)
    description = Column(Text, nullable=True)
    hash = Column(String(64), nullable=False)
    valid_from = Column(DateTime(timezone=True), nullable=False)
    valid_to = Column(DateTime(timezone=True), nullable=True)
    change_type = Column(String(50), nullable=False, default="created")

    test = relationship("TestModel", back_populates="history")

    __table_args__ = (
        Index("ix_test_history_valid_range", "valid_from", "valid_to"),
        # At most one open interval per test
        Index(
            "uq_test_history_open_interval",
            "test_id",
            unique=True,
            sqlite_where=text("valid_to IS NULL"),
            postgresql_where=text("valid_to IS NULL"),
        ),
    )

    @property
    def is_current(self) -> bool:
        return self.valid_to is None

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "test_id": self.test_id,
            "name": self.name,
            "description": self.description,
            "hash": self.hash,
            "valid_from": _iso(self.valid_from),
            "valid_to": _iso(self.valid_to),
            "change_type": self.change_type,
        }


class TestResultModel(Base):
    """Immutable record of one test execution within a run.

    Name, description, hash, endpoint and method are snapshots taken at
    execution time so history renders correctly after renames.
    """

    __tablename__ = "test_results"
    __test__ = False  # keep pytest from collecting the model

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Integer, ForeignKey("test_runs.id"), nullable=False, index=True)
    test_id = Column(Integer, ForeignKey("tests.id"), nullable=False, index=True)

    # Snapshot at execution time
    test_name = Column(String(512), nullable=False)
    test_description = Column(Text, nullable=True)
    test_hash = Column(String(64), nullable=False, index=True)
    suite_name = Column(String(255), nullable=True)
    test_file = Column(String(255), nullable=True)
    endpoint = Column(String(500), nullable=True, index=True)
    http_method = Column(String(10), nullable=True)

    # Outcome
    status = Column(String(20), nullable=False, index=True)
    duration_ms = Column(Integer, nullable=False, default=0)
    status_code = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    error_type = Column(String(255), nullable=True)
    stack_trace = Column(Text, nullable=True)

    created_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at = Column(DateTime(timezone=True), nullable=True)

    run = relationship("TestRunModel", back_populates="results")
    test = relationship("TestModel")

    __table_args__ = (
        CheckConstraint("updated_at IS NULL", name="immutable_results"),
        Index("ix_test_results_test_created", "test_id", "created_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "run_id": self.run_id,
            "test_id": self.test_id,
            "test_name": self.test_name,
            "test_description": self.test_description,
            "test_hash": self.test_hash,
            "suite_name": self.suite_name,
            "test_file": self.test_file,
            "endpoint": self.endpoint,
            "http_method": self.http_method,
            "status": self.status,
            "duration_ms": self.duration_ms,
            "status_code": self.status_code,
            "error_message": self.error_message,
            "error_type": self.error_type,
            "stack_trace": self.stack_trace,
            "created_at": _iso(self.created_at),
        }


@event.listens_for(TestResultModel, "before_update")
def _reject_result_update(mapper, connection, target) -> None:
    session = object_session(target)
    if session is None or session.is_modified(target, include_collections=False):
        raise ImmutabilityError("TestResult", target.id)
