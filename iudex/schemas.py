"""
Wire schemas exchanged with the runner and the dashboard.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to aware UTC; naive values are taken to be UTC already.

    SQLite drops the offset on read, so every comparison against a stored
    timestamp goes through here.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


def derive_slug(suite_name: str, test_name: str) -> str:
    """Deterministic slug from suite prefix and normalized test name.

    Examples:
        ("Users API", "GET /users returns 200") -> "users-api.get-users-returns-200"
        ("", "Health check") -> "health-check"
    """
    prefix = _normalize(suite_name or "")
    name = _normalize(test_name or "")
    if prefix and name:
        return f"{prefix}.{name}"
    return prefix or name


class OutcomeStatus(str, Enum):
    """Status of a single test execution."""

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunMeta(BaseModel):
    """Run-level metadata supplied by the runner."""

    model_config = ConfigDict(extra="forbid")

    suite_name: str = Field("default", min_length=1, max_length=255)
    suite_description: Optional[str] = None
    environment: str = Field("development", min_length=1, max_length=50)
    branch: Optional[str] = None
    commit_sha: Optional[str] = Field(None, max_length=40)
    commit_message: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    triggered_by: Optional[str] = None
    run_url: Optional[str] = None


class RunOutcome(BaseModel):
    """One test execution, in runner order."""

    model_config = ConfigDict(extra="forbid")

    suite_name: str
    test_name: str = Field(..., min_length=1)
    slug: Optional[str] = None
    description: Optional[str] = None
    status: OutcomeStatus
    duration_ms: float = Field(0, ge=0)
    endpoint: Optional[str] = None
    method: Optional[str] = None
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    stack_trace: Optional[str] = None
    test_file: Optional[str] = None

    @property
    def effective_slug(self) -> str:
        """Explicit slug, or one derived from suite and test name."""
        if self.slug is not None:
            return self.slug
        return derive_slug(self.suite_name, self.test_name)


class IdentityDescriptor(BaseModel):
    """What the identity resolver needs to find or create a Test."""

    slug: str
    name: str
    description: Optional[str] = None
    suite_name: Optional[str] = None
    test_file: Optional[str] = None
    endpoint: Optional[str] = None
    http_method: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: RunOutcome) -> "IdentityDescriptor":
        return cls(
            slug=outcome.effective_slug,
            name=outcome.test_name,
            description=outcome.description,
            suite_name=outcome.suite_name,
            test_file=outcome.test_file,
            endpoint=outcome.endpoint,
            http_method=outcome.method,
        )


class DeletedTest(BaseModel):
    """A test marked deleted by reconciliation."""

    id: int
    slug: str
    name: str
    suite_name: Optional[str] = None
    deleted_at: datetime


class BatchFailure(BaseModel):
    """A chunk of outcomes whose transaction did not commit."""

    batch_index: int
    start: int
    end: int
    error_type: str
    error: str


class PersistSummary(BaseModel):
    """Result of persisting one run."""

    run_id: Optional[int] = None
    mode: str = "single"
    processed_count: int = 0
    total_count: int = 0
    succeeded_batches: int = 0
    failed_batches: int = 0
    batch_failures: List[BatchFailure] = Field(default_factory=list)
    deleted_tests: List[DeletedTest] = Field(default_factory=list)
    deletion_error: Optional[str] = None

    @property
    def complete(self) -> bool:
        return self.failed_batches == 0 and self.deletion_error is None


class RunIngestRequest(BaseModel):
    """Body of ``POST /api/runs``."""

    model_config = ConfigDict(extra="forbid")

    run: RunMeta
    outcomes: List[RunOutcome] = Field(default_factory=list)
