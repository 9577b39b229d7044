"""Tests for the wire schemas."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from iudex.schemas import (
    PersistSummary,
    RunIngestRequest,
    RunMeta,
    RunOutcome,
    as_utc,
    derive_slug,
)


class TestDeriveSlug:
    @pytest.mark.parametrize(
        "suite_name,test_name,expected",
        [
            ("Users API", "GET /users returns 200", "users-api.get-users-returns-200"),
            ("", "Health check", "health-check"),
            ("orders", "  Creates   an order!  ", "orders.creates-an-order"),
            ("S", "T1", "s.t1"),
        ],
    )
    def test_examples(self, suite_name, test_name, expected):
        assert derive_slug(suite_name, test_name) == expected


class TestRunOutcome:
    def test_effective_slug_derived(self):
        outcome = RunOutcome(suite_name="Users", test_name="lists users", status="passed")
        assert outcome.effective_slug == "users.lists-users"

    def test_explicit_slug_wins(self):
        outcome = RunOutcome(
            suite_name="Users", test_name="lists users", slug="custom.slug", status="passed"
        )
        assert outcome.effective_slug == "custom.slug"

    def test_empty_slug_is_kept(self):
        outcome = RunOutcome(suite_name="Users", test_name="x", slug="", status="passed")
        assert outcome.effective_slug == ""

    def test_unknown_status(self):
        with pytest.raises(ValidationError):
            RunOutcome(suite_name="S", test_name="x", status="maybe")

    def test_negative_duration(self):
        with pytest.raises(ValidationError):
            RunOutcome(suite_name="S", test_name="x", status="passed", duration_ms=-1)


class TestRunIngestRequest:
    def test_extra_fields_forbidden(self):
        with pytest.raises(ValidationError):
            RunIngestRequest.model_validate({"run": {"suite_name": "S", "bogus": 1}})

    def test_defaults(self):
        request = RunIngestRequest.model_validate({"run": {}})
        assert request.run.suite_name == "default"
        assert request.run.environment == "development"
        assert request.outcomes == []


class TestAsUtc:
    def test_naive_is_utc(self):
        naive = datetime(2026, 1, 5, 12, 0, 0)
        assert as_utc(naive) == datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)

    def test_offset_converted(self):
        plus_two = datetime(2026, 1, 5, 14, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        assert as_utc(plus_two).hour == 12

    def test_none(self):
        assert as_utc(None) is None


class TestPersistSummary:
    def test_complete(self):
        assert PersistSummary(run_id=1).complete
        assert not PersistSummary(run_id=1, failed_batches=1).complete
        assert not PersistSummary(run_id=1, deletion_error="boom").complete

    def test_run_meta_started_at_default(self):
        assert RunMeta().started_at.tzinfo is not None
