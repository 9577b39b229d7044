"""
Tests for AnalyticsReader.

Data is written through the BatchCoordinator with a fake clock so every
result lands at a known time inside or outside the query windows.
"""

import pytest

from iudex.analytics import compute_health
from iudex.db.models import TestModel


def _persist_runs(coordinator, clock, make_run, make_outcome, statuses_by_test, hours=1, **outcome_kwargs):
    """Persist one run per position in the status lists."""
    runs = len(next(iter(statuses_by_test.values())))
    for i in range(runs):
        outcomes = [
            make_outcome(name, status=statuses[i], **outcome_kwargs)
            for name, statuses in statuses_by_test.items()
        ]
        coordinator.persist_run(make_run(), outcomes)
        clock.advance(hours=hours)


class TestComputeHealth:
    """Tests for compute_health()."""

    def test_all_passing(self):
        health = compute_health(["passed"] * 5)
        assert health["score"] == 100.0
        assert health["stability"] == 1.0

    def test_alternating(self):
        health = compute_health(["passed", "failed", "passed", "failed"])
        assert health["pass_rate"] == 0.5
        assert health["stability"] == 0.0
        assert health["score"] == 35.0

    def test_all_failing_is_stable(self):
        assert compute_health(["failed"] * 3)["score"] == 30.0

    def test_skipped_ignored(self):
        assert compute_health(["skipped", "skipped"]) is None
        assert compute_health(["skipped", "passed"])["runs"] == 1


class TestFlakyTests:
    """Tests for flaky_tests()."""

    def test_detects_flaky(self, coordinator, analytics, clock, make_run, make_outcome):
        flappy = ["passed"] * 7 + ["failed"] * 3
        _persist_runs(
            coordinator,
            clock,
            make_run,
            make_outcome,
            {
                "flappy": flappy,
                "steady": ["passed"] * 10,
                "broken": ["failed"] * 10,
            },
        )

        flaky = analytics.flaky_tests()

        assert [f["slug"] for f in flaky] == ["s.flappy"]
        assert flaky[0]["total_runs"] == 10
        assert flaky[0]["failures"] == 3
        assert flaky[0]["failure_rate"] == pytest.approx(0.3)
        assert flaky[0]["last_failure"] is not None

    def test_min_runs(self, coordinator, analytics, clock, make_run, make_outcome):
        _persist_runs(
            coordinator, clock, make_run, make_outcome, {"short": ["passed", "failed", "passed"]}
        )

        assert analytics.flaky_tests(min_runs=5) == []
        assert len(analytics.flaky_tests(min_runs=3)) == 1

    def test_ratio_bounds_exclusive(self, coordinator, analytics, clock, make_run, make_outcome):
        # 1 failure in 10 is exactly 0.1, which is not flaky
        _persist_runs(
            coordinator, clock, make_run, make_outcome, {"edge": ["failed"] + ["passed"] * 9}
        )

        assert analytics.flaky_tests() == []

    def test_ranked_by_failure_rate(self, coordinator, analytics, clock, make_run, make_outcome):
        _persist_runs(
            coordinator,
            clock,
            make_run,
            make_outcome,
            {
                "mild": ["failed"] * 2 + ["passed"] * 8,
                "severe": ["failed"] * 6 + ["passed"] * 4,
            },
        )

        assert [f["slug"] for f in analytics.flaky_tests()] == ["s.severe", "s.mild"]


class TestRegressions:
    """Tests for regressions()."""

    def test_detects_regression(self, coordinator, analytics, clock, make_run, make_outcome):
        # Previous window: steady passes, and an unstable test
        _persist_runs(
            coordinator,
            clock,
            make_run,
            make_outcome,
            {
                "reg": ["passed"] * 6,
                "unstable": ["passed", "failed"] * 3,
            },
        )
        clock.advance(days=9)
        # Recent window: both fail
        coordinator.persist_run(
            make_run(),
            [make_outcome("reg", status="failed"), make_outcome("unstable", status="failed")],
        )
        clock.advance(days=1)

        regressions = analytics.regressions(window_days=7)

        assert [r["slug"] for r in regressions] == ["s.reg"]
        assert regressions[0]["previous_passes"] == 6
        assert regressions[0]["previous_failures"] == 0

    def test_recovered_test_is_not_a_regression(
        self, coordinator, analytics, clock, make_run, make_outcome
    ):
        _persist_runs(coordinator, clock, make_run, make_outcome, {"t": ["passed"] * 3})
        clock.advance(days=9)
        _persist_runs(coordinator, clock, make_run, make_outcome, {"t": ["failed", "passed"]})

        assert analytics.regressions(window_days=7) == []

    def test_no_history_is_not_a_regression(
        self, coordinator, analytics, clock, make_run, make_outcome
    ):
        coordinator.persist_run(make_run(), [make_outcome("new", status="failed")])

        assert analytics.regressions() == []


class TestHealthScores:
    """Tests for health_score() and health_scores()."""

    def test_single_test(self, coordinator, analytics, session_factory, clock, make_run, make_outcome):
        _persist_runs(
            coordinator, clock, make_run, make_outcome, {"t": ["passed", "failed", "passed", "failed"]}
        )

        with session_factory() as session:
            test_id = session.query(TestModel.id).filter_by(slug="s.t").scalar()

        health = analytics.health_score(test_id)
        assert health["slug"] == "s.t"
        assert health["score"] == 35.0

    def test_unknown_test(self, analytics):
        assert analytics.health_score(9999) is None

    def test_least_healthy_first(self, coordinator, analytics, clock, make_run, make_outcome):
        _persist_runs(
            coordinator,
            clock,
            make_run,
            make_outcome,
            {
                "good": ["passed"] * 4,
                "bad": ["failed", "passed", "failed", "passed"],
                "dead": ["failed"] * 4,
            },
        )

        scores = analytics.health_scores()

        assert [s["slug"] for s in scores] == ["s.dead", "s.bad", "s.good"]
        assert scores[0]["last_status"] == "failed"

    def test_min_runs(self, coordinator, analytics, clock, make_run, make_outcome):
        _persist_runs(coordinator, clock, make_run, make_outcome, {"t": ["passed"] * 2})

        assert analytics.health_scores() == []
        assert len(analytics.health_scores(min_runs=2)) == 1


class TestDailyStats:
    """Tests for daily_stats()."""

    def test_groups_by_day(self, coordinator, analytics, clock, make_run, make_outcome):
        _persist_runs(
            coordinator,
            clock,
            make_run,
            make_outcome,
            {"a": ["passed", "failed"], "b": ["skipped", "passed"]},
        )
        clock.advance(days=1)
        coordinator.persist_run(make_run(), [make_outcome("a")])

        stats = analytics.daily_stats()

        assert [s["date"] for s in stats] == ["2026-01-06", "2026-01-05"]
        first_day = stats[1]
        assert first_day["total_runs"] == 2
        assert first_day["total_tests"] == 4
        assert (first_day["passed"], first_day["failed"], first_day["skipped"]) == (2, 1, 1)
        assert first_day["pass_rate"] == 50.0
        assert first_day["avg_duration_ms"] == 10

    def test_window_excludes_old_results(self, coordinator, analytics, clock, make_run, make_outcome):
        coordinator.persist_run(make_run(), [make_outcome("old")])
        clock.advance(days=40)

        assert analytics.daily_stats(window_days=30) == []


class TestEndpointRates:
    """Tests for endpoint_rates()."""

    def test_rates(self, coordinator, analytics, clock, make_run, make_outcome):
        _persist_runs(
            coordinator,
            clock,
            make_run,
            make_outcome,
            {"list users": ["passed"] * 4 + ["failed"]},
            endpoint="/users",
            method="GET",
        )

        rates = analytics.endpoint_rates()

        assert len(rates) == 1
        assert rates[0]["endpoint"] == "/users"
        assert rates[0]["method"] == "GET"
        assert rates[0]["total_calls"] == 5
        assert rates[0]["failed"] == 1
        assert rates[0]["success_rate"] == 80.0

    def test_min_calls(self, coordinator, analytics, clock, make_run, make_outcome):
        _persist_runs(
            coordinator, clock, make_run, make_outcome, {"ping": ["passed"] * 2}, endpoint="/ping"
        )

        assert analytics.endpoint_rates() == []


class TestSearchTests:
    """Tests for search_tests()."""

    def test_search(self, coordinator, analytics, make_run, make_outcome):
        coordinator.persist_run(
            make_run(),
            [
                make_outcome("list users", endpoint="/users"),
                make_outcome("create order", endpoint="/orders"),
            ],
        )

        assert [t["slug"] for t in analytics.search_tests("users")] == ["s.list-users"]
        assert [t["slug"] for t in analytics.search_tests("ORDER")] == ["s.create-order"]
        assert analytics.search_tests("nothing") == []
