"""
Tests for DashboardService.

Verifies:
- Keyset pagination over runs with an opaque cursor
- Run detail grouping, including tests deleted by the run
- Analytics dispatch and graceful degradation when the database is gone
"""

import pytest

from iudex.dashboard import DashboardService, decode_cursor, encode_cursor
from iudex.db.base import create_db_engine, get_session_local


@pytest.fixture
def dashboard(session_factory, analytics):
    return DashboardService(session_factory, analytics=analytics)


@pytest.fixture
def unreachable(tmp_path):
    """A session factory pointing at a database file that cannot be opened."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'missing' / 'iudex.db'}")
    yield get_session_local(engine)
    engine.dispose()


def _three_runs(coordinator, clock, make_run, make_outcome):
    ids = []
    for _ in range(3):
        ids.append(coordinator.persist_run(make_run(), [make_outcome("t")]).run_id)
        clock.advance(hours=1)
    return ids


class TestCursor:
    """Tests for cursor encoding."""

    def test_round_trip(self, clock):
        assert decode_cursor(encode_cursor(clock(), 42)) == (clock(), 42)

    def test_garbage_is_ignored(self):
        assert decode_cursor("not-a-cursor") is None


class TestListRuns:
    """Tests for list_runs()."""

    def test_pagination(self, dashboard, coordinator, clock, make_run, make_outcome):
        first, second, third = _three_runs(coordinator, clock, make_run, make_outcome)

        page = dashboard.list_runs(limit=2)
        assert page["available"] is True
        assert [r["id"] for r in page["runs"]] == [third, second]
        assert page["latest"] == third
        assert page["has_more"] is True
        assert page["next_cursor"]

        page2 = dashboard.list_runs(limit=2, cursor=page["next_cursor"])
        assert [r["id"] for r in page2["runs"]] == [first]
        assert page2["has_more"] is False
        assert page2["next_cursor"] is None
        assert page2["latest"] == third

    def test_limit_is_clamped(self, dashboard, coordinator, clock, make_run, make_outcome):
        _three_runs(coordinator, clock, make_run, make_outcome)

        assert len(dashboard.list_runs(limit=1000)["runs"]) == 3
        assert len(dashboard.list_runs(limit=0)["runs"]) == 1

    def test_invalid_cursor_starts_over(self, dashboard, coordinator, clock, make_run, make_outcome):
        ids = _three_runs(coordinator, clock, make_run, make_outcome)

        page = dashboard.list_runs(limit=10, cursor="bogus")
        assert [r["id"] for r in page["runs"]] == list(reversed(ids))

    def test_empty(self, dashboard):
        page = dashboard.list_runs()
        assert page == {
            "available": True,
            "runs": [],
            "latest": None,
            "next_cursor": None,
            "has_more": False,
        }

    def test_unavailable(self, unreachable):
        page = DashboardService(unreachable).list_runs()
        assert page["available"] is False
        assert page["error"]


class TestRunDetail:
    """Tests for get_run_detail()."""

    def test_detail_includes_deleted_tests(
        self, dashboard, coordinator, clock, make_run, make_outcome
    ):
        coordinator.persist_run(make_run(), [make_outcome("T1"), make_outcome("T2")])
        clock.advance(hours=1)
        run2 = coordinator.persist_run(
            make_run(branch="feature/x", commit_sha="deadbeef"),
            [make_outcome("T1", endpoint="/users", method="GET")],
        )

        detail = dashboard.get_run_detail(run2.run_id)

        assert detail["summary"]["id"] == run2.run_id
        assert detail["metadata"]["branch"] == "feature/x"
        assert detail["metadata"]["commit_sha"] == "deadbeef"
        assert len(detail["suites"]) == 1
        suite = detail["suites"][0]
        assert suite["name"] == "S"
        by_slug = {t["slug"]: t for t in suite["tests"]}
        assert by_slug["s.t1"]["status"] == "passed"
        assert by_slug["s.t1"]["endpoint"] == "/users"
        assert by_slug["s.t2"]["status"] == "deleted"
        assert by_slug["s.t2"]["deleted_by_run"] is True

    def test_detail_stable_after_resurrection(
        self, dashboard, coordinator, clock, make_run, make_outcome
    ):
        """Bringing a test back does not rewrite older runs' detail."""
        coordinator.persist_run(make_run(), [make_outcome("T1"), make_outcome("T2")])
        clock.advance(hours=1)
        run2 = coordinator.persist_run(make_run(), [make_outcome("T1")])
        clock.advance(hours=1)
        run3 = coordinator.persist_run(make_run(), [make_outcome("T1")])

        def statuses(run_id):
            tests = dashboard.get_run_detail(run_id)["suites"][0]["tests"]
            return {t["slug"]: t["status"] for t in tests}

        before_run2, before_run3 = statuses(run2.run_id), statuses(run3.run_id)
        assert before_run2 == {"s.t1": "passed", "s.t2": "deleted"}
        assert before_run3 == {"s.t1": "passed", "s.t2": "deleted"}

        clock.advance(hours=1)
        run4 = coordinator.persist_run(make_run(), [make_outcome("T1"), make_outcome("T2")])

        assert statuses(run2.run_id) == before_run2
        assert statuses(run3.run_id) == before_run3
        assert statuses(run4.run_id) == {"s.t1": "passed", "s.t2": "passed"}

        detail = dashboard.get_run_detail(run3.run_id)
        t2 = next(t for t in detail["suites"][0]["tests"] if t["slug"] == "s.t2")
        assert t2["deleted_by_run"] is False
        assert t2["deleted_in_run"] == run2.run_id

    def test_later_deletions_not_shown(
        self, dashboard, coordinator, clock, make_run, make_outcome
    ):
        run1 = coordinator.persist_run(make_run(), [make_outcome("T1"), make_outcome("T2")])
        clock.advance(hours=1)
        coordinator.persist_run(make_run(), [make_outcome("T1")])

        detail = dashboard.get_run_detail(run1.run_id)

        statuses = sorted(t["status"] for t in detail["suites"][0]["tests"])
        assert statuses == ["passed", "passed"]

    def test_unknown_run(self, dashboard):
        assert dashboard.get_run_detail(12345) is None


class TestGetAnalytics:
    """Tests for get_analytics()."""

    def test_dispatch(self, dashboard, coordinator, make_run, make_outcome):
        coordinator.persist_run(make_run(), [make_outcome("a")])

        payload = dashboard.get_analytics("daily-stats")

        assert payload["available"] is True
        assert payload["type"] == "daily-stats"
        assert payload["data"][0]["total_tests"] == 1

    @pytest.mark.parametrize(
        "analytics_type",
        ["flaky-tests", "regressions", "health-scores", "daily-stats", "endpoint-rates"],
    )
    def test_every_type_available(self, dashboard, analytics_type):
        payload = dashboard.get_analytics(analytics_type, limit=5, window_days=14)
        assert payload == {"available": True, "type": analytics_type, "data": []}

    def test_unknown_type(self, dashboard):
        with pytest.raises(ValueError):
            dashboard.get_analytics("nonsense")

    def test_unavailable(self, unreachable):
        payload = DashboardService(unreachable).get_analytics("flaky-tests")
        assert payload["available"] is False
        assert payload["error"]
