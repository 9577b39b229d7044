"""
Read-only analytics over the append-only result log.

Queries run in their own short session and never write. Results may lag
concurrent writers; dashboards accept approximate recency.
"""

from __future__ import annotations

import statistics
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import case, desc, func, or_
from sqlalchemy.orm import Session, sessionmaker

from .db.models import TestModel, TestResultModel
from .schemas import as_utc, utc_now

PASSED = "passed"
FAILED = "failed"
SKIPPED = "skipped"

FLAKY_MIN_RATIO = 0.1
FLAKY_MAX_RATIO = 0.9
# A prior window with more passes than this still counts as a passing streak
REGRESSION_PASS_STREAK = 5


def _count_status(status: str):
    return func.sum(case((TestResultModel.status == status, 1), else_=0))


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def compute_health(statuses: Sequence[str]) -> Optional[Dict[str, float]]:
    """Health of a pass/fail sequence; skipped outcomes are ignored.

    ``score = 100 * (0.7 * pass_rate + 0.3 * stability)`` where stability is
    ``1 - 4 * variance`` of the 1 (pass) / 0 (fail) sequence. A Bernoulli
    variance never exceeds 0.25, so stability stays in [0, 1].
    """
    sequence = [1.0 if s == PASSED else 0.0 for s in statuses if s in (PASSED, FAILED)]
    if not sequence:
        return None
    pass_rate = sum(sequence) / len(sequence)
    stability = max(0.0, 1.0 - 4.0 * statistics.pvariance(sequence))
    score = 100.0 * (0.7 * pass_rate + 0.3 * stability)
    return {
        "score": round(score, 2),
        "pass_rate": round(pass_rate, 4),
        "stability": round(stability, 4),
        "runs": len(sequence),
    }


class AnalyticsReader:
    """Derived views over ``test_results``: flakiness, regressions, health."""

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._clock = clock

    def _since(self, days: int) -> datetime:
        return self._clock() - timedelta(days=days)

    def flaky_tests(
        self, min_runs: int = 5, window_days: int = 30, limit: int = 20
    ) -> List[Dict[str, Any]]:
        """Tests that both pass and fail, failure ratio strictly within (0.1, 0.9)."""
        since = self._since(window_days)
        passed = _count_status(PASSED)
        failed = _count_status(FAILED)

        with self._session_factory() as session:
            rows = (
                session.query(
                    TestModel.id,
                    TestModel.slug,
                    TestModel.current_name,
                    TestModel.endpoint,
                    passed.label("passed"),
                    failed.label("failed"),
                    func.max(
                        case((TestResultModel.status == FAILED, TestResultModel.created_at))
                    ).label("last_failure"),
                )
                .join(TestResultModel, TestResultModel.test_id == TestModel.id)
                .filter(
                    TestResultModel.created_at >= since,
                    TestResultModel.status.in_((PASSED, FAILED)),
                )
                .group_by(TestModel.id, TestModel.slug, TestModel.current_name, TestModel.endpoint)
                .having(passed > 0, failed > 0, func.count(TestResultModel.id) >= min_runs)
                .all()
            )

        flaky = []
        for row in rows:
            total = row.passed + row.failed
            ratio = row.failed / total
            if not FLAKY_MIN_RATIO < ratio < FLAKY_MAX_RATIO:
                continue
            flaky.append(
                {
                    "test_id": row.id,
                    "slug": row.slug,
                    "name": row.current_name,
                    "endpoint": row.endpoint,
                    "total_runs": total,
                    "passed": row.passed,
                    "failures": row.failed,
                    "failure_rate": round(ratio, 4),
                    "last_failure": _iso(row.last_failure),
                }
            )

        flaky.sort(key=lambda item: (-item["failure_rate"], -item["total_runs"]))
        return flaky[:limit]

    def regressions(self, window_days: int = 7, limit: int = 20) -> List[Dict[str, Any]]:
        """Tests now failing that were passing in the preceding window.

        The latest result inside ``[now - window, now]`` must be a failure,
        and the window before it must hold passes with either no failures
        or more than five passes.
        """
        now = self._clock()
        since = now - timedelta(days=window_days)
        previous_since = now - timedelta(days=2 * window_days)

        with self._session_factory() as session:
            recent = (
                session.query(TestResultModel)
                .filter(TestResultModel.created_at >= since)
                .order_by(TestResultModel.test_id, TestResultModel.created_at, TestResultModel.id)
                .all()
            )
            latest: Dict[int, TestResultModel] = {}
            for result in recent:
                latest[result.test_id] = result
            failing = {tid: r for tid, r in latest.items() if r.status == FAILED}
            if not failing:
                return []

            prior_rows = (
                session.query(
                    TestResultModel.test_id,
                    _count_status(PASSED).label("passes"),
                    _count_status(FAILED).label("failures"),
                )
                .filter(
                    TestResultModel.test_id.in_(list(failing)),
                    TestResultModel.created_at >= previous_since,
                    TestResultModel.created_at < since,
                )
                .group_by(TestResultModel.test_id)
                .all()
            )
            tests = {
                t.id: t
                for t in session.query(TestModel).filter(TestModel.id.in_(list(failing))).all()
            }

        regressions = []
        for row in prior_rows:
            if row.passes <= 0:
                continue
            if not (row.failures == 0 or row.passes > REGRESSION_PASS_STREAK):
                continue
            result = failing[row.test_id]
            test = tests.get(row.test_id)
            regressions.append(
                {
                    "test_id": row.test_id,
                    "slug": test.slug if test else None,
                    "name": test.current_name if test else result.test_name,
                    "suite_name": result.suite_name,
                    "run_id": result.run_id,
                    "failure_timestamp": _iso(result.created_at),
                    "previous_passes": row.passes,
                    "previous_failures": row.failures,
                }
            )

        regressions.sort(key=lambda item: item["failure_timestamp"], reverse=True)
        return regressions[:limit]

    def health_score(self, test_id: int, window_days: int = 30) -> Optional[Dict[str, Any]]:
        """Health of one test over the window, or None without pass/fail data."""
        since = self._since(window_days)
        with self._session_factory() as session:
            test = session.get(TestModel, test_id)
            if test is None:
                return None
            statuses = window_statuses(session, test_id, since)

        health = compute_health(statuses)
        if health is None:
            return None
        return {"test_id": test.id, "slug": test.slug, "name": test.current_name, **health}

    def health_scores(
        self, window_days: int = 30, limit: int = 50, min_runs: int = 3
    ) -> List[Dict[str, Any]]:
        """Health of every test with enough recent data, least healthy first."""
        since = self._since(window_days)
        sequences: Dict[int, List[str]] = defaultdict(list)

        with self._session_factory() as session:
            rows = (
                session.query(TestResultModel.test_id, TestResultModel.status)
                .filter(TestResultModel.created_at >= since)
                .order_by(TestResultModel.test_id, TestResultModel.created_at, TestResultModel.id)
            )
            for test_id, status in rows:
                sequences[test_id].append(status)
            tests = {
                t.id: t
                for t in session.query(TestModel).filter(TestModel.id.in_(list(sequences))).all()
            } if sequences else {}

        scores = []
        for test_id, statuses in sequences.items():
            health = compute_health(statuses)
            if health is None or health["runs"] < min_runs:
                continue
            test = tests.get(test_id)
            scores.append(
                {
                    "test_id": test_id,
                    "slug": test.slug if test else None,
                    "name": test.current_name if test else None,
                    "last_status": test.last_status if test else None,
                    **health,
                }
            )

        scores.sort(key=lambda item: (item["score"], item["test_id"]))
        return scores[:limit]

    def daily_stats(self, window_days: int = 30) -> List[Dict[str, Any]]:
        """Per-day result counts and average duration, newest day first."""
        since = self._since(window_days)
        day = func.date(TestResultModel.created_at)

        with self._session_factory() as session:
            rows = (
                session.query(
                    day.label("day"),
                    func.count(func.distinct(TestResultModel.run_id)).label("runs"),
                    func.count(TestResultModel.id).label("tests"),
                    _count_status(PASSED).label("passed"),
                    _count_status(FAILED).label("failed"),
                    _count_status(SKIPPED).label("skipped"),
                    func.avg(TestResultModel.duration_ms).label("avg_duration"),
                )
                .filter(TestResultModel.created_at >= since)
                .group_by(day)
                .order_by(desc(day))
                .all()
            )

        return [
            {
                # SQLite returns the day as text, PostgreSQL as a date
                "date": str(row.day),
                "total_runs": row.runs,
                "total_tests": row.tests,
                "passed": row.passed,
                "failed": row.failed,
                "skipped": row.skipped,
                "pass_rate": round(100.0 * row.passed / row.tests, 2) if row.tests else 0.0,
                "avg_duration_ms": int(round(row.avg_duration or 0)),
            }
            for row in rows
        ]

    def endpoint_rates(
        self, window_days: int = 30, limit: int = 20, min_calls: int = 5
    ) -> List[Dict[str, Any]]:
        """Per-endpoint reliability, most failures first."""
        since = self._since(window_days)
        passed = _count_status(PASSED)
        failed = _count_status(FAILED)
        total = func.count(TestResultModel.id)

        with self._session_factory() as session:
            rows = (
                session.query(
                    TestResultModel.endpoint,
                    TestResultModel.http_method,
                    total.label("total"),
                    passed.label("passed"),
                    failed.label("failed"),
                    func.avg(TestResultModel.duration_ms).label("avg_duration"),
                )
                .filter(
                    TestResultModel.created_at >= since,
                    TestResultModel.endpoint.isnot(None),
                )
                .group_by(TestResultModel.endpoint, TestResultModel.http_method)
                .having(total >= min_calls)
                .all()
            )

        rates = [
            {
                "endpoint": row.endpoint,
                "method": row.http_method,
                "total_calls": row.total,
                "successful": row.passed,
                "failed": row.failed,
                "success_rate": round(100.0 * row.passed / row.total, 2),
                "avg_duration_ms": int(round(row.avg_duration or 0)),
            }
            for row in rows
        ]
        rates.sort(key=lambda item: (-item["failed"], item["success_rate"]))
        return rates[:limit]

    def search_tests(self, term: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Active tests matching ``term`` by name, slug or endpoint."""
        pattern = f"%{term.strip()}%"
        with self._session_factory() as session:
            tests = (
                session.query(TestModel)
                .filter(
                    TestModel.deleted_at.is_(None),
                    or_(
                        TestModel.current_name.ilike(pattern),
                        TestModel.slug.ilike(pattern),
                        TestModel.endpoint.ilike(pattern),
                    ),
                )
                .order_by(desc(TestModel.last_seen_at), TestModel.id)
                .limit(limit)
                .all()
            )
            return [test.to_dict() for test in tests]


def window_statuses(session: Session, test_id: int, since: datetime) -> List[str]:
    """Statuses of one test since ``since``, oldest first."""
    return [
        status
        for (status,) in session.query(TestResultModel.status)
        .filter(TestResultModel.test_id == test_id, TestResultModel.created_at >= since)
        .order_by(TestResultModel.created_at, TestResultModel.id)
    ]
