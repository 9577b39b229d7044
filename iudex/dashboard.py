"""
Dashboard read API.

Run listing uses keyset pagination over ``(started_at, id)`` descending with
an opaque base64 cursor. Every read degrades to ``{"available": False}``
when the datastore cannot be reached.
"""

from __future__ import annotations

import base64
import binascii
import json
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import structlog
from sqlalchemy import and_, desc, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, sessionmaker

from .analytics import AnalyticsReader
from .db.models import TestModel, TestResultModel, TestRunModel
from .errors import DatabaseError
from .schemas import as_utc

logger = structlog.get_logger()

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

ANALYTICS_TYPES = (
    "flaky-tests",
    "regressions",
    "health-scores",
    "daily-stats",
    "endpoint-rates",
)

_UNAVAILABLE_ERRORS = (SQLAlchemyError, DatabaseError)


def encode_cursor(started_at: datetime, run_id: int) -> str:
    payload = {"started_at": as_utc(started_at).isoformat(), "id": run_id}
    return base64.urlsafe_b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> Optional[Tuple[datetime, int]]:
    """Decode a page cursor; None when it is malformed."""
    try:
        payload = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
        return as_utc(datetime.fromisoformat(payload["started_at"])), int(payload["id"])
    except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError) as e:
        logger.warning("invalid_cursor", cursor=cursor, error=str(e))
        return None


def _unavailable(error: Exception) -> Dict[str, Any]:
    return {"available": False, "error": str(error)}


class DashboardService:
    """Run listing, run detail and analytics for the dashboard."""

    def __init__(
        self,
        session_factory: sessionmaker,
        analytics: Optional[AnalyticsReader] = None,
    ):
        self._session_factory = session_factory
        self.analytics = analytics or AnalyticsReader(session_factory)

    def list_runs(self, limit: int = DEFAULT_PAGE_SIZE, cursor: Optional[str] = None) -> Dict[str, Any]:
        """One page of runs, newest first.

        Returns:
            ``{available, runs, latest, next_cursor, has_more}``; ``latest`` is
            the id of the newest run overall
        """
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        position = decode_cursor(cursor) if cursor else None

        try:
            with self._session_factory() as session:
                query = session.query(TestRunModel).options(joinedload(TestRunModel.suite))
                if position is not None:
                    started_at, run_id = position
                    query = query.filter(
                        or_(
                            TestRunModel.started_at < started_at,
                            and_(TestRunModel.started_at == started_at, TestRunModel.id < run_id),
                        )
                    )
                rows = (
                    query.order_by(desc(TestRunModel.started_at), desc(TestRunModel.id))
                    .limit(limit + 1)
                    .all()
                )
                latest = (
                    session.query(TestRunModel.id)
                    .order_by(desc(TestRunModel.started_at), desc(TestRunModel.id))
                    .limit(1)
                    .scalar()
                )
                runs = [run.to_dict() for run in rows[:limit]]
        except _UNAVAILABLE_ERRORS as e:
            logger.error("list_runs_unavailable", error=str(e))
            return _unavailable(e)

        has_more = len(rows) > limit
        next_cursor = None
        if has_more and runs:
            last = rows[limit - 1]
            next_cursor = encode_cursor(last.started_at, last.id)

        return {
            "available": True,
            "runs": runs,
            "latest": latest,
            "next_cursor": next_cursor,
            "has_more": has_more,
        }

    def get_run_detail(self, run_id: int) -> Optional[Dict[str, Any]]:
        """Run summary with its tests grouped by suite, or None if unknown.

        A suite lists the tests that ran plus the tests already deleted when
        the run started or deleted by this run.
        """
        with self._session_factory() as session:
            run = (
                session.query(TestRunModel)
                .options(joinedload(TestRunModel.suite))
                .filter(TestRunModel.id == run_id)
                .one_or_none()
            )
            if run is None:
                return None

            results = (
                session.query(TestResultModel, TestModel.slug)
                .join(TestModel, TestModel.id == TestResultModel.test_id)
                .filter(TestResultModel.run_id == run_id)
                .order_by(TestResultModel.id)
                .all()
            )

            suites: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
            seen_ids = set()
            for result, slug in results:
                seen_ids.add(result.test_id)
                entry = result.to_dict()
                entry["slug"] = slug
                suites.setdefault(result.suite_name or "default", []).append(entry)

            executed = [name for name in suites if name]
            if executed:
                for test, deleted_in in self._deleted_as_of(session, run, executed, seen_ids):
                    suites[test.suite_name].append(
                        {
                            "test_id": test.id,
                            "slug": test.slug,
                            "test_name": test.current_name,
                            "test_description": test.current_description,
                            "status": "deleted",
                            "deleted_at": as_utc(deleted_in.started_at).isoformat(),
                            "deleted_in_run": deleted_in.id,
                            "deleted_by_run": deleted_in.id == run.id,
                        }
                    )

            return {
                "summary": run.to_dict(),
                "suites": [{"name": name, "tests": tests} for name, tests in suites.items()],
                "metadata": {
                    "environment": run.environment,
                    "branch": run.branch,
                    "commit_sha": run.commit_sha,
                    "commit_message": run.commit_message,
                    "triggered_by": run.triggered_by,
                    "run_url": run.run_url,
                },
            }

    @staticmethod
    def _deleted_as_of(
        session: Session,
        run: TestRunModel,
        suite_names: List[str],
        seen_ids: Set[int],
    ) -> List[Tuple[TestModel, TestRunModel]]:
        """Tests of ``suite_names`` that were deleted as of ``run``, with the deleting run.

        Built from the runs' ``deleted_test_ids`` rather than the current
        ``deleted_at`` marker, so a later resurrection leaves this view
        unchanged. A test counts when ``run`` deleted it, or when its latest
        deletion before ``run`` started is newer than its latest result.
        """
        started_at = as_utc(run.started_at)
        candidates = {
            test.id: test
            for test in session.query(TestModel)
            .filter(
                TestModel.suite_name.in_(suite_names),
                TestModel.first_seen_at <= started_at,
            )
            .order_by(TestModel.id)
            if test.id not in seen_ids
        }
        if not candidates:
            return []

        # Ascending, so the latest deletion of each test wins and ``run`` comes last
        deletions: Dict[int, TestRunModel] = {}
        earlier_runs = (
            session.query(TestRunModel)
            .filter(or_(TestRunModel.id == run.id, TestRunModel.started_at < started_at))
            .order_by(TestRunModel.started_at, TestRunModel.id)
            .all()
        )
        for earlier in earlier_runs:
            for test_id in earlier.deleted_test_ids or []:
                if test_id in candidates:
                    deletions[test_id] = earlier
        if not deletions:
            return []

        last_result = dict(
            session.query(TestResultModel.test_id, func.max(TestRunModel.started_at))
            .join(TestRunModel, TestRunModel.id == TestResultModel.run_id)
            .filter(
                TestResultModel.test_id.in_(list(deletions)),
                TestRunModel.started_at < started_at,
            )
            .group_by(TestResultModel.test_id)
            .all()
        )

        deleted = []
        for test_id, test in candidates.items():
            deleted_in = deletions.get(test_id)
            if deleted_in is None:
                continue
            if deleted_in.id != run.id:
                seen_at = last_result.get(test_id)
                if seen_at is not None and as_utc(seen_at) >= as_utc(deleted_in.started_at):
                    continue
            deleted.append((test, deleted_in))
        return deleted

    def get_analytics(
        self,
        analytics_type: str,
        limit: Optional[int] = None,
        window_days: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Dispatch to an analytics query by its dashboard name.

        Raises:
            ValueError: unknown analytics type
        """
        handlers: Dict[str, Callable[[], List[Dict[str, Any]]]] = {
            "flaky-tests": lambda: self.analytics.flaky_tests(
                window_days=window_days or 30, limit=limit or 20
            ),
            "regressions": lambda: self.analytics.regressions(
                window_days=window_days or 7, limit=limit or 20
            ),
            "health-scores": lambda: self.analytics.health_scores(
                window_days=window_days or 30, limit=limit or 50
            ),
            "daily-stats": lambda: self.analytics.daily_stats(window_days=window_days or 30),
            "endpoint-rates": lambda: self.analytics.endpoint_rates(
                window_days=window_days or 30, limit=limit or 20
            ),
        }
        handler = handlers.get(analytics_type)
        if handler is None:
            raise ValueError(f"Unknown analytics type: {analytics_type}")

        try:
            data = handler()
        except _UNAVAILABLE_ERRORS as e:
            logger.error("analytics_unavailable", type=analytics_type, error=str(e))
            return _unavailable(e)
        return {"available": True, "type": analytics_type, "data": data}
