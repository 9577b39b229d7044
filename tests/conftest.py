"""Test configuration and fixtures."""

from datetime import datetime, timedelta, timezone
from typing import Generator

import pytest
from sqlalchemy.orm import Session

from iudex.analytics import AnalyticsReader
from iudex.batching import BatchCoordinator
from iudex.db.base import create_db_engine, get_session_local, init_database
from iudex.db.metrics import InMemoryTransactionMetrics
from iudex.db.transactions import TransactionalExecutor, TransactionOptions
from iudex.deletion import DeletionDetector
from iudex.identity import IdentityResolver
from iudex.schemas import RunMeta, RunOutcome

START = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine():
    """Fresh in-memory database for each test."""
    engine = create_db_engine("sqlite://")
    init_database(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_local(engine)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def metrics() -> InMemoryTransactionMetrics:
    return InMemoryTransactionMetrics()


@pytest.fixture
def executor(session_factory, metrics) -> TransactionalExecutor:
    """Executor with retries enabled but no real backoff sleeps."""
    return TransactionalExecutor(
        session_factory,
        metrics=metrics,
        options=TransactionOptions(max_retries=3, base_delay=0.0, max_delay=0.0),
        sleep=lambda _: None,
    )


@pytest.fixture
def resolver(clock) -> IdentityResolver:
    return IdentityResolver(clock=clock)


@pytest.fixture
def detector(clock) -> DeletionDetector:
    return DeletionDetector(clock=clock)


@pytest.fixture
def coordinator(executor, resolver, detector, clock) -> BatchCoordinator:
    return BatchCoordinator(
        executor,
        resolver=resolver,
        detector=detector,
        batch_size=100,
        clock=clock,
    )


@pytest.fixture
def analytics(session_factory, clock) -> AnalyticsReader:
    return AnalyticsReader(session_factory, clock=clock)


@pytest.fixture
def make_outcome():
    """Build a RunOutcome with sensible defaults."""

    def _make(test_name: str, status: str = "passed", suite_name: str = "S", **kwargs) -> RunOutcome:
        return RunOutcome(
            suite_name=suite_name,
            test_name=test_name,
            status=status,
            duration_ms=kwargs.pop("duration_ms", 10),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_run(clock):
    """Build RunMeta starting at the current fake time."""

    def _make(suite_name: str = "S", **kwargs) -> RunMeta:
        return RunMeta(suite_name=suite_name, started_at=clock(), **kwargs)

    return _make
