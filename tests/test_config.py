"""Tests for settings and the transaction metrics sink."""

from iudex.batching import BatchCoordinator
from iudex.config import Settings
from iudex.db.metrics import InMemoryTransactionMetrics
from iudex.db.transactions import TransactionalExecutor, TransactionOptions


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.batch_size == 100
        assert settings.enable_batching is True
        assert settings.max_retries == 3

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("IUDEX_BATCH_SIZE", "25")
        monkeypatch.setenv("IUDEX_ENABLE_BATCHING", "false")
        monkeypatch.setenv("IUDEX_MAX_RETRIES", "0")

        settings = Settings(_env_file=None)

        assert settings.batch_size == 25
        assert settings.enable_batching is False
        assert settings.max_retries == 0

    def test_coordinator_from_settings(self, session_factory, monkeypatch):
        monkeypatch.setenv("IUDEX_BATCH_SIZE", "7")
        settings = Settings(_env_file=None)

        executor = TransactionalExecutor.from_settings(session_factory, settings)
        coordinator = BatchCoordinator.from_settings(executor, settings)

        assert coordinator.batch_size == 7
        assert executor.options == TransactionOptions.from_settings(settings)


class TestInMemoryMetrics:
    def test_increment_and_reset(self):
        metrics = InMemoryTransactionMetrics()
        metrics.increment("transactions")
        metrics.increment("retries", 2)

        snapshot = metrics.snapshot()
        assert snapshot.transactions == 1
        assert snapshot.retries == 2

        metrics.reset()
        assert metrics.snapshot().to_dict() == {
            "transactions": 0,
            "rollbacks": 0,
            "retries": 0,
            "constraint_violations": 0,
            "deadlocks": 0,
            "timeouts": 0,
            "connections_waiting": 0,
        }

    def test_gauge_never_negative(self):
        metrics = InMemoryTransactionMetrics()
        metrics.adjust_gauge("connections_waiting", 1)
        metrics.adjust_gauge("connections_waiting", -3)

        assert metrics.snapshot().connections_waiting == 0

    def test_snapshot_is_a_copy(self):
        metrics = InMemoryTransactionMetrics()
        snapshot = metrics.snapshot()
        metrics.increment("transactions")

        assert snapshot.transactions == 0
