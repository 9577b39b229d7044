"""
Transaction metrics for the persistence engine.

The executor reports into a ``TransactionMetrics`` sink that is passed in
explicitly, so tests and concurrent run-processors can each hold their own
counters and reset them between cases.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Dict


@dataclass
class TransactionCounters:
    """Point-in-time copy of the transaction counters."""

    transactions: int = 0
    rollbacks: int = 0
    retries: int = 0
    constraint_violations: int = 0
    deadlocks: int = 0
    timeouts: int = 0
    connections_waiting: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TransactionMetrics(ABC):
    """Sink for transaction counters and gauges."""

    @abstractmethod
    def increment(self, name: str, value: int = 1) -> None:
        """Add ``value`` to the counter ``name``."""
        pass

    @abstractmethod
    def adjust_gauge(self, name: str, delta: int) -> None:
        """Move the gauge ``name`` up or down by ``delta``."""
        pass

    @abstractmethod
    def snapshot(self) -> TransactionCounters:
        """Return a copy of the current values."""
        pass

    @abstractmethod
    def reset(self) -> None:
        """Zero every counter and gauge."""
        pass


class InMemoryTransactionMetrics(TransactionMetrics):
    """Thread-safe in-process metrics sink."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters = TransactionCounters()

    def increment(self, name: str, value: int = 1) -> None:
        with self._lock:
            setattr(self._counters, name, getattr(self._counters, name) + value)

    def adjust_gauge(self, name: str, delta: int) -> None:
        with self._lock:
            current = getattr(self._counters, name) + delta
            setattr(self._counters, name, max(current, 0))

    def snapshot(self) -> TransactionCounters:
        with self._lock:
            return TransactionCounters(**asdict(self._counters))

    def reset(self) -> None:
        with self._lock:
            self._counters = TransactionCounters()
