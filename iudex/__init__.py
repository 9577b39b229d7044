"""
Iudex

Persistence and analytics engine for API test results: stable test
identity across renames, an immutable result log, deletion tracking and
dashboard analytics.
"""

import importlib.metadata

__version__ = importlib.metadata.version("iudex-persistence")

from .analytics import AnalyticsReader
from .batching import BatchCoordinator
from .dashboard import DashboardService
from .db.transactions import TransactionalExecutor, TransactionOptions
from .deletion import DeletionDetector
from .errors import (
    DatabaseError,
    FatalDatabaseError,
    ImmutabilityError,
    IudexError,
    PartialBatchFailure,
    TransientDatabaseError,
    ValidationError,
)
from .identity import IdentityResolver
from .schemas import (
    IdentityDescriptor,
    OutcomeStatus,
    PersistSummary,
    RunMeta,
    RunOutcome,
    derive_slug,
)

__all__ = [
    "AnalyticsReader",
    "BatchCoordinator",
    "DashboardService",
    "DatabaseError",
    "DeletionDetector",
    "FatalDatabaseError",
    "IdentityDescriptor",
    "IdentityResolver",
    "ImmutabilityError",
    "IudexError",
    "OutcomeStatus",
    "PartialBatchFailure",
    "PersistSummary",
    "RunMeta",
    "RunOutcome",
    "TransactionalExecutor",
    "TransactionOptions",
    "TransientDatabaseError",
    "ValidationError",
    "derive_slug",
]
