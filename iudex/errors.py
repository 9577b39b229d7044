"""
Error taxonomy for the Iudex persistence engine.

- ValidationError: bad input to a single write, never retried.
- TransientDatabaseError: conflict, deadlock or timeout that survived retries.
- FatalDatabaseError: connectivity, permission or schema failure, never retried.
- PartialBatchFailure: one or more chunks of a batched run failed.
- ImmutabilityError: attempted mutation of an append-only row.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .schemas import PersistSummary


class IudexError(Exception):
    """Base class for all Iudex errors."""

    code = "IUDEX_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class ValidationError(IudexError, ValueError):
    """Raised when a descriptor cannot be persisted as given."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["field"] = self.field
        return data


class DatabaseError(IudexError):
    """Base class for datastore failures."""

    code = "DATABASE_ERROR"


class TransientDatabaseError(DatabaseError):
    """A retryable failure class that was not resolved by retrying.

    ``kind`` is one of ``conflict``, ``deadlock`` or ``timeout``.
    """

    code = "TRANSIENT_DATABASE_ERROR"

    def __init__(self, message: str, kind: str = "conflict", attempts: int = 1):
        self.kind = kind
        self.attempts = attempts
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"kind": self.kind, "attempts": self.attempts})
        return data


class FatalDatabaseError(DatabaseError):
    """Connectivity, permission or schema failure."""

    code = "FATAL_DATABASE_ERROR"


class PartialBatchFailure(IudexError):
    """Raised in batched mode when ``throw_on_error`` is set and a chunk fails."""

    code = "PARTIAL_BATCH_FAILURE"

    def __init__(self, summary: "PersistSummary"):
        self.summary = summary
        super().__init__(
            f"{summary.failed_batches} batch(es) failed while persisting run "
            f"{summary.run_id}"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["summary"] = self.summary.model_dump(mode="json")
        return data


class ImmutabilityError(IudexError):
    """Raised when attempting to modify an immutable object."""

    code = "IMMUTABILITY_VIOLATION"

    def __init__(self, object_type: str, object_id: Any):
        self.object_type = object_type
        self.object_id = object_id
        super().__init__(
            f"{object_type} objects are immutable. Cannot modify {object_id}."
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "object_type": self.object_type,
            "object_id": self.object_id,
            "message": self.message,
        }
