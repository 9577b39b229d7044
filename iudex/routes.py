"""
Iudex API Routes.

Dashboard reads, run ingestion and transaction metrics.
All endpoints are prefixed with /api.
"""

from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .batching import BatchCoordinator
from .dashboard import ANALYTICS_TYPES, MAX_PAGE_SIZE, DashboardService
from .db.base import get_session_local
from .db.metrics import TransactionMetrics
from .db.transactions import TransactionalExecutor
from .errors import (
    DatabaseError,
    FatalDatabaseError,
    PartialBatchFailure,
    TransientDatabaseError,
    ValidationError,
)
from .schemas import PersistSummary, RunIngestRequest

logger = structlog.get_logger()

router = APIRouter(prefix="/api", tags=["iudex"])


# =============================================================================
# Dependencies
# =============================================================================


def get_session_factory() -> sessionmaker:
    return get_session_local()


def get_metrics(request: Request) -> TransactionMetrics:
    """The application's metrics sink, created with the app."""
    return request.app.state.metrics


def get_executor(
    session_factory: sessionmaker = Depends(get_session_factory),
    metrics: TransactionMetrics = Depends(get_metrics),
) -> TransactionalExecutor:
    return TransactionalExecutor.from_settings(session_factory, metrics=metrics)


def get_coordinator(
    executor: TransactionalExecutor = Depends(get_executor),
) -> BatchCoordinator:
    return BatchCoordinator.from_settings(executor)


def get_dashboard(
    session_factory: sessionmaker = Depends(get_session_factory),
) -> DashboardService:
    return DashboardService(session_factory)


def _unavailable(payload: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=503, content=payload)


# =============================================================================
# Dashboard Endpoints
# =============================================================================


@router.get("/runs")
def list_runs(
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    cursor: Optional[str] = None,
    dashboard: DashboardService = Depends(get_dashboard),
) -> Any:
    """List runs, newest first, with cursor pagination."""
    page = dashboard.list_runs(limit=limit, cursor=cursor)
    if not page["available"]:
        return _unavailable(page)
    return page


@router.get("/run/{run_id}")
def get_run(
    run_id: int,
    dashboard: DashboardService = Depends(get_dashboard),
) -> Any:
    """Get one run with its tests grouped by suite."""
    try:
        detail = dashboard.get_run_detail(run_id)
    except (SQLAlchemyError, DatabaseError) as e:
        logger.error("run_detail_unavailable", run_id=run_id, error=str(e))
        return _unavailable({"available": False, "error": str(e)})

    if detail is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return detail


@router.get("/analytics")
def get_analytics(
    analytics_type: str = Query(..., alias="type"),
    limit: Optional[int] = Query(None, ge=1, le=MAX_PAGE_SIZE),
    days: Optional[int] = Query(None, ge=1, le=365),
    dashboard: DashboardService = Depends(get_dashboard),
) -> Any:
    """Run one analytics query by name."""
    try:
        payload = dashboard.get_analytics(analytics_type, limit=limit, window_days=days)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "UNKNOWN_ANALYTICS_TYPE",
                "message": f"Unknown analytics type: {analytics_type}",
                "allowed": list(ANALYTICS_TYPES),
            },
        )
    if not payload["available"]:
        return _unavailable(payload)
    return payload


# =============================================================================
# Ingestion Endpoints
# =============================================================================


@router.post("/runs", status_code=201, response_model=PersistSummary)
def ingest_run(
    request: RunIngestRequest,
    coordinator: BatchCoordinator = Depends(get_coordinator),
) -> PersistSummary:
    """Persist a run and its ordered outcomes."""
    try:
        return coordinator.persist_run(request.run, request.outcomes)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.to_dict())
    except PartialBatchFailure as e:
        raise HTTPException(status_code=500, detail=e.to_dict())
    except TransientDatabaseError as e:
        raise HTTPException(status_code=503, detail=e.to_dict())
    except FatalDatabaseError as e:
        logger.error("run_ingest_failed", error=str(e))
        raise HTTPException(status_code=500, detail=e.to_dict())


# =============================================================================
# Metrics Endpoints
# =============================================================================


@router.get("/metrics")
def get_metrics_snapshot(
    executor: TransactionalExecutor = Depends(get_executor),
) -> Dict[str, Any]:
    """Transaction counters and connection pool usage."""
    return {
        "transactions": executor.metrics.snapshot().to_dict(),
        "pool": executor.pool_stats(),
    }
