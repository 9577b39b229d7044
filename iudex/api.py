"""
FastAPI application for the Iudex dashboard and ingestion API.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import __version__
from .config import get_settings
from .db.base import get_db, init_database
from .db.metrics import InMemoryTransactionMetrics
from .logging_config import configure_logging
from .routes import router

logger = structlog.get_logger()

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    configure_logging()
    logger.info("iudex_api_starting", environment=settings.environment)

    try:
        init_database()
        logger.info("database_initialized")
    except SQLAlchemyError as e:
        # Reads degrade to "unavailable" until the database comes back
        logger.error("database_init_failed", error=str(e))

    yield

    logger.info("iudex_api_stopped")


app = FastAPI(
    title="Iudex",
    description="Test result persistence and analytics",
    version=__version__,
    lifespan=lifespan,
)

# Transaction counters for every request's executor, read by routes.get_metrics
app.state.metrics = InMemoryTransactionMetrics()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.get("/healthz")
def healthz(db: Session = Depends(get_db)) -> Any:
    """Health check endpoint, including database reachability."""
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "database": "unavailable", "error": str(e)},
        )
    return {"status": "ok", "database": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    """Return the version of the application."""
    return {"version": __version__}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
