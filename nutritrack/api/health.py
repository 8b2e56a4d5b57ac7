"""
Liveness and readiness probes.
"""
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from nutritrack.core.database import get_engine

logger = logging.getLogger("nutritrack")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "users",
    "billing_customers",
    "billing_events",
    "billing_job_runs",
]


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz(request: Request):
    """Readiness check: DB connectivity + required tables."""
    try:
        engine = getattr(request.app.state, "engine", None) or get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning("readyz.missing_tables", extra={"detail": detail})
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok"}
    except (SQLAlchemyError, ValueError) as e:
        logger.error("readyz.failed", extra={"reason": str(e)})
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
