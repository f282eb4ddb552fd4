"""
Operational endpoints: liveness, readiness and the metrics scrape.
"""

import logging

from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from mymcp.core.database import check_connection, get_engine
from mymcp.core.metrics import METRICS

logger = logging.getLogger("mymcp")

router = APIRouter(tags=["ops"])

# Tables the request path cannot work without
REQUIRED_TABLES = (
    "app_users",
    "plans",
    "subscriptions",
    "user_usage",
    "request_logs",
    "server_instances",
)


def _not_ready(detail: str) -> JSONResponse:
    return JSONResponse(status_code=503, content={"status": "error", "detail": detail})


@router.get("/healthz")
def healthz():
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Ready once the database answers and the schema is in place."""
    if not check_connection():
        return _not_ready("database unreachable")
    try:
        engine = get_engine()
        missing = [t for t in REQUIRED_TABLES if not inspect(engine).has_table(t)]
    except SQLAlchemyError as exc:
        logger.error(f"[readyz] schema inspection failed: {exc}")
        return _not_ready("database unreachable")

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return _not_ready(detail)
    return {"status": "ok"}


@router.get("/metrics")
def metrics():
    return Response(content=METRICS.export_prometheus(), media_type="text/plain; version=0.0.4")
