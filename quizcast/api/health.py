"""
Liveness and readiness probes. Responses never include connection details.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from quizcast.core.database import check_connection, missing_tables

logger = logging.getLogger("quizcast.health")

router = APIRouter(tags=["health"])


def _not_ready(detail: str) -> JSONResponse:
    logger.warning("[readyz] not ready: %s", detail)
    return JSONResponse(status_code=503, content={"status": "error", "detail": detail})


@router.get("/healthz")
def healthz():
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Ready when the entitlement store answers and every table exists."""
    if not check_connection():
        return _not_ready("database unreachable")
    try:
        missing = missing_tables()
    except SQLAlchemyError:
        return _not_ready("database unreachable")
    if missing:
        return _not_ready(f"missing tables: {', '.join(missing)}")
    return {"status": "ok"}
