"""Liveness and readiness checks. Neither touches the ledger."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from autopay.core.database import missing_tables

logger = logging.getLogger("autopay")

router = APIRouter(tags=["health"])


def _not_ready(detail: str) -> JSONResponse:
    return JSONResponse(status_code=503, content={"status": "error", "detail": detail})


@router.get("/healthz")
def healthz():
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Ready once the database answers and every autopay table exists."""
    try:
        missing = missing_tables()
    except Exception as e:
        logger.error(f"[readyz] database unreachable: {e}")
        return _not_ready("database unreachable")

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return _not_ready(detail)
    return {"status": "ok"}
