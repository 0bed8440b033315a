from __future__ import annotations

import logging

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from ..schemas import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get(
    "/healthz",
    response_model=HealthResponse,
    responses={503: {"description": "Database unreachable"}},
)
def healthz(request: Request):
    """Liveness probe that also checks database connectivity."""
    try:
        request.app.state.db.ping()
    except SQLAlchemyError as exc:
        logger.warning("Health check failed: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "database": "unreachable"},
        )
    return HealthResponse(status="healthy", database="connected")


@router.get("/ready", response_model=HealthResponse, response_model_exclude_none=True)
def ready() -> HealthResponse:
    return HealthResponse(status="ready")
