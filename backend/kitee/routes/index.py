"""
Kitee API - Root and Health Routes
====================================

What:  ``GET /`` greeting and ``GET /health`` status check.
Why:   Load balancers and uptime checks need endpoints that answer as soon
       as the process listens, whatever the database is doing.
"""

import logging
import time

from fastapi import APIRouter

from kitee import __version__
from kitee.database import mongo
from kitee.schemas.common import HealthResponse, MessageResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get("/", response_model=MessageResponse, summary="Greeting")
async def index() -> MessageResponse:
    return MessageResponse(success=True, message="Howdy!!!")


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
    description=(
        "Reports the service version, uptime and the database connection "
        "state. Always 200 while the process is serving HTTP."
    ),
)
async def health_check() -> HealthResponse:
    db_state = mongo.state
    if db_state != "connected":
        logger.debug("Health check: database %s", db_state)

    return HealthResponse(
        status="ok",
        version=__version__,
        database=db_state,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
