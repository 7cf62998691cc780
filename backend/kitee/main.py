"""
Kitee API - FastAPI Application Factory
=========================================

What:  Creates and configures the FastAPI application instance.
Why:   Middleware order, exception handlers, route mounting and the
       startup/shutdown lifecycle live in one place.
How:   create_app() returns a configured FastAPI instance; ``app`` is the
       module-level instance uvicorn serves (``kitee.main:app``).

Ingress pipeline (request order; the order is part of the contract):

    ┌──────────────┐ ┌────────────┐ ┌────────────┐ ┌─────────────┐ ┌──────────────┐
    │ Header scrub │→│ Request ID │→│ Access log │→│ Body parser │→│ CORS admission│→ routes
    └──────────────┘ └────────────┘ └────────────┘ └─────────────┘ └──────────────┘

Lifecycle:
    Startup (lifespan, before the socket is bound):
    1. Configure logging

    Listening (on_listening, called by kitee.server once the port is bound):
    1. Log that the app is running on the bound port
    2. Start the MongoDB connection in the background (never awaited here)
    Any exception in these steps is logged and the app still serves HTTP.

    Shutdown:
    1. Close the MongoDB client
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Mapping, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from kitee import __version__
from kitee.config import settings
from kitee.database import mongo
from kitee.exceptions import KiteeError, error_response
from kitee.middleware.body_parser import BodyParserMiddleware
from kitee.middleware.cors import ALLOWED_ORIGINS, CORSAdmissionMiddleware
from kitee.middleware.header_scrub import HeaderScrubMiddleware
from kitee.middleware.logging import RequestLoggingMiddleware
from kitee.middleware.request_id import RequestIDLogFilter, RequestIDMiddleware, request_id_var
from kitee.routes import index, v1

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure leveled stdout logging for the whole process.

    Format: %(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s

    The request ID comes from RequestIDLogFilter, so every line logged
    while a request is in flight (access line included) carries its ID.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIDLogFilter())

    logging.basicConfig(
        level=getattr(logging, level or settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[handler],
        force=True,
    )

    # Our own access log replaces uvicorn's
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("pymongo").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Startup and shutdown procedures.

    uvicorn runs this before binding the socket, so nothing here announces
    readiness or touches the database; see on_listening().
    """
    setup_logging()
    app.state.mongo = mongo

    yield

    await mongo.close()
    logger.info("Shutdown complete.")


def on_listening(port: int) -> None:
    """
    Called once the listener is bound on ``port``.

    The database connect is started, not awaited: HTTP is already being
    served while it runs, and its success or failure is logged by the
    connection task.
    """
    try:
        logger.info("App is now running on port %d!!!", port)
        mongo.connect(
            settings.mongo_url,
            default_db=settings.mongo_default_db,
            server_selection_timeout_ms=settings.mongo_server_selection_timeout_ms,
        )
    except Exception as e:
        # Don't exit: / and /health keep answering, database routes return 503
        logger.error("Failed to start server -> error : %s", e, exc_info=True)


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def register_exception_handlers(app: FastAPI) -> None:
    """
    Map application exceptions to JSON error responses.

    KiteeError subclasses carry their own status code and error code.
    Anything else becomes a generic 500; the traceback is logged and never
    returned to the client.
    """

    @app.exception_handler(KiteeError)
    async def handle_kitee_error(request: Request, exc: KiteeError):
        rid = request_id_var.get("")
        log = logger.error if exc.status_code >= 500 else logger.warning
        log("%s: %s | Context: %s", exc.error_code, exc.message, exc.context)
        return error_response(exc, rid)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        rid = request_id_var.get("")
        logger.error("Unexpected error: %s", str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred. Please try again or contact support.",
                "request_id": rid,
            },
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(route_groups: Optional[Mapping[str, APIRouter]] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        route_groups: prefix → router mapping to mount; defaults to the
                      four v1 groups.
    """
    app = FastAPI(
        title="Kitee API",
        description="Backend API for Kitee forms: users, forms, responses and insights.",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Register Middleware ───────────────────────────────────────────────
    # Starlette runs middleware in REVERSE order of addition (last added is
    # outermost), so they are added innermost first.

    # 5. CORS admission: reject foreign origins, add CORS headers for ours
    app.add_middleware(CORSAdmissionMiddleware, allowlist=ALLOWED_ORIGINS)

    # 4. Body parsing with raw capture, 50 MB limit
    app.add_middleware(BodyParserMiddleware, limit=settings.body_limit_bytes)

    # 3. One access line per request
    app.add_middleware(RequestLoggingMiddleware)

    # 2. Request ID for every request
    app.add_middleware(RequestIDMiddleware)

    # 1. Strip framework-identifying headers from every response
    app.add_middleware(HeaderScrubMiddleware)

    register_exception_handlers(app)

    # ── Register Routes ───────────────────────────────────────────────────
    app.include_router(index.router)
    for prefix, router in (route_groups if route_groups is not None else v1.ROUTE_GROUPS).items():
        app.include_router(router, prefix=prefix)

    return app


app = create_app()
