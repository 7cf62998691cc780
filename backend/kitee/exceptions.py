"""
Kitee API - Custom Exception Hierarchy
========================================

What:  Application-specific exceptions for the ingress pipeline and the
       database connector.
Why:   Each error maps to one HTTP status and one machine-readable code,
       so the same JSON shape is produced whether the error is raised in a
       route (exception handler) or detected in middleware (``error_response``).

Exception Hierarchy:
    KiteeError (base)                 → 500
    ├── MalformedBodyError            → 400 Bad Request
    ├── CORSOriginDeniedError         → 403 Forbidden
    ├── PayloadTooLargeError          → 413 Payload Too Large
    ├── UnsupportedMediaTypeError     → 415 Unsupported Media Type
    └── DatabaseUnavailableError      → 503 Service Unavailable
"""

from typing import Any, Dict, Optional

from starlette.responses import JSONResponse


class KiteeError(Exception):
    """
    Base exception for all Kitee application errors.

    Attributes:
        message:  User-facing error description (safe to return in a response)
        context:  Extra details; returned as ``details`` only when
                  ``expose_context`` is set on the class
    """

    status_code: int = 500
    error_code: str = "server_error"
    expose_context: bool = False

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class MalformedBodyError(KiteeError):
    """Request body could not be parsed for its declared content type."""

    status_code = 400
    error_code = "malformed_body"
    expose_context = True

    def __init__(
        self,
        message: str = "Request body could not be parsed",
        content_type: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if content_type:
            ctx["content_type"] = content_type
        super().__init__(message=message, context=ctx)


class CORSOriginDeniedError(KiteeError):
    """
    Raised when a browser request carries an Origin outside the allow-list.

    The response carries no CORS headers, so the browser blocks it and the
    caller sees a CORS/network error rather than this body.
    """

    status_code = 403
    error_code = "cors_origin_denied"

    def __init__(self, origin: str, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["origin"] = origin
        super().__init__(
            message=(
                "The CORS policy for this site does not allow access "
                "from the specified Origin."
            ),
            context=ctx,
        )
        self.origin = origin


class PayloadTooLargeError(KiteeError):
    """Request body exceeds the configured limit."""

    status_code = 413
    error_code = "payload_too_large"
    expose_context = True

    def __init__(self, limit: int, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["limit"] = limit
        super().__init__(
            message=f"Request body exceeds the {limit} byte limit",
            context=ctx,
        )
        self.limit = limit


class UnsupportedMediaTypeError(KiteeError):
    """Unknown charset or content encoding on the request body."""

    status_code = 415
    error_code = "unsupported_media_type"
    expose_context = True

    def __init__(
        self,
        message: str = "Unsupported request body encoding",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class DatabaseUnavailableError(KiteeError):
    """
    The database connection is not (yet) established.

    Raised per request by the ``get_database`` dependency; the rest of the
    server keeps working while the database is down.
    """

    status_code = 503
    error_code = "database_unavailable"

    def __init__(
        self,
        message: str = "The database is temporarily unavailable. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


def error_response(exc: KiteeError, request_id: str = "") -> JSONResponse:
    """Render a KiteeError as the standard JSON error body."""
    content: Dict[str, Any] = {
        "error": exc.error_code,
        "message": exc.message,
        "request_id": request_id,
    }
    if exc.expose_context and exc.context:
        content["details"] = exc.context
    return JSONResponse(status_code=exc.status_code, content=content)
