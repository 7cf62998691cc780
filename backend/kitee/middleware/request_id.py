"""
Kitee API - Request ID Middleware
===================================

What:  Assigns a unique ID to each incoming request and returns it in the
       ``X-Request-ID`` response header.
Why:   Lets every log line of a request, including its access line, be
       correlated with the request and with client-side error reports.
How:   Reuses a client-supplied ``X-Request-ID`` or generates a UUID4,
       stores it in ``request.state`` and in a ContextVar that the logging
       filter reads.
"""

import logging
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"

# Coroutine-local: concurrent requests on one event loop each see their own ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def generate_request_id() -> str:
    return str(uuid.uuid4())


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware that tags each request with an ID for tracing.

    Behavior:
        1. Use the client's X-Request-ID header if it sent a non-empty one
        2. Otherwise generate a UUID4
        3. Store in the ContextVar (loggers) and request.state (handlers)
        4. Echo it in the response headers
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        rid = request.headers.get(REQUEST_ID_HEADER) or generate_request_id()

        token = request_id_var.set(rid)
        request.state.request_id = rid
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)

        response.headers[REQUEST_ID_HEADER] = rid
        return response


class RequestIDLogFilter(logging.Filter):
    """Adds ``request_id`` to every log record ("-" outside a request)."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = request_id_var.get() or "-"
        return True
