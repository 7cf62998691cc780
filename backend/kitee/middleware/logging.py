"""
Kitee API - Access Logging Middleware
=======================================

What:  One access line per completed request.
Why:   Request volume, latency and failures need to be visible and
       correlated with the request ID.
How:   Times the downstream call and logs
       ``<request_id> <method> <url> <status> <response-time> ms``
       on the ``kitee.access`` logger once the response is produced.

The line is a side effect only: the response is returned untouched. The
stdlib logging handlers report their own I/O failures through
``Handler.handleError`` instead of raising, so a broken log sink never fails
the request.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from kitee.middleware.request_id import request_id_var

logger = logging.getLogger("kitee.access")


def _level_for(status: int) -> int:
    # 5xx → ERROR, 4xx → WARNING, 2xx/3xx → INFO
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs method, URL, status and duration of each request.

    Duration runs from middleware entry to the response object being
    returned, which covers body parsing, CORS admission and the handler.
    If the downstream app raises, the request is logged as a 500 and the
    exception is re-raised for the server error handler.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            self._log(request, 500, start_time)
            raise

        self._log(request, response.status_code, start_time)
        return response

    @staticmethod
    def _log(request: Request, status: int, start_time: float) -> None:
        duration_ms = (time.perf_counter() - start_time) * 1000
        rid = getattr(request.state, "request_id", "") or request_id_var.get()
        url = request.url.path
        if request.url.query:
            url = f"{url}?{request.url.query}"

        logger.log(
            _level_for(status),
            "%s %s %s %d %.3f ms",
            rid,
            request.method,
            url,
            status,
            duration_ms,
            extra={
                "request_id": rid,
                "method": request.method,
                "url": url,
                "status": status,
                "duration_ms": round(duration_ms, 3),
            },
        )
