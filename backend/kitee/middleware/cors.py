"""
Kitee API - CORS Admission Middleware
=======================================

What:  Decides whether a cross-origin browser request may proceed and emits
       the CORS response headers for admitted origins.
Why:   Starlette's CORSMiddleware only withholds headers from disallowed
       origins; the request still reaches the route. Here a disallowed
       origin is rejected before any route group runs.

Admission policy:
    no Origin header (or empty)  → allow (curl, mobile apps, server-to-server)
    Origin in ALLOWED_ORIGINS    → allow, CORS headers reflect the origin
    any other Origin             → 403, no CORS headers (browser blocks it)
"""

import logging
from typing import Iterable, Optional, Sequence

from starlette.datastructures import Headers
from starlette.middleware.cors import CORSMiddleware
from starlette.types import ASGIApp, Receive, Scope, Send

from kitee.exceptions import CORSOriginDeniedError, error_response
from kitee.middleware.request_id import request_id_var

logger = logging.getLogger(__name__)

ALLOWED_ORIGINS: Sequence[str] = (
    "http://localhost:3000",
    "https://app.getkitee.com",
    "https://app-staging.getkitee.com",
)

ALLOWED_METHODS: Sequence[str] = ("GET", "HEAD", "PUT", "PATCH", "POST", "DELETE")


def is_origin_allowed(origin: Optional[str], allowlist: Iterable[str]) -> bool:
    """
    Admission check for a request's Origin header.

    A missing or empty origin is always allowed; anything else must match
    an allow-list entry exactly.
    """
    if not origin:
        return True
    return origin in allowlist


class CORSAdmissionMiddleware(CORSMiddleware):
    """
    CORSMiddleware that rejects non-allow-listed origins outright.

    Admitted requests (and preflights) are handed to Starlette's
    implementation, which adds the Access-Control-* headers.
    """

    def __init__(
        self,
        app: ASGIApp,
        allowlist: Sequence[str] = ALLOWED_ORIGINS,
        allow_methods: Sequence[str] = ALLOWED_METHODS,
        allow_headers: Sequence[str] = ("*",),
        expose_headers: Sequence[str] = ("X-Request-ID",),
    ) -> None:
        super().__init__(
            app,
            allow_origins=list(allowlist),
            allow_methods=list(allow_methods),
            allow_headers=list(allow_headers),
            expose_headers=list(expose_headers),
        )
        self.allowlist = tuple(allowlist)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        origin = Headers(scope=scope).get("origin")
        if not is_origin_allowed(origin, self.allowlist):
            logger.warning(
                "CORS origin denied: %s (%s %s)",
                origin,
                scope.get("method"),
                scope.get("path"),
            )
            response = error_response(CORSOriginDeniedError(origin), request_id_var.get())
            await response(scope, receive, send)
            return

        await super().__call__(scope, receive, send)
