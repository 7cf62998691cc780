"""
Kitee API - Header Scrub Middleware
=====================================

What:  Removes framework-identifying headers from every response.
Why:   ``X-Powered-By`` / ``Server`` advertise the stack to scanners and add
       nothing for clients.
How:   Pure ASGI middleware wrapping ``send``; the headers are filtered on
       ``http.response.start`` so error responses produced further in are
       scrubbed too. uvicorn's own ``Server`` header is switched off in
       ``kitee.server``.
"""

from starlette.types import ASGIApp, Message, Receive, Scope, Send

SCRUBBED_HEADERS = frozenset({b"x-powered-by", b"server"})


class HeaderScrubMiddleware:
    def __init__(self, app: ASGIApp, headers: frozenset = SCRUBBED_HEADERS) -> None:
        self.app = app
        self.headers = frozenset(h.lower() for h in headers)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_scrubbed(message: Message) -> None:
            if message["type"] == "http.response.start":
                message["headers"] = [
                    (name, value)
                    for name, value in message.get("headers", [])
                    if name.lower() not in self.headers
                ]
            await send(message)

        await self.app(scope, receive, send_scrubbed)
