"""
Kitee API - Server Entry Point
================================

What:  Runs the app under uvicorn with connection timeouts tuned for the
       upstream load balancer.
How:   ``kitee-api`` (console script) or ``python -m kitee.server``.

Connection timeouts:
    keep-alive  65s  above the load balancer's 60s idle timeout, so the
                     load balancer, not this server, closes idle
                     connections
    headers     66s  above keep-alive, so an idle keep-alive connection
                     that starts a new request is not cut by the header
                     timer first

Readiness:
    KiteeServer calls kitee.main.on_listening() only after the listening
    socket is bound, with the port actually bound. A failed bind never
    reports the app as running.

uvicorn has no header timeout of its own; HeadersTimeoutH11Protocol adds
one on top of the h11 protocol: once bytes of a new request arrive, its
headers must be complete within ``headers_timeout`` seconds or the
connection is closed.
"""

import asyncio
import logging
import socket
from typing import Any, List, Optional

import uvicorn
from uvicorn.protocols.http.h11_impl import H11Protocol

from kitee.config import Settings, settings
from kitee.main import on_listening, setup_logging

logger = logging.getLogger(__name__)


class ServerConfig(uvicorn.Config):
    """uvicorn.Config carrying the header timeout for the protocol."""

    def __init__(self, app: Any, headers_timeout: Optional[float] = None, **kwargs: Any) -> None:
        super().__init__(app, **kwargs)
        self.headers_timeout = headers_timeout


class HeadersTimeoutH11Protocol(H11Protocol):
    def __init__(self, config: uvicorn.Config, *args: Any, **kwargs: Any) -> None:
        super().__init__(config, *args, **kwargs)
        self.headers_timeout: Optional[float] = getattr(config, "headers_timeout", None)
        self._headers_timer: Optional[asyncio.TimerHandle] = None

    def data_received(self, data: bytes) -> None:
        cycle = self.cycle
        idle = cycle is None or cycle.response_complete
        if self.headers_timeout and idle and self._headers_timer is None:
            self._headers_timer = self.loop.call_later(
                self.headers_timeout, self._on_headers_timeout
            )

        super().data_received(data)

        # A new cycle means h11 produced a complete Request event
        if self.cycle is not cycle:
            self._cancel_headers_timer()

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self._cancel_headers_timer()
        super().connection_lost(exc)

    def _cancel_headers_timer(self) -> None:
        if self._headers_timer is not None:
            self._headers_timer.cancel()
            self._headers_timer = None

    def _on_headers_timeout(self) -> None:
        self._headers_timer = None
        if not self.transport.is_closing():
            logger.debug(
                "Closing connection: request headers not complete after %.1fs",
                self.headers_timeout,
            )
            self.transport.close()


class KiteeServer(uvicorn.Server):
    """uvicorn.Server that announces readiness once the socket is bound."""

    async def startup(self, sockets: Optional[List[socket.socket]] = None) -> None:
        await super().startup(sockets=sockets)
        if self.started:
            on_listening(self.bound_port())

    def bound_port(self) -> int:
        for server in self.servers:
            for sock in server.sockets or ():
                name = sock.getsockname()
                if isinstance(name, tuple):
                    return name[1]
        return self.config.port


def build_config(app: Any = "kitee.main:app", cfg: Settings = settings) -> ServerConfig:
    return ServerConfig(
        app,
        host=cfg.host,
        port=cfg.port,
        http=HeadersTimeoutH11Protocol,
        timeout_keep_alive=cfg.keep_alive_timeout,
        headers_timeout=cfg.headers_timeout,
        server_header=False,
        log_config=None,
        log_level=cfg.log_level.lower(),
    )


def run() -> None:
    setup_logging()
    KiteeServer(build_config()).run()


if __name__ == "__main__":
    run()
