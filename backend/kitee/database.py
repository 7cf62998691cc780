"""
Kitee API - MongoDB Connection Management
===========================================

What:  Process-wide MongoDB client with an explicit readiness flag.
Why:   The server starts accepting HTTP traffic without waiting for the
       database. Route groups that need it ask for it through the
       ``get_database`` dependency, which waits briefly for readiness and
       otherwise fails just that request with 503.
How:   ``MongoConnection.connect()`` builds the pymongo ``AsyncMongoClient``
       synchronously (so a malformed URL raises right away) and starts an
       ``asyncio.Task`` that pings the server. Both outcomes of the task are
       logged; a failure never propagates.

Lifecycle:
    startup   → mongo.connect(...)       (non-blocking)
    requests  → Depends(get_database)    (waits up to db_ready_timeout_ms)
    shutdown  → await mongo.close()
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from pymongo import AsyncMongoClient
from pymongo.asynchronous.database import AsyncDatabase

from kitee.config import settings
from kitee.exceptions import DatabaseUnavailableError

logger = logging.getLogger(__name__)


class MongoConnection:
    """
    Shared database handle for the whole process.

    Attributes:
        client:  The AsyncMongoClient, once ``connect`` has been called
        error:   The exception from the last failed connection attempt
    """

    def __init__(self, client_factory: Callable[..., Any] = AsyncMongoClient) -> None:
        self._client_factory = client_factory
        self.client: Optional[Any] = None
        self.error: Optional[BaseException] = None
        self._db: Optional[AsyncDatabase] = None
        self._task: Optional[asyncio.Task] = None
        self._connected = False

    # ── State ─────────────────────────────────────────────────────────────

    @property
    def is_ready(self) -> bool:
        return self._connected

    @property
    def state(self) -> str:
        """``connected``, ``connecting`` or ``disconnected``."""
        if self._connected:
            return "connected"
        if self._task is not None and not self._task.done():
            return "connecting"
        return "disconnected"

    @property
    def database(self) -> AsyncDatabase:
        if not self._connected or self._db is None:
            raise DatabaseUnavailableError(context={"state": self.state})
        return self._db

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def connect(
        self,
        url: str,
        default_db: str = "kitee",
        server_selection_timeout_ms: int = 30_000,
    ) -> asyncio.Task:
        """
        Create the client and start connecting in the background.

        Must be called from a running event loop. Configuration errors
        raised by the client constructor (e.g. an invalid URI) propagate to
        the caller; connection errors are logged by the background task.
        """
        self.error = None
        self._connected = False
        self.client = self._client_factory(
            url,
            serverSelectionTimeoutMS=server_selection_timeout_ms,
        )
        self._db = self.client.get_default_database(default=default_db)
        self._task = asyncio.create_task(self._establish(), name="mongo-connect")
        return self._task

    async def _establish(self) -> None:
        try:
            await self.client.admin.command("ping")
        except Exception as e:
            self.error = e
            logger.error("MongoDB Connection Failed -> error %s", e)
            return
        self._connected = True
        logger.info("MongoDB Connected!!!")

    async def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for an in-flight connection attempt.

        Returns immediately when already connected, when no attempt was
        started, or when the attempt has already failed.
        """
        if self._connected:
            return True
        if self._task is None or self._task.done():
            return False
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout)
        except asyncio.TimeoutError:
            return False
        return self._connected

    async def close(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self.client is not None:
            await self.client.close()
            logger.info("MongoDB connection closed")
        self.client = None
        self._db = None
        self._task = None
        self._connected = False


# Singleton shared by the lifespan handler and the route dependency
mongo = MongoConnection()


async def get_database() -> AsyncDatabase:
    """
    FastAPI dependency returning the database once it is reachable.

    Raises:
        DatabaseUnavailableError: still connecting after db_ready_timeout_ms,
            or the connection attempt failed
    """
    ready = await mongo.wait_until_ready(settings.db_ready_timeout_ms / 1000)
    if not ready:
        raise DatabaseUnavailableError(context={"state": mongo.state})
    return mongo.database
