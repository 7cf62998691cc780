"""
Kitee API - Test Configuration (conftest.py)
==============================================

What:  Shared pytest fixtures for the test suite.
How:   The app is driven in-process through httpx's ASGITransport (no
       server, no lifespan unless a test enters it explicitly). MongoDB is
       replaced by AsyncMock-based fakes.

Fixtures:
    app             fresh create_app() with test-only routes under /_test
    test_client     httpx AsyncClient bound to ``app``
    fake_client     factory for fake AsyncMongoClient instances
    mongo_conn      the shared MongoConnection, patched to use fake clients
"""

import os
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from httpx import ASGITransport, AsyncClient

# Override settings for testing BEFORE any app imports
os.environ["MONGO_URL"] = "mongodb://localhost:27017/kitee_test"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["DB_READY_TIMEOUT_MS"] = "200"

from kitee.database import mongo  # noqa: E402
from kitee.main import create_app  # noqa: E402
from kitee.middleware.body_parser import get_parsed_body, get_raw_body  # noqa: E402


# ══════════════════════════════════════════════════════════════════════════
# Test-only routes
# ══════════════════════════════════════════════════════════════════════════

class HandlerSpy:
    """Counts how often the test-only handlers ran."""

    def __init__(self) -> None:
        self.calls = 0


def build_test_router(spy: HandlerSpy) -> APIRouter:
    router = APIRouter()

    @router.post("/echo")
    async def echo(
        request: Request, raw_body: Optional[str] = Depends(get_raw_body)
    ) -> Dict[str, Any]:
        spy.calls += 1
        replayed = await request.body()
        body = get_parsed_body(request)
        if isinstance(body, bytes):
            body = body.hex()
        return {
            "request_id": request.state.request_id,
            "body_type": getattr(request.state, "body_type", None),
            "body": body,
            "raw_body": raw_body,
            "replayed_length": len(replayed),
        }

    @router.get("/ping")
    async def ping(request: Request) -> Dict[str, Any]:
        spy.calls += 1
        return {"request_id": request.state.request_id}

    @router.get("/powered")
    async def powered() -> PlainTextResponse:
        spy.calls += 1
        return PlainTextResponse(
            "ok", headers={"X-Powered-By": "FastAPI", "Server": "uvicorn"}
        )

    return router


# ══════════════════════════════════════════════════════════════════════════
# App fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def handler_spy() -> HandlerSpy:
    return HandlerSpy()


@pytest.fixture
def app_factory(handler_spy):
    """Builds a fresh app with the test-only routes; settings are read at call time."""

    def build():
        application = create_app()
        application.include_router(build_test_router(handler_spy), prefix="/_test")
        return application

    return build


@pytest.fixture
def app(app_factory):
    return app_factory()


@pytest_asyncio.fixture
async def test_client(app):
    """
    HTTPX AsyncClient talking to ``app`` in-process.

    Usage:
        async def test_root(test_client):
            response = await test_client.get("/")
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ══════════════════════════════════════════════════════════════════════════
# MongoDB fakes
# ══════════════════════════════════════════════════════════════════════════

def make_fake_client(
    ping_error: Optional[BaseException] = None,
    documents: Optional[List[Dict[str, Any]]] = None,
) -> MagicMock:
    """
    A MagicMock shaped like pymongo's AsyncMongoClient.

    ``client.admin.command("ping")`` succeeds unless ``ping_error`` is set;
    every collection returns ``documents`` from find().limit().to_list().
    """
    client = MagicMock()
    client.admin.command = AsyncMock(side_effect=ping_error)
    client.close = AsyncMock()

    collection = MagicMock()
    collection.find.return_value.limit.return_value.to_list = AsyncMock(
        return_value=list(documents or [])
    )
    db = MagicMock()
    db.__getitem__.return_value = collection
    client.get_default_database.return_value = db
    client.fake_collection = collection
    return client


@pytest.fixture
def fake_client():
    return make_fake_client


@pytest_asyncio.fixture
async def mongo_conn(monkeypatch):
    """
    The process-wide MongoConnection with its client factory swappable.

    Put a fake client (or an exception to raise) in
    ``mongo_conn.holder["client"]`` before connecting; the connection is
    closed after the test.
    """
    holder: Dict[str, Any] = {"client": make_fake_client()}

    def factory(url, **kwargs):
        result = holder["client"]
        if isinstance(result, BaseException):
            raise result
        result.connect_args = (url, kwargs)
        return result

    monkeypatch.setattr(mongo, "_client_factory", factory)
    mongo.holder = holder
    yield mongo
    await mongo.close()
    del mongo.holder
