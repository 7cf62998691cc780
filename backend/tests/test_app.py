"""
Kitee API - Application & Lifecycle Tests
===========================================

What we test:
    ✅ GET / returns the greeting whatever the database does
    ✅ Startup never waits for, or dies from, the database
    ✅ Readiness and the database connect happen only once listening
    ✅ Malformed configuration at startup is logged, not raised
    ✅ Route groups are mounted and report 503 while the database is down
    ✅ /health reports the database state
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import pytest
from bson import ObjectId
from pymongo.errors import InvalidURI, ServerSelectionTimeoutError

from kitee.main import lifespan, on_listening

GREETING = {"success": True, "message": "Howdy!!!"}

UNREACHABLE = ServerSelectionTimeoutError("localhost:27017: [Errno 111] Connection refused")


@pytest.fixture(autouse=True)
def quiet_setup_logging(monkeypatch):
    # basicConfig(force=True) would remove pytest's capture handler
    monkeypatch.setattr("kitee.main.setup_logging", lambda *args, **kwargs: None)


class TestRoot:
    @pytest.mark.asyncio
    async def test_greeting(self, test_client):
        response = await test_client.get("/")
        assert response.status_code == 200
        assert response.json() == GREETING

    @pytest.mark.asyncio
    async def test_greeting_with_database_down(
        self, app, test_client, mongo_conn, fake_client, caplog
    ):
        mongo_conn.holder["client"] = fake_client(ping_error=UNREACHABLE)
        caplog.set_level(logging.INFO)

        async with serving(app):
            await _settle(mongo_conn)
            response = await test_client.get("/")

        assert response.status_code == 200
        assert response.json() == GREETING
        assert "MongoDB Connection Failed" in caplog.text
        assert mongo_conn.state == "disconnected"


class TestLifespan:
    @pytest.mark.asyncio
    async def test_lifespan_alone_neither_connects_nor_announces(self, app, mongo_conn, caplog):
        caplog.set_level(logging.INFO)
        async with lifespan(app):
            assert mongo_conn.state == "disconnected"
            assert mongo_conn.client is None

        assert "App is now running" not in caplog.text

    @pytest.mark.asyncio
    async def test_startup_does_not_wait_for_database(self, app, test_client, mongo_conn, fake_client):
        client = fake_client()
        gate = asyncio.Event()

        async def slow_ping(*args, **kwargs):
            await gate.wait()

        client.admin.command.side_effect = slow_ping
        mongo_conn.holder["client"] = client

        async with serving(app):
            assert mongo_conn.state == "connecting"
            response = await test_client.get("/")
            assert response.status_code == 200
            gate.set()
            await _settle(mongo_conn)
            assert mongo_conn.state == "connected"

    @pytest.mark.asyncio
    async def test_success_is_logged(self, app, mongo_conn, caplog):
        caplog.set_level(logging.INFO)
        async with serving(app):
            await _settle(mongo_conn)
            assert mongo_conn.is_ready

        assert "MongoDB Connected!!!" in caplog.text
        assert "App is now running on port 8000!!!" in caplog.text
        mongo_conn.holder["client"].admin.command.assert_awaited_once_with("ping")

    @pytest.mark.asyncio
    async def test_malformed_url_is_logged_not_raised(self, app, test_client, mongo_conn, caplog):
        mongo_conn.holder["client"] = InvalidURI("Invalid URI scheme")
        caplog.set_level(logging.INFO)

        async with serving(app):
            response = await test_client.get("/")

        assert response.status_code == 200
        assert "Failed to start server -> error" in caplog.text

    @pytest.mark.asyncio
    async def test_shutdown_closes_client(self, app, mongo_conn):
        client = mongo_conn.holder["client"]
        async with serving(app):
            await _settle(mongo_conn)
        client.close.assert_awaited_once()
        assert mongo_conn.client is None


class TestRouteGroups:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("group", ["users", "forms", "responses", "insights"])
    async def test_groups_list_documents(self, app, test_client, mongo_conn, fake_client, group):
        oid = ObjectId()
        mongo_conn.holder["client"] = fake_client(documents=[{"_id": oid, "title": "Intake"}])

        async with serving(app):
            await _settle(mongo_conn)
            response = await test_client.get(f"/v1/{group}", params={"limit": 5})

        assert response.status_code == 200
        assert response.json() == {"success": True, "data": [{"_id": str(oid), "title": "Intake"}]}
        collection = mongo_conn.holder["client"].fake_collection
        collection.find.return_value.limit.assert_called_with(5)

    @pytest.mark.asyncio
    async def test_group_unavailable_when_database_down(
        self, app, test_client, mongo_conn, fake_client
    ):
        mongo_conn.holder["client"] = fake_client(ping_error=UNREACHABLE)

        async with serving(app):
            await _settle(mongo_conn)
            response = await test_client.get("/v1/users")

        assert response.status_code == 503
        body = response.json()
        assert body["error"] == "database_unavailable"
        assert body["request_id"] == response.headers["x-request-id"]

    @pytest.mark.asyncio
    async def test_group_unavailable_without_startup(self, test_client, mongo_conn):
        response = await test_client.get("/v1/insights")
        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_limit_validated(self, app, test_client, mongo_conn):
        async with serving(app):
            await _settle(mongo_conn)
            response = await test_client.get("/v1/forms", params={"limit": 0})
        assert response.status_code == 422


class TestHealth:
    @pytest.mark.asyncio
    async def test_reports_disconnected(self, test_client, mongo_conn):
        response = await test_client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["database"] == "disconnected"

    @pytest.mark.asyncio
    async def test_reports_connected(self, app, test_client, mongo_conn):
        async with serving(app):
            await _settle(mongo_conn)
            response = await test_client.get("/health")
        assert response.json()["database"] == "connected"


# ══════════════════════════════════════════════════════════════════════════
# Helpers
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def serving(app, port=8000):
    """Run the lifespan and announce the listener, as the server does once bound."""
    async with lifespan(app):
        on_listening(port)
        yield


async def _settle(conn):
    """Let the background connect task finish."""
    if conn._task is not None:
        await asyncio.wait({conn._task}, timeout=1)
