"""Integration tests for the API endpoints."""

import pytest
from fastapi import Request
from httpx import ASGITransport, AsyncClient

from abuseguard.app import create_app


@pytest.fixture
def guarded_app(settings, clock):
    """An app with a few stand-in routes behind the full middleware stack."""
    app = create_app(settings, clock)

    @app.post("/api/auth/login")
    async def login(request: Request, body: dict):
        bus = request.app.state.security_bus
        if body.get("password") != "correct horse":
            from abuseguard.middleware import build_context

            bus.record_failed_login(build_context(request), identifier=body.get("username"))
            return {"ok": False}
        return {"ok": True}

    @app.post("/api/playlists/{playlist_id}")
    async def update_playlist(playlist_id: str, body: dict):
        return {"id": playlist_id, "body": body}

    @app.post("/api/nft/mint")
    async def mint():
        return {"minted": True}

    @app.get("/api/nft/{token_id}")
    async def get_token(token_id: str):
        return {"id": token_id}

    return app


@pytest.fixture
async def client(guarded_app):
    """Async client talking to the app in-process."""
    transport = ASGITransport(app=guarded_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class TestBruteForceFlow:
    """Failed logins, alerting and the auth limiter working together."""

    @pytest.mark.asyncio
    async def test_failed_logins_mark_source_then_limit(self, client):
        credentials = {"username": "alice", "password": "wrong"}

        statuses = [
            (await client.post("/api/auth/login", json=credentials)).status_code
            for _ in range(6)
        ]

        assert statuses == [200] * 5 + [429]

        stats = (await client.get("/security/stats")).json()
        assert stats["suspiciousIPs"] == ["127.0.0.1"]
        assert stats["alertCounts"]["failedLoginAttempts:127.0.0.1"] == 5
        assert stats["alertCounts"]["rateLimitExceeded:127.0.0.1"] == 1

    @pytest.mark.asyncio
    async def test_successful_login_not_recorded(self, client):
        response = await client.post(
            "/api/auth/login", json={"username": "alice", "password": "correct horse"}
        )

        assert response.json() == {"ok": True}
        stats = (await client.get("/security/stats")).json()
        assert stats["alertCounts"] == {}


class TestScopedRoutes:
    """Route-to-scope mapping end to end."""

    @pytest.mark.asyncio
    async def test_nft_reads_only_use_general_scope(self, client):
        read = await client.get("/api/nft/42")
        write = await client.post("/api/nft/mint")

        assert read.headers["X-RateLimit-Limit"] == "100"
        assert write.headers["X-RateLimit-Limit"] == "10"

    @pytest.mark.asyncio
    async def test_blockchain_scope_exhausted(self, client, clock):
        for _ in range(10):
            assert (await client.post("/api/nft/mint")).status_code == 200

        blocked = await client.post("/api/nft/mint")

        assert blocked.status_code == 429
        assert blocked.json()["error"] == "BLOCKCHAIN_RATE_LIMIT_EXCEEDED"
        assert blocked.json()["retryAfter"] == 300

        clock.advance(300)
        assert (await client.post("/api/nft/mint")).status_code == 200

    @pytest.mark.asyncio
    async def test_playlist_body_sanitized(self, client):
        response = await client.post(
            "/api/playlists/p1",
            json={"name": "Road trip<script>steal()</script>", "tracks": ["t1", "t2"]},
        )

        assert response.status_code == 200
        assert response.json() == {
            "id": "p1",
            "body": {"name": "Road trip", "tracks": ["t1", "t2"]},
        }
        assert response.headers["X-RateLimit-Limit"] == "50"


class TestStatelessEvaluation:
    """The /evaluate and /events endpoints used by an upstream proxy."""

    @pytest.mark.asyncio
    async def test_evaluate_general_scope(self, client, clock):
        responses = [
            await client.post("/evaluate", json={"ip": "1.2.3.4"}) for _ in range(101)
        ]

        assert responses[0].json()["remaining"] == 99
        assert responses[99].json()["allow"] is True
        assert responses[100].status_code == 429

        clock.advance(900.001)
        again = await client.post("/evaluate", json={"ip": "1.2.3.4"})
        assert again.json()["allow"] is True

    @pytest.mark.asyncio
    async def test_events_for_blockchain_errors(self, client):
        payload = {
            "eventType": "blockchainErrors",
            "ip": "5.6.7.8",
            "details": {"operation": "mint", "error": "reverted"},
        }

        results = [(await client.post("/events", json=payload)).json() for _ in range(5)]

        assert results[-1]["alert"] is True
        assert results[-1]["suspicious"] is True
