"""
Tests for the HTTP guard middleware.

Tests rate limiting tiers and body size limits.
Uses a minimal FastAPI test app to avoid importing the full backend.
"""

import importlib
import os
from unittest.mock import patch

import pytest
from fastapi import FastAPI, WebSocket
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import poliscope_backend.middleware as mw

# Env vars must be set BEFORE reloading the middleware module
# so the module-level constants pick them up.


@pytest.fixture(autouse=True)
def _restore_middleware_module():
    yield
    importlib.reload(mw)


def _make_app(env_overrides: dict = None):
    """Create a fresh test app with middleware applied under given env."""
    env = {
        "MAX_JSON_BYTES": str(1024),  # 1 KB for testing
        "MAX_BODY_BYTES": str(2048),  # 2 KB for testing
        "RATE_LIMIT_INGEST": "3",
        "RATE_LIMIT_MUTATE": "5",
        "RATE_LIMIT_READ": "10",
        "RATE_LIMIT_STREAM": "10",
    }
    if env_overrides:
        env.update(env_overrides)

    with patch.dict(os.environ, env, clear=False):
        importlib.reload(mw)

        app = FastAPI()

        @app.get("/health")
        async def health():
            return {"status": "ok"}

        @app.get("/api/debates")
        async def list_debates():
            return {"debates": []}

        @app.post("/api/statements")
        async def ingest():
            return {"status": "accepted"}

        @app.put("/api/settings/pipeline")
        async def update_settings():
            return {"status": "updated"}

        @app.get("/api/debates/{topic}/events")
        async def events(topic: str):
            return {"topic": topic}

        @app.websocket("/ws/debates/{topic}")
        async def stream(websocket: WebSocket, topic: str):
            await websocket.accept()
            await websocket.send_json({"topic": topic})
            await websocket.close()

        mw.configure_http_guards(app)

        return app


# ---------------------------------------------------------------------------
# Body size limit tests
# ---------------------------------------------------------------------------


class TestBodySizeLimits:
    def test_json_body_within_limit(self):
        client = TestClient(_make_app({"MAX_JSON_BYTES": "1024"}))
        resp = client.put("/api/settings/pipeline", json={"similarity_threshold": 0.6})
        assert resp.status_code == 200

    def test_json_body_exceeds_limit(self):
        client = TestClient(_make_app({"MAX_JSON_BYTES": "50"}))
        resp = client.put(
            "/api/settings/pipeline",
            json={"data": "x" * 100},
            headers={"Content-Length": "200"},
        )
        assert resp.status_code == 413

    def test_non_json_body_uses_larger_limit(self):
        client = TestClient(_make_app({"MAX_BODY_BYTES": "10240", "MAX_JSON_BYTES": "50"}))
        resp = client.put(
            "/api/settings/pipeline",
            content=b"x" * 100,
            headers={"Content-Type": "application/octet-stream", "Content-Length": "100"},
        )
        assert resp.status_code != 413


# ---------------------------------------------------------------------------
# Rate limit tests
# ---------------------------------------------------------------------------


class TestRateLimiting:
    def test_ingest_endpoint_rate_limited(self):
        client = TestClient(_make_app({"RATE_LIMIT_INGEST": "2"}))

        for _ in range(2):
            resp = client.post("/api/statements")
            assert resp.status_code == 200

        resp = client.post("/api/statements")
        assert resp.status_code == 429
        assert "ingest" in resp.json()["detail"].lower()
        assert 0 < int(resp.headers["Retry-After"]) <= 60

    def test_mutating_tier_is_separate_from_ingest(self):
        client = TestClient(_make_app({"RATE_LIMIT_INGEST": "1", "RATE_LIMIT_MUTATE": "2"}))

        assert client.post("/api/statements").status_code == 200
        assert client.post("/api/statements").status_code == 429
        assert client.put("/api/settings/pipeline", json={}).status_code == 200

    def test_read_endpoint_limit(self):
        client = TestClient(_make_app({"RATE_LIMIT_READ": "5"}))

        for _ in range(5):
            assert client.get("/api/debates").status_code == 200

        assert client.get("/api/debates").status_code == 429

    def test_health_not_rate_limited(self):
        client = TestClient(_make_app({"RATE_LIMIT_READ": "1"}))

        for _ in range(10):
            assert client.get("/health").status_code == 200

    def test_event_stream_has_its_own_tier(self):
        client = TestClient(_make_app({"RATE_LIMIT_STREAM": "2", "RATE_LIMIT_READ": "100"}))

        for _ in range(2):
            assert client.get("/api/debates/all/events").status_code == 200

        resp = client.get("/api/debates/all/events")
        assert resp.status_code == 429
        assert "stream" in resp.json()["detail"]
        assert client.get("/api/debates").status_code == 200

    def test_websocket_handshakes_are_limited(self):
        client = TestClient(_make_app({"RATE_LIMIT_STREAM": "1"}))

        with client.websocket_connect("/ws/debates/all") as websocket:
            assert websocket.receive_json() == {"topic": "all"}

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/debates/all"):
                pass
        assert exc_info.value.code == mw.WS_POLICY_VIOLATION


# ---------------------------------------------------------------------------
# Limiter and classification tests
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestSlidingWindowLimiter:
    def test_window_slides(self):
        clock = FakeClock()
        limiter = mw.SlidingWindowLimiter(window_seconds=60, clock=clock)

        assert limiter.hit("10.0.0.1", "read", 2) is None
        clock.now += 30
        assert limiter.hit("10.0.0.1", "read", 2) is None
        assert limiter.hit("10.0.0.1", "read", 2) == 30

        clock.now += 31
        assert limiter.hit("10.0.0.1", "read", 2) is None

    def test_idle_clients_are_evicted(self):
        clock = FakeClock()
        limiter = mw.SlidingWindowLimiter(window_seconds=60, clock=clock)
        for i in range(50):
            limiter.hit(f"10.0.0.{i}", "read", 10)
        assert len(limiter) == 50

        clock.now += 61
        limiter.hit("10.0.1.1", "ingest", 10)

        assert len(limiter) == 1

    def test_sweep_keeps_active_clients(self):
        clock = FakeClock()
        limiter = mw.SlidingWindowLimiter(window_seconds=60, clock=clock)
        limiter.hit("old", "read", 10)
        clock.now += 45
        limiter.hit("recent", "read", 10)
        clock.now += 20

        assert limiter.sweep() == 1
        assert len(limiter) == 1


@pytest.mark.parametrize(
    "scope_type, method, path, tier",
    [
        ("http", "POST", "/api/statements", "ingest"),
        ("http", "POST", "/api/statements/", "ingest"),
        ("http", "GET", "/api/debates/d-1/events", "stream"),
        ("websocket", "GET", "/ws/debates/all", "stream"),
        ("http", "POST", "/api/debates/merge-pass", "mutate"),
        ("http", "PUT", "/api/settings/pipeline", "mutate"),
        ("http", "GET", "/api/debates/d-1", "read"),
        ("http", "GET", "/metrics", None),
        ("http", "GET", "/api/debates/health", None),
        ("http", "OPTIONS", "/api/statements", None),
    ],
)
def test_classify_request(scope_type, method, path, tier):
    assert mw.classify_request(scope_type, method, path) == tier
