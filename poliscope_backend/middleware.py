"""
HTTP guard middleware: request body size limits and per-client rate limiting.

Both guards are plain ASGI middleware so they also see WebSocket handshakes.
Rate limits are tiered by what a request costs this service:

- ingest: POST /api/statements (each accepted statement may cost an oracle call)
- stream: opening an SSE feed or a WebSocket subscription (each holds a queue)
- mutate: every other POST/PUT/DELETE/PATCH
- read:   every other GET

Health and metrics endpoints and CORS preflights are never limited.
"""

import logging
import math
import os
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional, Set

from fastapi import status
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Receive, Scope, Send
from starlette.websockets import WebSocketClose

logger = logging.getLogger("poliscope_backend")

HEALTH_PATHS: Set[str] = {
    "/health",
    "/metrics",
    "/api/debates/health",
}

MAX_BODY_BYTES: int = int(os.getenv("MAX_BODY_BYTES", str(1 * 1024 * 1024)))
MAX_JSON_BYTES: int = int(os.getenv("MAX_JSON_BYTES", str(256 * 1024)))

RATE_LIMIT_WINDOW: int = int(os.getenv("RATE_LIMIT_WINDOW", "60"))  # seconds
RATE_LIMIT_INGEST: int = int(os.getenv("RATE_LIMIT_INGEST", "600"))
RATE_LIMIT_STREAM: int = int(os.getenv("RATE_LIMIT_STREAM", "30"))
RATE_LIMIT_MUTATE: int = int(os.getenv("RATE_LIMIT_MUTATE", "60"))
RATE_LIMIT_READ: int = int(os.getenv("RATE_LIMIT_READ", "1200"))

TIER_LIMITS: Dict[str, int] = {
    "ingest": RATE_LIMIT_INGEST,
    "stream": RATE_LIMIT_STREAM,
    "mutate": RATE_LIMIT_MUTATE,
    "read": RATE_LIMIT_READ,
}

INGEST_PATH = "/api/statements"
EVENTS_SUFFIX = "/events"
WS_PREFIX = "/ws/debates/"

# WebSocket close code for policy violations (RFC 6455)
WS_POLICY_VIOLATION = 1008


def _normalize_path(path: str) -> str:
    return path.rstrip("/") if path != "/" else path


def classify_request(scope_type: str, method: str, path: str) -> Optional[str]:
    """Rate-limit tier for a request, or None when it is exempt."""
    path = _normalize_path(path)
    if path in HEALTH_PATHS:
        return None
    if scope_type == "websocket":
        return "stream" if path.startswith(WS_PREFIX) else "read"
    if method == "OPTIONS":
        return None
    if method == "POST" and path == INGEST_PATH:
        return "ingest"
    if method == "GET" and path.startswith("/api/debates/") and path.endswith(EVENTS_SUFFIX):
        return "stream"
    if method in {"POST", "PUT", "DELETE", "PATCH"}:
        return "mutate"
    return "read"


def _client_ip(scope: Scope) -> str:
    client = scope.get("client")
    return client[0] if client else "unknown"


class SlidingWindowLimiter:
    """
    Per-(client, tier) sliding window counters.

    Clients whose windows have emptied are evicted on a periodic sweep, so
    memory tracks the set of recently active clients only.
    """

    def __init__(self, window_seconds: float = RATE_LIMIT_WINDOW, clock: Callable[[], float] = time.monotonic):
        self.window = window_seconds
        self._clock = clock
        self._hits: Dict[str, Dict[str, Deque[float]]] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._hits)

    def hit(self, client: str, tier: str, limit: int) -> Optional[int]:
        """Record a request; returns seconds until retry when over the limit, else None."""
        now = self._clock()
        if now - self._last_sweep >= self.window:
            self.sweep(now)

        tiers = self._hits.setdefault(client, {})
        window = tiers.setdefault(tier, deque())
        self._expire(window, now)
        if len(window) >= limit:
            return max(1, math.ceil(window[0] + self.window - now))
        window.append(now)
        return None

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop every client with no request inside the window; returns how many."""
        now = self._clock() if now is None else now
        idle = []
        for client, tiers in self._hits.items():
            for tier in list(tiers):
                self._expire(tiers[tier], now)
                if not tiers[tier]:
                    del tiers[tier]
            if not tiers:
                idle.append(client)
        for client in idle:
            del self._hits[client]
        self._last_sweep = now
        return len(idle)

    def _expire(self, window: Deque[float], now: float) -> None:
        cutoff = now - self.window
        while window and window[0] <= cutoff:
            window.popleft()


class RateLimitMiddleware:
    def __init__(self, app: ASGIApp, limiter: Optional[SlidingWindowLimiter] = None) -> None:
        self.app = app
        self.limiter = limiter or SlidingWindowLimiter()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        method = scope.get("method", "GET")
        tier = classify_request(scope["type"], method, scope["path"])
        if tier is None:
            await self.app(scope, receive, send)
            return

        ip = _client_ip(scope)
        limit = TIER_LIMITS[tier]
        retry_after = self.limiter.hit(ip, tier, limit)
        if retry_after is None:
            await self.app(scope, receive, send)
            return

        logger.warning("[RATE LIMIT] %s exceeded %s tier (%d per %ds) on %s %s",
                       ip, tier, limit, RATE_LIMIT_WINDOW, method, scope["path"])
        detail = f"Rate limit exceeded ({tier} tier: {limit} requests per {RATE_LIMIT_WINDOW}s)."
        if scope["type"] == "websocket":
            await WebSocketClose(code=WS_POLICY_VIOLATION, reason=detail)(scope, receive, send)
            return
        response = JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={"detail": detail},
            headers={"Retry-After": str(retry_after)},
        )
        await response(scope, receive, send)


class BodySizeLimitMiddleware:
    """
    Reject declared request bodies above the limit before the app reads them.

    JSON bodies (statements, settings) are capped at MAX_JSON_BYTES, anything
    else at MAX_BODY_BYTES.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        content_length = headers.get("content-length")
        if content_length is None:
            await self.app(scope, receive, send)
            return

        try:
            length = int(content_length)
        except ValueError:
            response = JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"detail": "Invalid Content-Length header."},
            )
            await response(scope, receive, send)
            return

        content_type = headers.get("content-type", "")
        limit = MAX_JSON_BYTES if "json" in content_type else MAX_BODY_BYTES
        if length > limit:
            logger.warning("[SECURITY] Rejected oversized request to %s (%d bytes, limit %d bytes)",
                           scope["path"], length, limit)
            response = JSONResponse(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                content={"detail": f"Request body too large. Limit: {limit} bytes."},
            )
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)


def configure_http_guards(app):
    """
    Wire the guard middleware onto the FastAPI app.

    Middleware executes in reverse registration order (last added = outermost),
    so rate limiting runs before the body is inspected.
    """
    app.add_middleware(BodySizeLimitMiddleware)
    app.add_middleware(RateLimitMiddleware)

    logger.info("[SECURITY] HTTP guards configured:")
    logger.info("[SECURITY]   Rate limits per %ds: %s", RATE_LIMIT_WINDOW,
                ", ".join(f"{tier}={limit}" for tier, limit in TIER_LIMITS.items()))
    logger.info("[SECURITY]   Body limits: JSON=%d bytes, other=%d bytes", MAX_JSON_BYTES, MAX_BODY_BYTES)
