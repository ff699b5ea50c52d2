from __future__ import annotations

import asyncio
import ipaddress
import logging
import math
import time
from contextvars import ContextVar
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .metrics import rate_limit_hits_total, rate_limit_requests_total
from .settings import Settings

# Context variable for request ID (accessible throughout the request lifecycle)
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")

RATE_LIMIT_MESSAGE = "Too many requests, please try again later."


def add_cors(app: FastAPI, settings: Settings) -> None:
    origins = settings.allow_origins
    if not origins:
        return
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        # Browsers reject credentialed responses for a wildcard origin
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    # No Content-Security-Policy: the bundled page embeds Google Maps iframes.
    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        response = await call_next(request)
        headers = {
            "X-Frame-Options": "SAMEORIGIN",
            "X-Content-Type-Options": "nosniff",
            "X-DNS-Prefetch-Control": "off",
            "X-Download-Options": "noopen",
            "X-Permitted-Cross-Domain-Policies": "none",
            "Referrer-Policy": "no-referrer",
            "Cross-Origin-Opener-Policy": "same-origin",
            "Cross-Origin-Resource-Policy": "same-origin",
        }
        if request.url.scheme in {"https", "wss"}:
            headers["Strict-Transport-Security"] = "max-age=15552000; includeSubDomains"
        for key, value in headers.items():
            response.headers.setdefault(key, value)
        return response


def add_security_headers(app: FastAPI) -> None:
    app.add_middleware(SecurityHeadersMiddleware)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add request ID tracing for distributed debugging.

    Uses the incoming X-Request-ID header when present, otherwise a fresh UUID,
    and echoes it back on the response.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        token = request_id_ctx.set(request_id)
        request.state.request_id = request_id
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestIDLogFilter(logging.Filter):
    """Logging filter that adds request ID to plain stdlib log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        request_id = request_id_ctx.get("")
        record.request_id = request_id if request_id else "-"  # type: ignore[attr-defined]
        return True


def add_request_id_tracing(app: FastAPI) -> None:
    """Add request ID middleware and configure logging."""
    app.add_middleware(RequestIDMiddleware)
    logging.getLogger().addFilter(RequestIDLogFilter())


def get_request_id() -> str:
    """Get the current request ID from context."""
    return request_id_ctx.get("")


class RateLimiter:
    """
    Token bucket per client IP.

    ``path_prefix`` restricts the limiter to matching paths; ``None`` applies it
    to every request.
    """

    def __init__(
        self,
        name: str,
        settings: Settings,
        limit: int,
        window: int,
        path_prefix: str | None = None,
        shards: int = 32,
    ) -> None:
        self.name = name
        self.limit = limit
        self.window = window
        self.path_prefix = path_prefix
        self._settings = settings
        self._buckets: dict[str, dict[str, float]] = {}
        self._locks = [asyncio.Lock() for _ in range(max(1, shards))]
        self._last_cleanup = 0.0

    def applies_to(self, request: Request) -> bool:
        if self.path_prefix is None:
            return True
        return request.url.path.startswith(self.path_prefix)

    async def dispatch(self, request: Request, call_next):
        limit = self.limit
        window = self.window
        if (
            not self._settings.RATE_LIMIT_ENABLED
            or limit <= 0
            or window <= 0
            or not self.applies_to(request)
        ):
            return await call_next(request)

        identifier = self._identifier_for(request)
        now = time.monotonic()
        allowed, remaining, reset_in = await self._consume(identifier, limit, window, now)
        if not allowed:
            rate_limit_hits_total.labels(limiter=self.name).inc()
            rate_limit_requests_total.labels(limiter=self.name, result="throttle").inc()
            retry_after = max(1, math.ceil(reset_in))
            headers = {
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(retry_after),
            }
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"error": RATE_LIMIT_MESSAGE},
                headers=headers,
            )

        response = await call_next(request)
        rate_limit_requests_total.labels(limiter=self.name, result="allow").inc()
        # The innermost (strictest) limiter sets these first
        response.headers.setdefault("X-RateLimit-Limit", str(limit))
        response.headers.setdefault("X-RateLimit-Remaining", str(max(0, remaining)))
        response.headers.setdefault("X-RateLimit-Reset", str(max(0, math.ceil(reset_in))))
        return response

    async def _consume(self, identifier: str, limit: int, window: int, now: float):
        refill_rate = limit / window
        lock = self._locks[hash(identifier) % len(self._locks)]
        async with lock:
            bucket = self._buckets.get(identifier)
            if not bucket:
                self._buckets[identifier] = {"tokens": float(limit - 1), "last": now}
                self._maybe_cleanup(now, window)
                return True, limit - 1, 0

            tokens = bucket["tokens"]
            elapsed = max(0.0, now - bucket["last"])
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            bucket["last"] = now

            if tokens >= 1:
                tokens -= 1
                bucket["tokens"] = tokens
                # Estimate time until bucket fully refilled
                reset_in = (limit - tokens) / refill_rate if tokens < limit else 0
                self._maybe_cleanup(now, window)
                return True, int(tokens), reset_in

            bucket["tokens"] = tokens
            deficit = 1 - tokens
            reset_in = deficit / refill_rate if refill_rate else window
            self._maybe_cleanup(now, window)
            return False, 0, reset_in

    def reset(self) -> None:
        self._buckets.clear()
        self._last_cleanup = 0.0

    def _maybe_cleanup(self, now: float, window: int) -> None:
        """Remove idle buckets periodically to bound memory."""
        if now - self._last_cleanup < window:
            return
        stale_cutoff = now - (window * 3)
        stale_keys = [
            key for key, meta in self._buckets.items() if meta.get("last", 0.0) < stale_cutoff
        ]
        for key in stale_keys:
            self._buckets.pop(key, None)
        self._last_cleanup = now

    def _identifier_for(self, request: Request) -> str:
        """
        Determine client identifier for rate limiting.

        X-Forwarded-For is only honoured when the direct peer is a trusted proxy;
        the first valid IP in the chain is the original client.
        """
        direct_client_ip = request.client.host if request.client else None

        if not direct_client_ip or not self._is_trusted_proxy(direct_client_ip):
            return direct_client_ip or "anonymous"

        forwarded = request.headers.get("x-forwarded-for")
        if not forwarded:
            return direct_client_ip

        for ip in (part.strip() for part in forwarded.split(",")):
            if self._is_valid_ip(ip):
                return ip
        return direct_client_ip

    def _is_trusted_proxy(self, ip: str) -> bool:
        trusted = self._settings.TRUSTED_PROXIES.strip()
        if not trusted:
            return False
        if trusted == "*":
            return True

        try:
            ip_obj = ipaddress.ip_address(ip)
        except ValueError:
            return False

        for trusted_entry in trusted.split(","):
            trusted_entry = trusted_entry.strip()
            if not trusted_entry:
                continue
            try:
                if "/" in trusted_entry:
                    if ip_obj in ipaddress.ip_network(trusted_entry, strict=False):
                        return True
                elif ip_obj == ipaddress.ip_address(trusted_entry):
                    return True
            except ValueError:
                # Invalid trusted entry - skip it
                continue
        return False

    def _is_valid_ip(self, ip: str) -> bool:
        try:
            ipaddress.ip_address(ip)
            return True
        except ValueError:
            return False


def add_rate_limiting(app: FastAPI, settings: Settings) -> list[RateLimiter]:
    """
    Install the global limiter and the stricter places limiter.

    Middleware registered later wraps earlier middleware, so the global limiter
    is registered last and runs first.
    """
    places_limiter = RateLimiter(
        "places",
        settings,
        limit=settings.PLACES_RATE_LIMIT_REQUESTS,
        window=settings.PLACES_RATE_LIMIT_WINDOW_SECONDS,
        path_prefix="/api/places",
    )
    global_limiter = RateLimiter(
        "global",
        settings,
        limit=settings.RATE_LIMIT_REQUESTS,
        window=settings.RATE_LIMIT_WINDOW_SECONDS,
    )
    limiters = [global_limiter, places_limiter]
    app.state.rate_limiters = limiters

    @app.middleware("http")
    async def _places_rate_limit(request: Request, call_next):  # type: ignore[override]
        return await places_limiter.dispatch(request, call_next)

    @app.middleware("http")
    async def _global_rate_limit(request: Request, call_next):  # type: ignore[override]
        return await global_limiter.dispatch(request, call_next)

    return limiters
