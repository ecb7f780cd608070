"""Middleware components for the mpevents server."""
from __future__ import annotations

import time
from collections import defaultdict
from typing import Callable, Iterable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .logging_config import get_logger

logger = get_logger(__name__)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding one-minute window per client IP for webhook ingress.

    Only paths under ``prefixes`` are limited; the health check and the
    long-lived SSE stream are never throttled.
    """

    def __init__(self, app, requests_per_minute: int = 600, prefixes: Iterable[str] = ("/api/webhooks",)):
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.prefixes = tuple(prefixes)
        self.requests: dict[str, list[float]] = defaultdict(list)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not request.url.path.startswith(self.prefixes):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        if "x-forwarded-for" in request.headers:
            client_ip = request.headers["x-forwarded-for"].split(",")[0].strip()

        # Clean old requests (older than 1 minute)
        now = time.time()
        self._prune(now)

        if len(self.requests[client_ip]) >= self.requests_per_minute:
            logger.warning(f"Rate limit exceeded for IP: {client_ip}")
            return JSONResponse(
                {"error": "Too many requests. Please try again later."},
                status_code=429,
            )

        self.requests[client_ip].append(now)

        return await call_next(request)

    def _prune(self, now: float) -> None:
        """Drop timestamps older than a minute and forget IPs left with none."""
        for ip in list(self.requests):
            recent = [req_time for req_time in self.requests[ip] if now - req_time < 60]
            if recent:
                self.requests[ip] = recent
            else:
                del self.requests[ip]
