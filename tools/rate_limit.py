"""
Fixed-window per-client rate limiting for the webhook routes.

Each client IP may send at most ``max_requests`` requests to paths under
``path_prefix`` per window. Excess requests get a 429 with ``Retry-After``.
Counters live in memory, per process.
"""

import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict

from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response


@dataclass
class _WindowCounter:
    count: int = 0
    window_start: float = 0.0


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        max_requests: int = 100,
        window: float = 15 * 60,
        path_prefix: str = "/webhook",
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(app)
        self.max_requests = max_requests
        self.window = window
        self.path_prefix = path_prefix
        self._clock = clock
        self._counters: Dict[str, _WindowCounter] = defaultdict(_WindowCounter)

    def _client_ip(self, request: Request) -> str:
        """Client IP, respecting X-Forwarded-For behind a proxy."""
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if self.max_requests <= 0 or not request.url.path.startswith(self.path_prefix):
            return await call_next(request)

        ip = self._client_ip(request)
        now = self._clock()
        counter = self._counters[ip]

        # Reset window if expired
        if counter.count == 0 or now - counter.window_start >= self.window:
            counter.count = 0
            counter.window_start = now

        counter.count += 1

        if counter.count > self.max_requests:
            retry_after = int(self.window - (now - counter.window_start)) + 1
            logger.warning(f"Rate limit exceeded for {ip} on {request.url.path}")
            return JSONResponse(
                status_code=429,
                content={
                    "status": "error",
                    "message": "Too many requests from this IP, please try again later",
                    "retryAfter": retry_after,
                },
                headers={"Retry-After": str(retry_after)},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.max_requests - counter.count))
        return response
