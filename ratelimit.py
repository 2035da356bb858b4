"""Fixed-window request quota per client address."""

import time
from typing import Callable, Dict, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from errors import RateLimited, error_response
from logging_config import get_logger

logger = get_logger(__name__)


class FixedWindowRateLimiter:
    def __init__(self, max_requests: int, window_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._last_sweep = clock()

    def _sweep(self, now: float) -> None:
        # At most once per window: forget clients whose window has ended
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        expired = [k for k, (started, _) in self._windows.items() if now - started >= self.window_seconds]
        for key in expired:
            del self._windows[key]

    def hit(self, key: str) -> Tuple[bool, int]:
        """Count one request for `key`; return (allowed, remaining)."""
        now = self.clock()
        self._sweep(now)
        started, count = self._windows.get(key, (now, 0))
        if now - started >= self.window_seconds:
            started, count = now, 0
        count += 1
        self._windows[key] = (started, count)
        remaining = max(self.max_requests - count, 0)
        return count <= self.max_requests, remaining

    def reset(self) -> None:
        self._windows.clear()
        self._last_sweep = self.clock()

    def __len__(self) -> int:
        return len(self._windows)


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, limiter: FixedWindowRateLimiter):
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next):
        client = request.client.host if request.client else "unknown"
        allowed, remaining = self.limiter.hit(client)
        headers = {
            "X-RateLimit-Limit": str(self.limiter.max_requests),
            "X-RateLimit-Remaining": str(remaining),
        }
        if not allowed:
            logger.warning("Rate limit exceeded for %s on %s", client, request.url.path)
            # Middleware sits outside the app's exception handlers
            exc = RateLimited("Too many requests, please try again later")
            return error_response(exc.status_code, exc.message, headers=headers)
        response = await call_next(request)
        response.headers.update(headers)
        return response
