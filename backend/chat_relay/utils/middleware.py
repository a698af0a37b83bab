"""
Custom middleware for HTTP request processing.
WebSocket traffic bypasses these; the relay engine meters socket events itself.
"""
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
import re
import time
import uuid
import logging
from typing import Callable, Optional

from .rate_limit import TokenBucketLimiter

logger = logging.getLogger(__name__)

# Shape of a caller-supplied X-Request-ID that is reused as-is.
REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def resolve_request_id(header_value: Optional[str]) -> str:
    """Reuse a well-formed X-Request-ID from the caller, otherwise mint one."""
    if header_value and REQUEST_ID_PATTERN.match(header_value):
        return header_value
    return uuid.uuid4().hex


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag each API request with an id that error responses and logs carry."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = resolve_request_id(request.headers.get("X-Request-ID"))
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        logger.debug(
            f"{request.method} {request.url.path} -> {response.status_code} [{request_id}]",
            extra={"request_id": request_id, "status_code": response.status_code}
        )
        return response


class TimingMiddleware(BaseHTTPMiddleware):
    """Report processing time and warn about slow API calls."""

    def __init__(self, app, slow_threshold: float = 1.0):
        super().__init__(app)
        self.slow_threshold = slow_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start

        response.headers["X-Process-Time"] = f"{elapsed:.4f}"

        if elapsed > self.slow_threshold:
            logger.warning(
                f"Slow request: {request.method} {request.url.path} took {elapsed:.2f}s",
                extra={
                    "request_id": getattr(request.state, "request_id", None),
                    "duration": elapsed
                }
            )

        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Token-bucket rate limiting for the HTTP API, keyed by client address."""

    def __init__(
        self,
        app,
        capacity: int = 10,
        refill_rate: float = 1.0,
        limiter: Optional[TokenBucketLimiter] = None
    ):
        super().__init__(app)
        self.capacity = capacity
        self.limiter = limiter or TokenBucketLimiter(capacity=capacity, refill_rate=refill_rate)

    def _get_client_id(self, request: Request) -> str:
        client = request.client
        return f"ip:{client.host}" if client else "ip:unknown"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Check rate limit before processing request."""
        # Skip rate limiting for probes and scraping
        if request.url.path.startswith(("/health", "/metrics")):
            return await call_next(request)

        client_id = self._get_client_id(request)

        if not self.limiter.allow(client_id):
            return Response(
                content="Rate limit exceeded. Please try again later.",
                status_code=429,
                headers={
                    "Retry-After": "1",
                    "X-RateLimit-Limit": str(self.capacity)
                }
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.capacity)
        return response


__all__ = ['RequestIDMiddleware', 'TimingMiddleware', 'RateLimitMiddleware', 'resolve_request_id']
