"""Middleware for the firmware hub API.

Provides rate limiting and request logging.
"""

import logging
import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from firmware_hub.rate_limit import RateLimiter, get_client_identifier

logger = logging.getLogger(__name__)

SLOW_REQUEST_SECONDS = 1.0


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rejects clients that exceed their request budget."""

    def __init__(
        self,
        app,
        limiter: RateLimiter,
        enabled: bool = True,
        exempt_paths: Optional[list] = None
    ):
        """Initialize rate limit middleware.

        Args:
            app: ASGI app
            limiter: Rate limiter to consult
            enabled: Whether rate limiting is enabled
            exempt_paths: List of paths to exempt from rate limiting
        """
        super().__init__(app)
        self.limiter = limiter
        self.enabled = enabled
        self.exempt_paths = exempt_paths or ["/health", "/docs", "/openapi.json"]

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled or request.url.path in self.exempt_paths:
            return await call_next(request)

        identifier = get_client_identifier(request)
        allowed, info = await self.limiter.check_rate_limit(identifier)

        if not allowed:
            logger.warning(f"Rate limit exceeded for {identifier} on {request.url.path}")
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": "Rate limit exceeded"},
                headers={
                    "X-RateLimit-Limit": str(info["limit"]),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(info["reset"]),
                    "Retry-After": str(info.get("retry_after", 60))
                }
            )

        response = await call_next(request)

        if info:
            response.headers["X-RateLimit-Limit"] = str(info["limit"])
            response.headers["X-RateLimit-Remaining"] = str(info["remaining"])
            response.headers["X-RateLimit-Reset"] = str(info["reset"])

        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with its id and duration."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                f"Request failed: {request.method} {request.url.path} [{request_id}]",
                exc_info=True
            )
            raise

        duration = time.perf_counter() - start_time
        duration_ms = int(duration * 1000)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms}ms"

        if duration > SLOW_REQUEST_SECONDS:
            logger.warning(
                f"Slow request: {request.method} {request.url.path} took {duration_ms}ms"
            )

        logger.info(
            f"{request.method} {request.url.path} - {response.status_code} - "
            f"{duration_ms}ms [{request_id}]"
        )
        return response
