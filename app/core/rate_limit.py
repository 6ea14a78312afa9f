"""Shared slowapi limiter: one fixed-window counter per client IP across every limited route.

``app.main`` attaches it to ``app.state.limiter`` and mounts SlowAPIMiddleware,
which enforces the application-wide limit. Routes that must never be limited
(health, root) are marked with ``@limiter.exempt``.
"""

import logging
from typing import TYPE_CHECKING

from fastapi import Request, status
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from app.core.config import settings

if TYPE_CHECKING:
    from app.core.config import Settings

logger = logging.getLogger(__name__)


def rate_limit_string(settings: "Settings") -> str:
    """Limit in slowapi notation, e.g. ``100 per 60 seconds``."""
    return f"{settings.RATE_LIMIT_REQUESTS} per {settings.RATE_LIMIT_WINDOW_SEC} seconds"


def build_limiter(settings: "Settings") -> Limiter:
    """
    Fixed-window limiter keyed by remote address. ``application_limits`` share
    one counter per IP across all routes; the in-memory storage drops windows
    once they expire.
    """
    return Limiter(
        key_func=get_remote_address,
        application_limits=[rate_limit_string(settings)],
        strategy="fixed-window",
        storage_uri="memory://",
        enabled=settings.RATE_LIMIT_ENABLED,
    )


limiter = build_limiter(settings)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """
    Return 429 with Retry-After set to the window length.

    SlowAPIMiddleware calls the registered handler without awaiting it, so
    this stays a plain function.
    """
    retry_after = exc.limit.limit.get_expiry()
    logger.info("Rate limit exceeded: client=%s limit=%s", get_remote_address(request), exc.detail)
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"detail": "Too many requests. Please try again later.", "code": "rate_limited"},
        headers={"Retry-After": str(retry_after)},
    )
