"""Security middleware and utilities for the trade-in backend.

This module provides:
- Rate limiting for the backup trigger and restore endpoints
- Security headers middleware
- Scheduler trigger verification (cron marker / shared secret)
- JWT secret validation
- API documentation exposure
"""

import time
import logging
import secrets
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional, Tuple

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from tradein.core.config import settings

logger = logging.getLogger(__name__)


# ============================================
# Rate Limiting
# ============================================

class RateLimiter:
    """In-memory sliding-window rate limiter keyed by client and category."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._requests: Dict[str, Deque[float]] = defaultdict(deque)

    def is_rate_limited(
        self,
        key: str,
        max_requests: int,
        window_seconds: int
    ) -> Tuple[bool, Optional[int]]:
        """Check if a key is rate limited.

        Returns:
            Tuple of (is_limited, retry_after_seconds)
        """
        now = self._clock()
        window = self._requests[key]
        while window and window[0] <= now - window_seconds:
            window.popleft()

        if len(window) >= max_requests:
            retry_after = int(window[0] + window_seconds - now) + 1
            return True, retry_after
        return False, None

    def record_request(self, key: str):
        self._requests[key].append(self._clock())

    def reset(self):
        self._requests.clear()


# Global rate limiter instance
rate_limiter = RateLimiter()


RATE_LIMITS = {
    # Scheduler trigger - one tick per interval is plenty
    "backup_auto": {"max_requests": 10, "window_seconds": 60},
    # Destructive and heavy operations
    "backup_restore": {"max_requests": 5, "window_seconds": 300},
    "backup_create": {"max_requests": 10, "window_seconds": 300},
    "api_general": {"max_requests": 100, "window_seconds": 60},
}


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "unknown"


def rate_limit_category(method: str, path: str) -> str:
    """Map a request to its rate limit category."""
    if path.startswith("/api/v1/backups/auto"):
        return "backup_auto"
    if method == "POST" and path.startswith("/api/v1/backups/"):
        if path.endswith("/restore"):
            return "backup_restore"
        if path.endswith("/create"):
            return "backup_create"
    return "api_general"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on API endpoints."""

    EXEMPT_PATHS = {"/health", "/"}

    def __init__(self, app, limiter: Optional[RateLimiter] = None):
        super().__init__(app)
        self.limiter = limiter or rate_limiter

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in self.EXEMPT_PATHS:
            return await call_next(request)

        client_ip = get_client_ip(request)
        category = rate_limit_category(request.method, path)
        config = RATE_LIMITS[category]
        rate_key = f"{client_ip}:{category}"

        is_limited, retry_after = self.limiter.is_rate_limited(
            rate_key,
            config["max_requests"],
            config["window_seconds"]
        )

        if is_limited:
            logger.warning(
                f"Rate limit exceeded for {client_ip} on {category} "
                f"(retry after {retry_after}s)"
            )
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "success": False,
                    "error": "rate_limit_exceeded",
                    "message": "Too many requests. Please try again later.",
                    "retry_after": retry_after,
                },
                headers={"Retry-After": str(retry_after)}
            )

        self.limiter.record_request(rate_key)
        return await call_next(request)


# ============================================
# Security Headers Middleware
# ============================================

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    HEADERS = {
        "X-Frame-Options": "DENY",
        "X-Content-Type-Options": "nosniff",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Cache-Control": "no-store",
    }

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        # Only add headers if not already set (a proxy might set some)
        for header, value in self.HEADERS.items():
            if header not in response.headers:
                response.headers[header] = value

        return response


# ============================================
# Scheduler Trigger Verification
# ============================================

CRON_MARKER_HEADER = "X-Vercel-Cron"
CRON_SECRET_HEADER = "X-Cron-Secret"


def is_trusted_scheduler_request(request: Request) -> bool:
    """Check whether a request comes from the platform scheduler.

    Accepted proofs:
    - the platform cron marker header
    - ``X-Cron-Secret: <CRON_SECRET>``
    - ``Authorization: Bearer <CRON_SECRET>``
    """
    if request.headers.get(CRON_MARKER_HEADER):
        return True

    expected = settings.cron_secret
    if not expected:
        return False

    provided = request.headers.get(CRON_SECRET_HEADER)
    if not provided:
        authorization = request.headers.get("Authorization", "")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer":
            provided = token.strip()

    return bool(provided) and secrets.compare_digest(provided, expected)


# ============================================
# JWT Secret Validation
# ============================================

DEFAULT_JWT_SECRET = "tradein-secret-key-change-in-production"


def validate_jwt_secret() -> str:
    """Validate and return the JWT secret key.

    Raises:
        ValueError: If secret is missing or insecure in production
    """
    secret = settings.jwt_secret_key

    if not secret or secret == DEFAULT_JWT_SECRET:
        if settings.is_production:
            logger.critical("JWT_SECRET_KEY is not set or using default value in production")
            raise ValueError(
                "JWT_SECRET_KEY must be set to a secure value in production. "
                "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
            )
        logger.warning(
            "Using default JWT secret key. "
            "Set JWT_SECRET_KEY environment variable for production."
        )
        return DEFAULT_JWT_SECRET

    if len(secret) < 32:
        if settings.is_production:
            raise ValueError("JWT_SECRET_KEY must be at least 32 characters long")
        logger.warning("JWT_SECRET_KEY is shorter than recommended (32+ chars)")

    return secret


# ============================================
# API Documentation Protection
# ============================================

def should_expose_docs() -> bool:
    """Docs are served unless disabled, and off by default in production."""
    if settings.expose_api_docs is not None:
        return settings.expose_api_docs
    return not settings.is_production


def get_docs_urls() -> dict:
    """Get documentation URLs based on environment.

    Returns:
        Dict with docs_url, redoc_url, openapi_url (None if disabled)
    """
    if should_expose_docs():
        return {
            "docs_url": "/docs",
            "redoc_url": "/redoc",
            "openapi_url": "/openapi.json",
        }
    return {
        "docs_url": None,
        "redoc_url": None,
        "openapi_url": None,
    }
