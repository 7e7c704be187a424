"""
Security Module for the Grant Intake API

Implements the request-level hardening shared by every route:
- Rate limiting (IP-based using slowapi, plus a moving-window submission
  limiter behind an injectable ``allow(key)`` interface)
- Origin checks for the public submission endpoint
- Security headers middleware
- Request ID generation for audit logging
- Request size validation
- Secure error response handling, including ``IntakeError`` rendering

Configuration via environment variables:
- RATE_LIMIT_PER_MINUTE: Requests per minute per IP (default: 100)
- SUBMISSION_RATE_LIMIT: Submissions per client (default: 12/10 minutes)
- MAX_REQUEST_SIZE_MB: Maximum request body size in MB (default: 40)
- TRUSTED_PROXY_COUNT: Proxies appending to X-Forwarded-For (default: 1)
- ENVIRONMENT: 'production' or 'development' (affects error detail exposure)
"""

import ipaddress
import logging
import os
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Protocol
from urllib.parse import urlsplit

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from limits import parse, strategies
from limits.storage import MemoryStorage
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from grant_intake.config import ENVIRONMENT, IS_PRODUCTION, SUBMISSION_RATE_LIMIT
from grant_intake.errors import IntakeError

logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", "100"))
DEFAULT_RATE_LIMIT = f"{RATE_LIMIT_PER_MINUTE}/minute"

# Must leave room for MAX_UPLOAD_FILES files at the per-file ceiling.
MAX_REQUEST_SIZE_MB = int(os.getenv("MAX_REQUEST_SIZE_MB", "40"))
MAX_REQUEST_SIZE_BYTES = MAX_REQUEST_SIZE_MB * 1024 * 1024

TRUSTED_PROXY_COUNT = int(os.getenv("TRUSTED_PROXY_COUNT", "1"))

LOCAL_HOSTNAMES = frozenset({"localhost", "127.0.0.1", "::1"})

# Review paths carry a bearer secret in the URL.
_REVIEW_PATH = re.compile(r"^(/api/review(?:/files)?/)[^/]+")


def loggable_path(path: str) -> str:
    return _REVIEW_PATH.sub(r"\1[redacted]", path)


# =============================================================================
# Client address
# =============================================================================

def _is_valid_ip(ip_str: str) -> bool:
    """Validate that a string is a valid IP address (IPv4 or IPv6)."""
    if not ip_str or len(ip_str) > 45:
        return False
    try:
        ipaddress.ip_address(ip_str)
        return True
    except ValueError:
        return False


def get_client_ip(request: Request) -> str:
    """
    Extract client IP address from request with anti-spoofing protection.

    Uses the "rightmost non-trusted" entry of X-Forwarded-For: proxies
    append the connecting IP, so only the positions left of our trusted
    proxy chain can come from the client.

    Returns:
        The client IP address, or "unknown" if not determinable
    """
    direct_ip = request.client.host if request.client else None

    if forwarded_for := request.headers.get("X-Forwarded-For"):
        if ips := [ip.strip() for ip in forwarded_for.split(",") if ip.strip()]:
            if len(ips) > TRUSTED_PROXY_COUNT:
                client_ip = ips[-(TRUSTED_PROXY_COUNT + 1)]
            else:
                client_ip = ips[0]

            if _is_valid_ip(client_ip):
                return client_ip
            logger.warning(
                "Invalid IP in X-Forwarded-For header: %r",
                client_ip[:50],
                extra={"direct_ip": direct_ip},
            )

    if real_ip := request.headers.get("X-Real-IP"):
        real_ip = real_ip.strip()
        if _is_valid_ip(real_ip):
            return real_ip
        logger.warning(
            "Invalid X-Real-IP header: %r", real_ip[:50], extra={"direct_ip": direct_ip}
        )

    return direct_ip if direct_ip and _is_valid_ip(direct_ip) else "unknown"


# =============================================================================
# Rate Limiting
# =============================================================================

# Global per-IP ceiling applied to every route by SlowAPIMiddleware.
limiter = Limiter(
    key_func=get_client_ip,
    default_limits=[DEFAULT_RATE_LIMIT],
    storage_uri="memory://",  # In-memory storage (use Redis for multi-instance)
    strategy="fixed-window",
)


class RateLimiter(Protocol):
    def allow(self, key: str) -> bool:
        """Record one attempt for ``key``; ``False`` once the window is full."""
        ...


class MovingWindowRateLimiter:
    """Sliding-window limiter over ``limits`` in-process storage.

    Counters live in this process only, so each worker enforces its own
    window. Swap the storage for a shared backend to limit across workers.
    """

    def __init__(self, rate: str = SUBMISSION_RATE_LIMIT, namespace: str = "grant-apply") -> None:
        self.rate = parse(rate)
        self.namespace = namespace
        self._storage = MemoryStorage()
        self._limiter = strategies.MovingWindowRateLimiter(self._storage)

    def allow(self, key: str) -> bool:
        return self._limiter.hit(self.rate, self.namespace, key)

    def reset(self) -> None:
        self._storage.reset()


# =============================================================================
# Origin checks
# =============================================================================

def _origin_of(url: str) -> Optional[str]:
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}".lower()


def is_allowed_origin(request: Request, allowed_origins: Iterable[str]) -> bool:
    """Accept requests with no Origin/Referer, localhost, or an allow-listed origin."""
    raw = request.headers.get("origin") or request.headers.get("referer")
    if not raw:
        return True
    origin = _origin_of(raw)
    if origin is None:
        return False
    if (urlsplit(origin).hostname or "") in LOCAL_HOSTNAMES:
        return True
    return origin in {o.rstrip("/").lower() for o in allowed_origins}


# =============================================================================
# Security Headers Middleware
# =============================================================================

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add security headers to all responses.

    Also assigns the request ID used for audit logging and error bodies,
    and logs one completion line per request with its duration.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        request.state.start_time = time.time()

        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = (
            "accelerometer=(), camera=(), geolocation=(), gyroscope=(), "
            "magnetometer=(), microphone=(), payment=(), usb=()"
        )
        if IS_PRODUCTION:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains; preload"
            )
        response.headers["X-Request-ID"] = request_id
        if not response.headers.get("Cache-Control"):
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, private"

        duration = time.time() - request.state.start_time
        logger.info(
            "Request completed: %s %s status=%s duration=%.3fs request_id=%s client_ip=%s",
            request.method,
            loggable_path(request.url.path),
            response.status_code,
            duration,
            request_id,
            get_client_ip(request),
        )
        return response


# =============================================================================
# Request Size Limit Middleware
# =============================================================================

class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """
    Reject requests whose declared Content-Length exceeds MAX_REQUEST_SIZE_MB.

    Bodies without a Content-Length are still bounded by the per-file and
    per-field limits enforced while the submission streams in.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if content_length := request.headers.get("content-length"):
            try:
                size = int(content_length)
            except ValueError:
                return JSONResponse(
                    status_code=400,
                    content={
                        "ok": False,
                        "error": "Invalid Content-Length header.",
                        "code": "INVALID_CONTENT_LENGTH",
                    },
                )
            if size > MAX_REQUEST_SIZE_BYTES:
                return JSONResponse(
                    status_code=413,
                    content={
                        "ok": False,
                        "error": f"Request body too large. Maximum size is {MAX_REQUEST_SIZE_MB}MB.",
                        "code": "REQUEST_TOO_LARGE",
                    },
                )

        return await call_next(request)


# =============================================================================
# Exception Handlers
# =============================================================================

def _response_headers(request: Request, allowed_origins: list[str]) -> dict[str, str]:
    request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
    headers = {"X-Request-ID": request_id}
    origin = request.headers.get("origin", "")
    if origin in allowed_origins:
        headers["Access-Control-Allow-Origin"] = origin
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers


def create_intake_error_handler(allowed_origins: list[str]) -> Callable:
    """Render ``IntakeError`` subclasses as ``{ok: false, error, code}`` bodies."""

    async def intake_error_handler(request: Request, exc: IntakeError) -> JSONResponse:
        headers = _response_headers(request, allowed_origins)
        if exc.status_code == 429:
            headers["Retry-After"] = "600"
        content = {
            "ok": False,
            "error": exc.message,
            "code": exc.code,
            "request_id": headers["X-Request-ID"],
        }
        field = getattr(exc, "field", None)
        if field:
            content["field"] = field
        return JSONResponse(status_code=exc.status_code, content=content, headers=headers)

    return intake_error_handler


def create_secure_exception_handler(allowed_origins: list[str]) -> Callable:
    """
    Create a secure exception handler that sanitizes error responses.

    In production internal errors return a generic message and never a
    stack trace; in development the exception text is returned.
    """

    async def secure_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        headers = _response_headers(request, allowed_origins)
        request_id = headers["X-Request-ID"]

        logger.error(
            "Unhandled exception: %s: %s request_id=%s path=%s method=%s client_ip=%s",
            type(exc).__name__,
            exc,
            request_id,
            loggable_path(request.url.path),
            request.method,
            get_client_ip(request),
            exc_info=True,
        )

        if IS_PRODUCTION:
            content = {
                "ok": False,
                "error": "An internal server error occurred. Please try again later.",
                "code": "INTERNAL_ERROR",
                "request_id": request_id,
            }
        else:
            content = {
                "ok": False,
                "error": str(exc),
                "code": "INTERNAL_ERROR",
                "error_type": type(exc).__name__,
                "request_id": request_id,
            }
        return JSONResponse(status_code=500, content=content, headers=headers)

    return secure_exception_handler


def create_rate_limit_exceeded_handler(allowed_origins: list[str]) -> Callable:
    """Create a custom slowapi rate limit exceeded handler with CORS support."""

    async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        headers = _response_headers(request, allowed_origins)
        headers["Retry-After"] = "60"
        log_security_event("rate_limit", request, {"limit": str(exc.detail)})
        return JSONResponse(
            status_code=429,
            content={
                "ok": False,
                "error": "Rate limit exceeded. Please slow down your requests.",
                "code": "RATE_LIMIT_EXCEEDED",
                "retry_after_seconds": 60,
                "request_id": headers["X-Request-ID"],
            },
            headers=headers,
        )

    return rate_limit_handler


def create_http_exception_handler(allowed_origins: list[str]) -> Callable:
    """Create an HTTP exception handler that maintains CORS and adds security."""

    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        headers = _response_headers(request, allowed_origins)
        if exc.headers:
            headers.update(exc.headers)

        if exc.status_code == 401:
            log_security_event("auth_failure", request)
        elif exc.status_code == 403:
            log_security_event("authorization_denied", request)

        return JSONResponse(
            status_code=exc.status_code,
            content={
                "ok": False,
                "error": exc.detail,
                "detail": exc.detail,
                "request_id": headers["X-Request-ID"],
            },
            headers=headers,
        )

    return http_exception_handler


# =============================================================================
# Security Setup Function
# =============================================================================

def setup_security(app: FastAPI, allowed_origins: list[str]) -> None:
    """
    Configure all security middleware and handlers for a FastAPI application.

    Args:
        app: The FastAPI application instance
        allowed_origins: List of allowed CORS origins
    """
    app.state.limiter = limiter

    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestSizeLimitMiddleware)

    app.add_exception_handler(IntakeError, create_intake_error_handler(allowed_origins))
    app.add_exception_handler(
        RateLimitExceeded, create_rate_limit_exceeded_handler(allowed_origins)
    )
    app.add_exception_handler(Exception, create_secure_exception_handler(allowed_origins))
    app.add_exception_handler(HTTPException, create_http_exception_handler(allowed_origins))

    logger.info(
        "Security middleware configured: rate_limit=%s/min, submission_limit=%s, "
        "max_request_size=%sMB, environment=%s",
        RATE_LIMIT_PER_MINUTE,
        SUBMISSION_RATE_LIMIT,
        MAX_REQUEST_SIZE_MB,
        ENVIRONMENT,
    )


# =============================================================================
# Audit Logging Utilities
# =============================================================================

def log_security_event(
    event_type: str,
    request: Request,
    details: Optional[dict] = None,
) -> None:
    """
    Log a security-relevant event for audit purposes.

    Args:
        event_type: Type of security event (e.g., 'auth_failure', 'rate_limit')
        request: The request object
        details: Optional additional details to log
    """
    log_data = {
        "event_type": event_type,
        "request_id": getattr(request.state, "request_id", "unknown"),
        "client_ip": get_client_ip(request),
        "path": loggable_path(request.url.path),
        "method": request.method,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if details:
        log_data |= details

    logger.warning("SECURITY_EVENT: %s", log_data)
