"""
Application Middleware for the Music Share API.

This module defines the FastAPI middleware responsible for cross-cutting
concerns: request correlation, error handling, performance logging and request
validation. These components process every request and response, ensuring
consistency across all routes.

Key Middleware Components:
- `CorrelationMiddleware`: Assigns a correlation ID to every incoming request
  (taken from `X-Correlation-ID` / `X-Request-ID` when the caller sends one),
  which is then stamped on every log record of the request.
- `ErrorHandlingMiddleware`: A centralized error handler that catches
  `MusicShareException` subclasses and unexpected exceptions and renders them
  as a uniform JSON error body.
- `PerformanceMiddleware`: Logs the start and end of each request, calculates
  the processing time, and adds a `X-Process-Time` header to the response.
- `RequestValidationMiddleware`: Rejects oversized bodies and unsupported
  content types before they reach a handler.

Architectural Design:
- Layered Processing Pipeline: `CorrelationMiddleware` runs outermost so the
  correlation ID is available to all subsequent middleware, and
  `ErrorHandlingMiddleware` wraps the auth gate and the handlers so that every
  application error leaves the service in the same shape.
- Starlette's `BaseHTTPMiddleware`: every component is a `BaseHTTPMiddleware`
  subclass with a single `dispatch` method.
"""

import time
import uuid
from typing import Any, Callable, Dict, Optional
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .logging_config import set_correlation_id, get_logger
from .exceptions import MusicShareException

logger = get_logger("core.middleware")


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Middleware to add correlation IDs to requests"""

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Generate or extract correlation ID
        correlation_id = (
            request.headers.get("X-Correlation-ID")
            or request.headers.get("X-Request-ID")
            or str(uuid.uuid4())
        )

        set_correlation_id(correlation_id)
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Middleware for centralized error handling"""

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)

        except MusicShareException as e:
            log = logger.error if e.status_code >= 500 else logger.warning
            log(
                f"Application error: {e.message}",
                extra={
                    "error_type": type(e).__name__,
                    "error_code": e.error_code,
                    "path": request.url.path,
                    "method": request.method,
                },
            )
            return create_error_response(
                type(e).__name__,
                e.error_code,
                e.message,
                status_code=e.status_code,
                correlation_id=getattr(request.state, "correlation_id", None),
                details=e.details if e.status_code < 500 else None,
            )

        except Exception as e:
            logger.error(
                f"Unexpected error: {str(e)}",
                extra={
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                    "method": request.method,
                },
                exc_info=True,
            )
            return create_error_response(
                "InternalServerError",
                "INTERNAL_ERROR",
                "An unexpected error occurred",
                status_code=500,
                correlation_id=getattr(request.state, "correlation_id", None),
            )


class PerformanceMiddleware(BaseHTTPMiddleware):
    """Middleware for performance monitoring and logging"""

    def __init__(self, app: ASGIApp, slow_request_seconds: float = 1.0):
        super().__init__(app)
        self.slow_request_seconds = slow_request_seconds

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        logger.info(
            f"Request started: {request.method} {request.url.path}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "client_ip": get_client_ip(request),
            },
        )

        response = await call_next(request)

        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

        logger.info(
            f"Request completed: {request.method} {request.url.path} - {response.status_code}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "process_time_ms": round(process_time * 1000, 2),
            },
        )

        if process_time > self.slow_request_seconds:
            logger.warning(
                f"Slow request detected: {request.method} {request.url.path}",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "process_time_ms": round(process_time * 1000, 2),
                    "threshold_exceeded": True,
                },
            )

        return response


class RequestValidationMiddleware(BaseHTTPMiddleware):
    """Middleware for request size and content type checks"""

    ALLOWED_CONTENT_TYPES = (
        "application/json",
        "application/x-www-form-urlencoded",
        "multipart/form-data",
    )

    def __init__(self, app: ASGIApp, max_request_size: int = 1024 * 1024):
        super().__init__(app)
        self.max_request_size = max_request_size

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit():
            if int(content_length) > self.max_request_size:
                logger.warning(
                    f"Request too large: {content_length} bytes",
                    extra={"content_length": int(content_length), "path": request.url.path},
                )
                return create_error_response(
                    "PayloadTooLarge",
                    "REQUEST_TOO_LARGE",
                    f"Request size exceeds maximum allowed size of {self.max_request_size} bytes",
                    status_code=413,
                    correlation_id=getattr(request.state, "correlation_id", None),
                )

        # Bodyless POSTs (like, follow, ...) carry no content type
        content_type = request.headers.get("content-type", "")
        if request.method in ("POST", "PUT", "PATCH") and content_type:
            if not any(allowed in content_type for allowed in self.ALLOWED_CONTENT_TYPES):
                logger.warning(
                    f"Invalid content type: {content_type}",
                    extra={"content_type": content_type, "path": request.url.path},
                )
                return create_error_response(
                    "UnsupportedMediaType",
                    "INVALID_CONTENT_TYPE",
                    f"Content type '{content_type}' is not supported",
                    status_code=415,
                    correlation_id=getattr(request.state, "correlation_id", None),
                )

        return await call_next(request)


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, considering proxy headers"""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return request.client.host if request.client else "unknown"


def create_error_response(
    error_type: str,
    error_code: str,
    message: str,
    status_code: int = 400,
    correlation_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """Create standardized error response"""

    error_data = {"error": {"type": error_type, "code": error_code, "message": message}}

    if correlation_id:
        error_data["error"]["correlation_id"] = correlation_id

    if details:
        error_data["error"]["details"] = details

    return JSONResponse(status_code=status_code, content=error_data)
