"""Structured request logging with correlation IDs.

- X-Request-ID is accepted from the caller or generated, and echoed back
- Every log record carries the correlation ID through a filter
- JSON output outside dev/test
- Authorization and signature headers are never logged
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, List, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

logger = logging.getLogger("planpay.api")

SLOW_REQUEST_MS = 1000.0

EXTRA_FIELDS = (
    "event",
    "method",
    "path",
    "status_code",
    "duration_ms",
    "client_ip",
    "error",
    "error_type",
    "order_id",
    "payment_number",
    "provider",
)


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = request_id_var.get() or "-"
        return True


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, exclude_paths: Optional[List[str]] = None):
        super().__init__(app)
        self.exclude_paths = set(exclude_paths or ["/health"])

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get("X-Request-ID") or f"req_{uuid.uuid4().hex[:16]}"
        token = request_id_var.set(correlation_id)
        request.state.request_id = correlation_id
        try:
            if request.url.path in self.exclude_paths:
                response = await call_next(request)
                response.headers["X-Request-ID"] = correlation_id
                return response
            return await self._logged(request, call_next, correlation_id)
        finally:
            request_id_var.reset(token)

    async def _logged(self, request: Request, call_next: Callable, correlation_id: str) -> Response:
        method = request.method
        path = request.url.path
        logger.info(
            "Request started",
            extra={"event": "request_start", "method": method, "path": path, "client_ip": _client_ip(request)},
        )

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                extra={
                    "event": "request_error",
                    "method": method,
                    "path": path,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                },
                exc_info=True,
            )
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        context = {
            "event": "request_complete",
            "method": method,
            "path": path,
            "status_code": response.status_code,
            "duration_ms": round(duration_ms, 2),
        }
        if response.status_code >= 500:
            logger.error("Request completed with server error", extra=context)
        elif response.status_code >= 400:
            logger.warning("Request completed with client error", extra=context)
        elif duration_ms > SLOW_REQUEST_MS:
            logger.warning("Slow request completed", extra=context)
        else:
            logger.info("Request completed", extra=context)

        response.headers["X-Request-ID"] = correlation_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        return response


def _client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", "-"),
        }
        for name in EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


def setup_logging(json_format: bool = True, level: str = "INFO") -> None:
    """Configure the root logger for the service."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(getattr(logging, level.upper()))
    console_handler.addFilter(CorrelationIdFilter())
    if json_format:
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] [%(correlation_id)s] %(name)s: %(message)s")
        )
    root_logger.addHandler(console_handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_correlation_id() -> Optional[str]:
    return request_id_var.get()
