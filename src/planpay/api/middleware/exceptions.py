"""Error responses for the planpay API.

Every error body is an RFC 7807 problem document that also carries the
planpay fields ``success``, ``error`` (an ErrorKind) and ``message``:

{
    "type": "https://planpay.dev/errors/not-found",
    "title": "Resource Not Found",
    "status": 404,
    "detail": "Order not found",
    "instance": "/payments/orders/ord_123",
    "request_id": "req_abc123",
    "success": false,
    "error": "NOT_FOUND",
    "message": "Order not found"
}
"""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from planpay.errors import ErrorKind, Failure

logger = logging.getLogger(__name__)

ERROR_TYPE_BASE = "https://planpay.dev/errors"

ERROR_TITLES: Dict[ErrorKind, str] = {
    ErrorKind.NOT_FOUND: "Resource Not Found",
    ErrorKind.UNAUTHENTICATED: "Authentication Required",
    ErrorKind.UNAUTHORIZED: "Access Denied",
    ErrorKind.VALIDATION: "Validation Error",
    ErrorKind.PRICE_EXPIRED: "Price Quote Expired",
    ErrorKind.INVALID_TRANSACTION: "Invalid Transaction",
    ErrorKind.INSUFFICIENT_CONFIRMATIONS: "Insufficient Confirmations",
    ErrorKind.PROVIDER_UNAVAILABLE: "Payment Provider Unavailable",
    ErrorKind.SIGNATURE_INVALID: "Invalid Signature",
    ErrorKind.UNSUPPORTED_CHAIN: "Unsupported Chain",
    ErrorKind.STATE_CONFLICT: "State Conflict",
    ErrorKind.INTERNAL: "Internal Server Error",
}

STATUS_KINDS: Dict[int, ErrorKind] = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.UNAUTHENTICATED,
    403: ErrorKind.UNAUTHORIZED,
    404: ErrorKind.NOT_FOUND,
    409: ErrorKind.STATE_CONFLICT,
    422: ErrorKind.VALIDATION,
}


def get_request_id(request: Request) -> str:
    if hasattr(request.state, "request_id"):
        return request.state.request_id
    return request.headers.get("X-Request-ID", "unknown")


def problem_body(failure: Failure, request: Request, status_code: Optional[int] = None) -> Dict[str, Any]:
    status_code = status_code or failure.http_status
    body: Dict[str, Any] = {
        "type": f"{ERROR_TYPE_BASE}/{failure.kind.value.lower().replace('_', '-')}",
        "title": ERROR_TITLES[failure.kind],
        "status": status_code,
        "detail": failure.message,
        "instance": request.url.path,
        "request_id": get_request_id(request),
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
    }
    body.update(failure.to_dict())
    return body


def failure_response(
    failure: Failure,
    request: Request,
    status_code: Optional[int] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    status_code = status_code or failure.http_status
    return JSONResponse(
        status_code=status_code,
        content=problem_body(failure, request, status_code),
        headers={"X-Request-ID": get_request_id(request), **(headers or {})},
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]
        logger.warning("Validation error: %d field(s) failed on %s", len(errors), request.url.path)
        return failure_response(
            Failure(ErrorKind.VALIDATION, "One or more fields failed validation", {"errors": errors}),
            request,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        kind = STATUS_KINDS.get(exc.status_code, ErrorKind.INTERNAL if exc.status_code >= 500 else ErrorKind.VALIDATION)
        return failure_response(
            Failure(kind, str(exc.detail)),
            request,
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled exception on %s: %s",
            request.url.path,
            exc,
            exc_info=(type(exc), exc, exc.__traceback__),
        )
        return failure_response(Failure(ErrorKind.INTERNAL, "An internal error occurred"), request)
