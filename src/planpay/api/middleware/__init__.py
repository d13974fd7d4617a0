from .exceptions import failure_response, register_exception_handlers
from .logging import (
    CorrelationIdFilter,
    JSONFormatter,
    StructuredLoggingMiddleware,
    get_correlation_id,
    setup_logging,
)

__all__ = [
    "CorrelationIdFilter",
    "JSONFormatter",
    "StructuredLoggingMiddleware",
    "failure_response",
    "get_correlation_id",
    "register_exception_handlers",
    "setup_logging",
]
