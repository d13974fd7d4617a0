"""Error taxonomy shared by every planpay component.

Domain operations return a :class:`Failure` instead of raising. Exceptions
are reserved for programmer errors and infrastructure faults.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    UNAUTHORIZED = "UNAUTHORIZED"
    VALIDATION = "VALIDATION"
    PRICE_EXPIRED = "PRICE_EXPIRED"
    INVALID_TRANSACTION = "INVALID_TRANSACTION"
    INSUFFICIENT_CONFIRMATIONS = "INSUFFICIENT_CONFIRMATIONS"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    UNSUPPORTED_CHAIN = "UNSUPPORTED_CHAIN"
    STATE_CONFLICT = "STATE_CONFLICT"
    INTERNAL = "INTERNAL"


HTTP_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.UNAUTHORIZED: 403,
    ErrorKind.VALIDATION: 400,
    ErrorKind.PRICE_EXPIRED: 400,
    ErrorKind.INVALID_TRANSACTION: 400,
    # partial success, rendered as a normal response body
    ErrorKind.INSUFFICIENT_CONFIRMATIONS: 200,
    ErrorKind.PROVIDER_UNAVAILABLE: 400,
    ErrorKind.SIGNATURE_INVALID: 401,
    ErrorKind.UNSUPPORTED_CHAIN: 400,
    ErrorKind.STATE_CONFLICT: 409,
    ErrorKind.INTERNAL: 500,
}


@dataclass(frozen=True)
class Failure:
    """A domain failure carried as a return value."""

    kind: ErrorKind
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "success": False,
            "error": self.kind.value,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result

    @classmethod
    def not_found(cls, what: str, identifier: Optional[str] = None) -> "Failure":
        details = {"id": identifier} if identifier else {}
        return cls(ErrorKind.NOT_FOUND, f"{what} not found", details)

    @classmethod
    def validation(cls, message: str, **details: Any) -> "Failure":
        return cls(ErrorKind.VALIDATION, message, details)

