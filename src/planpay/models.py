"""Domain value types for orders, payments and settlement."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import Failure


def utcnow() -> datetime:
    """Naive UTC now; all persisted timestamps are naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_unix(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp())


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    CARD = "CARD"
    CRYPTO_EXCHANGE = "CRYPTO_EXCHANGE"
    ONCHAIN = "ONCHAIN"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"


class SettlementKind(str, Enum):
    """Provider-agnostic meaning of an inbound notification."""
    SUCCESS = "SUCCESS"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"
    REFUND_SUCCESS = "REFUND_SUCCESS"
    INFORMATIONAL = "INFORMATIONAL"


PAYMENT_TTL: Dict[PaymentMethod, timedelta] = {
    PaymentMethod.CARD: timedelta(hours=24),
    PaymentMethod.CRYPTO_EXCHANGE: timedelta(hours=1),
    PaymentMethod.ONCHAIN: timedelta(minutes=15),
}


@dataclass(frozen=True)
class SettlementEvent:
    """A normalized inbound notification.

    ``payment_number`` is the merchant trade number when the provider echoes
    it back. Otherwise the payment is located through ``external_ids``, keyed
    by the Payment column that stores the identifier (``provider_session_id``,
    ``provider_prepay_id``, ``provider_transaction_id`` or ``tx_hash``).
    """

    provider: PaymentMethod
    kind: SettlementKind
    provider_event_kind: str
    provider_event_id: str
    payment_number: Optional[str] = None
    external_ids: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RejectedSignature:
    provider: PaymentMethod
    reason: str


@dataclass
class ProviderArtifact:
    """What the buyer needs to complete the payment, plus provider ids."""

    kind: str
    external_ids: Dict[str, str] = field(default_factory=dict)
    links: Dict[str, str] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)
    expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "external_ids": dict(self.external_ids),
            "links": dict(self.links),
            "details": dict(self.details),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass(frozen=True)
class PaymentUrls:
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None


@dataclass(frozen=True)
class PaymentDraft:
    """Order and payment values handed to an adapter before anything is stored."""

    order_id: str
    order_number: str
    payment_id: str
    payment_number: str
    user_id: str
    plan_id: str
    plan_name: str
    plan_description: Optional[str]
    amount: int
    currency: str
    method: PaymentMethod
    created_at: datetime
    expires_at: datetime
    chain_id: Optional[int] = None
    token: Optional[str] = None


@dataclass(frozen=True)
class PriceQuote:
    currency: str
    fiat_amount: int
    fiat_currency: str
    token_amount: int
    token_decimals: int
    exchange_rate: Decimal
    gas_estimate: Decimal
    price_ttl: int

    @property
    def token_amount_display(self) -> Decimal:
        return Decimal(self.token_amount).scaleb(-self.token_decimals).normalize()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currency": self.currency,
            "fiat_amount": self.fiat_amount,
            "fiat_currency": self.fiat_currency,
            "token_amount": str(self.token_amount),
            "token_amount_display": format(self.token_amount_display, "f"),
            "token_decimals": self.token_decimals,
            "exchange_rate": str(self.exchange_rate),
            "gas_estimate": str(self.gas_estimate),
            "price_ttl": self.price_ttl,
        }


@dataclass(frozen=True)
class ChainObservation:
    chain_id: int
    tx_hash: str
    from_address: str
    to_address: str
    value: int
    currency: str
    is_native: bool
    block_number: int
    head_block: int
    confirmations: int
    succeeded: bool
    gas_used: Optional[int] = None
    gas_price: Optional[int] = None
    token_contract: Optional[str] = None


@dataclass
class OrderCreated:
    order_id: str
    order_number: str
    payment_id: str
    payment_number: str
    artifact: ProviderArtifact

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "order_id": self.order_id,
            "order_number": self.order_number,
            "payment_id": self.payment_id,
            "payment_number": self.payment_number,
            "artifact": self.artifact.to_dict(),
        }


@dataclass
class OrderSnapshot:
    order: Dict[str, Any]
    payment: Optional[Dict[str, Any]]
    transaction: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order,
            "payment": self.payment,
            "transaction": self.transaction,
        }


@dataclass
class OrderPage:
    items: List[Dict[str, Any]]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": self.items,
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "pages": self.pages,
        }


@dataclass
class SettlementOutcome:
    """Result of applying a SettlementEvent.

    ``duplicate`` is set for re-deliveries and for events whose target state
    already holds. ``failure`` carries STATE_CONFLICT or NOT_FOUND; neither
    changes state.
    """

    applied: bool
    duplicate: bool = False
    payment_number: Optional[str] = None
    order_status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    failure: Optional[Failure] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "applied": self.applied,
            "duplicate": self.duplicate,
            "payment_number": self.payment_number,
            "order_status": self.order_status.value if self.order_status else None,
            "payment_status": self.payment_status.value if self.payment_status else None,
        }
        if self.failure is not None:
            data["error"] = self.failure.kind.value
            data["message"] = self.failure.message
        return data


@dataclass
class RefundRequested:
    """A refund the provider accepted. The order stays PAID until the
    provider's refund notification arrives."""

    order_id: str
    payment_number: str
    refund_id: str
    status: str
    amount: int
    currency: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "order_id": self.order_id,
            "payment_number": self.payment_number,
            "refund_id": self.refund_id,
            "status": self.status,
            "amount": self.amount,
            "currency": self.currency,
        }


@dataclass
class VerificationResult:
    success: bool
    confirmed: bool = False
    confirmations: int = 0
    required_confirmations: int = 0
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    gas_price: Optional[int] = None
    tx_hash: Optional[str] = None
    failure: Optional[Failure] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("failure")
        data["error"] = self.failure.message if self.failure else None
        if self.failure is not None:
            data["error_code"] = self.failure.kind.value
        return data
