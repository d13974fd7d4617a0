"""Order/Payment lifecycle as a pure transition function.

PENDING -> PAID -> REFUNDED
PENDING -> EXPIRED
PENDING -> CANCELED (payment FAILED)

Terminal states never move again. A re-delivered event whose target state
already holds is a duplicate; anything else that does not match a row in
the table is a conflict. Both leave state untouched.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from .models import OrderStatus, PaymentStatus, SettlementKind


class Action(str, Enum):
    APPLY = "applied"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"
    IGNORE = "ignored"


@dataclass(frozen=True)
class Target:
    order_status: OrderStatus
    payment_status: PaymentStatus
    grant: bool = False
    revoke: bool = False


@dataclass(frozen=True)
class Decision:
    action: Action
    target: Optional[Target] = None


TRANSITIONS: Dict[Tuple[PaymentStatus, SettlementKind], Target] = {
    (PaymentStatus.PENDING, SettlementKind.SUCCESS): Target(OrderStatus.PAID, PaymentStatus.PAID, grant=True),
    (PaymentStatus.PENDING, SettlementKind.EXPIRED): Target(OrderStatus.EXPIRED, PaymentStatus.EXPIRED),
    (PaymentStatus.PENDING, SettlementKind.FAILED): Target(OrderStatus.CANCELED, PaymentStatus.FAILED),
    (PaymentStatus.PAID, SettlementKind.REFUND_SUCCESS): Target(OrderStatus.REFUNDED, PaymentStatus.REFUNDED, revoke=True),
}

# Event kinds whose target state is the current state
ALREADY_THERE: Dict[PaymentStatus, SettlementKind] = {
    PaymentStatus.PAID: SettlementKind.SUCCESS,
    PaymentStatus.EXPIRED: SettlementKind.EXPIRED,
    PaymentStatus.FAILED: SettlementKind.FAILED,
    PaymentStatus.REFUNDED: SettlementKind.REFUND_SUCCESS,
}

ORDER_STATUS_FOR: Dict[PaymentStatus, OrderStatus] = {
    PaymentStatus.PENDING: OrderStatus.PENDING,
    PaymentStatus.PAID: OrderStatus.PAID,
    PaymentStatus.FAILED: OrderStatus.CANCELED,
    PaymentStatus.EXPIRED: OrderStatus.EXPIRED,
    PaymentStatus.REFUNDED: OrderStatus.REFUNDED,
}


def decide(current: PaymentStatus, kind: SettlementKind) -> Decision:
    if kind is SettlementKind.INFORMATIONAL:
        return Decision(Action.IGNORE)
    target = TRANSITIONS.get((current, kind))
    if target is not None:
        return Decision(Action.APPLY, target)
    if ALREADY_THERE.get(current) is kind:
        return Decision(Action.DUPLICATE)
    return Decision(Action.CONFLICT)
