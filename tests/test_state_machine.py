import pytest

from planpay.models import OrderStatus, PaymentStatus, SettlementKind
from planpay.state_machine import ORDER_STATUS_FOR, Action, decide


class TestTransitions:
    def test_pending_success_pays_and_grants(self):
        decision = decide(PaymentStatus.PENDING, SettlementKind.SUCCESS)
        assert decision.action is Action.APPLY
        assert decision.target.order_status is OrderStatus.PAID
        assert decision.target.payment_status is PaymentStatus.PAID
        assert decision.target.grant and not decision.target.revoke

    def test_pending_expired(self):
        decision = decide(PaymentStatus.PENDING, SettlementKind.EXPIRED)
        assert decision.action is Action.APPLY
        assert decision.target.order_status is OrderStatus.EXPIRED
        assert decision.target.payment_status is PaymentStatus.EXPIRED
        assert not decision.target.grant

    def test_pending_failed_cancels_order(self):
        decision = decide(PaymentStatus.PENDING, SettlementKind.FAILED)
        assert decision.action is Action.APPLY
        assert decision.target.order_status is OrderStatus.CANCELED
        assert decision.target.payment_status is PaymentStatus.FAILED

    def test_paid_refund_revokes(self):
        decision = decide(PaymentStatus.PAID, SettlementKind.REFUND_SUCCESS)
        assert decision.action is Action.APPLY
        assert decision.target.order_status is OrderStatus.REFUNDED
        assert decision.target.revoke and not decision.target.grant


class TestDuplicatesAndConflicts:
    @pytest.mark.parametrize(
        "current,kind",
        [
            (PaymentStatus.PAID, SettlementKind.SUCCESS),
            (PaymentStatus.REFUNDED, SettlementKind.REFUND_SUCCESS),
            (PaymentStatus.EXPIRED, SettlementKind.EXPIRED),
            (PaymentStatus.FAILED, SettlementKind.FAILED),
        ],
    )
    def test_target_already_reached_is_duplicate(self, current, kind):
        assert decide(current, kind).action is Action.DUPLICATE

    @pytest.mark.parametrize(
        "current,kind",
        [
            (PaymentStatus.EXPIRED, SettlementKind.SUCCESS),
            (PaymentStatus.FAILED, SettlementKind.SUCCESS),
            (PaymentStatus.REFUNDED, SettlementKind.SUCCESS),
            (PaymentStatus.PENDING, SettlementKind.REFUND_SUCCESS),
            (PaymentStatus.PAID, SettlementKind.EXPIRED),
            (PaymentStatus.PAID, SettlementKind.FAILED),
            (PaymentStatus.EXPIRED, SettlementKind.REFUND_SUCCESS),
        ],
    )
    def test_everything_else_conflicts(self, current, kind):
        decision = decide(current, kind)
        assert decision.action is Action.CONFLICT
        assert decision.target is None

    @pytest.mark.parametrize("current", list(PaymentStatus))
    def test_informational_is_ignored(self, current):
        assert decide(current, SettlementKind.INFORMATIONAL).action is Action.IGNORE


def test_order_status_mirrors_payment_status():
    for payment_status, order_status in ORDER_STATUS_FOR.items():
        if payment_status is PaymentStatus.PAID:
            assert order_status is OrderStatus.PAID
        else:
            assert order_status is not OrderStatus.PAID
