"""
Payment orchestration: the only component that moves Orders and Payments.

Flows:
- create: adapter call first, then one transaction inserts Order + Payment
- settle: one transaction locks the Payment row, re-reads its status and
  applies the state machine together with the entitlement side effects
- verify (on-chain): chain reads happen outside any transaction; only the
  final state change takes the lock

Every operation returns a value or a :class:`Failure`. Exceptions escaping
from here are infrastructure faults.
"""
from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import store
from .adapters import Adapters, build_adapters
from .chain.networks import NETWORKS
from .chain.reader import ChainReader, checksum, same_address
from .config import PlanPaySettings
from .database import Database, OrderDB, PaymentDB, TransactionDB
from .entitlements import EntitlementEngine
from .errors import ErrorKind, Failure
from .models import (
    PAYMENT_TTL,
    ChainObservation,
    OrderCreated,
    OrderPage,
    OrderSnapshot,
    OrderStatus,
    PaymentDraft,
    PaymentMethod,
    PaymentStatus,
    PaymentUrls,
    PriceQuote,
    RefundRequested,
    RejectedSignature,
    SettlementEvent,
    SettlementKind,
    SettlementOutcome,
    TransactionStatus,
    VerificationResult,
    to_unix,
    utcnow,
)
from .pricing import PriceOracle
from .state_machine import ORDER_STATUS_FOR, Action, decide

logger = logging.getLogger(__name__)

TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
MAX_PAGE_SIZE = 100


def _number(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:16].upper()}"


class PaymentOrchestrator:
    """
    Owns the order/payment lifecycle across all payment methods.

    Holds no per-payment state in memory; consistency comes from row locks
    in the store and a compare-and-set on every Payment status change.
    """

    def __init__(
        self,
        settings: PlanPaySettings,
        database: Database,
        adapters: Adapters,
        chain_reader: ChainReader,
        oracle: PriceOracle,
        entitlements: Optional[EntitlementEngine] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.database = database
        self.adapters = adapters
        self.chain_reader = chain_reader
        self.oracle = oracle
        self.clock = clock
        self.entitlements = entitlements or EntitlementEngine(clock=clock)

    # ------------------------------------------------------------------ create

    async def create_order(
        self,
        plan_id: str,
        user_id: str,
        method: PaymentMethod,
        urls: Optional[PaymentUrls] = None,
        chain_id: Optional[int] = None,
        token: Optional[str] = None,
    ) -> Union[OrderCreated, Failure]:
        adapter = self.adapters.get(method)
        if adapter is None:
            return Failure.validation(f"Unsupported payment method {method}")

        async with self.database.session() as session:
            plan = await store.get_plan(session, plan_id)
        if plan is None or not plan.active:
            return Failure.not_found("Plan", plan_id)

        now = self.clock()
        draft = PaymentDraft(
            order_id=f"ord_{uuid.uuid4().hex}",
            order_number=_number("ORD"),
            payment_id=f"pay_{uuid.uuid4().hex}",
            payment_number=_number("PAY"),
            user_id=user_id,
            plan_id=plan.plan_id,
            plan_name=plan.name,
            plan_description=plan.description,
            amount=plan.price,
            currency=plan.currency,
            method=method,
            created_at=now,
            expires_at=now + PAYMENT_TTL[method],
            chain_id=chain_id,
            token=token.upper() if token else None,
        )

        # Provider call happens before the write transaction opens
        artifact = await adapter.create_payment_intent(draft, urls or PaymentUrls())
        if isinstance(artifact, Failure):
            logger.warning(
                "Payment intent for plan %s via %s failed: %s %s",
                plan_id,
                method.value,
                artifact.kind.value,
                artifact.message,
            )
            return artifact

        order = OrderDB(
            order_id=draft.order_id,
            order_number=draft.order_number,
            user_id=user_id,
            plan_id=plan.plan_id,
            plan_name=plan.name,
            amount=plan.price,
            currency=plan.currency,
            points=plan.points_amount,
            benefits=list(plan.benefits or []),
            status=OrderStatus.PENDING.value,
            method=method.value,
            created_at=now,
            updated_at=now,
            expires_at=draft.expires_at,
        )
        if method is PaymentMethod.ONCHAIN:
            details = artifact.details
            order.chain_id = details["chain_id"]
            order.recipient_address = details["recipient_address"]
            order.token_currency = details["currency"]
            order.token_amount = details["token_amount"]
            order.token_decimals = details["token_decimals"]
            order.exchange_rate = details["exchange_rate"]
            order.price_ttl = details["price_ttl"]

        payment = PaymentDB(
            payment_id=draft.payment_id,
            payment_number=draft.payment_number,
            order_id=draft.order_id,
            user_id=user_id,
            method=method.value,
            amount=plan.price,
            currency=plan.currency,
            status=PaymentStatus.PENDING.value,
            artifact=artifact.to_dict(),
            created_at=now,
            updated_at=now,
            expires_at=draft.expires_at,
        )
        for key, value in artifact.external_ids.items():
            if key in store.EXTERNAL_ID_COLUMNS:
                setattr(payment, key, value)

        async with self.database.session() as session:
            async with session.begin():
                await store.ensure_user(session, user_id)
                session.add(order)
                await session.flush()
                session.add(payment)

        logger.info(
            "Created order %s (%s) for user %s via %s",
            draft.order_number,
            draft.payment_number,
            user_id,
            method.value,
        )
        return OrderCreated(
            order_id=draft.order_id,
            order_number=draft.order_number,
            payment_id=draft.payment_id,
            payment_number=draft.payment_number,
            artifact=artifact,
        )

    # ------------------------------------------------------------------- reads

    async def query_status(
        self,
        order_id: Optional[str] = None,
        payment_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Union[OrderSnapshot, Failure]:
        async with self.database.session() as session:
            if payment_id:
                payment = await store.get_payment(session, payment_id)
                order = await store.get_order(session, payment.order_id) if payment else None
            elif order_id:
                order = await store.get_order(session, order_id)
                payment = await store.get_payment_for_order(session, order_id) if order else None
            else:
                return Failure.validation("order_id or payment_id is required")

            if order is None or (user_id is not None and order.user_id != user_id):
                return Failure.not_found("Order", order_id or payment_id)

            tx = None
            if order.method == PaymentMethod.ONCHAIN.value:
                tx = await store.get_transaction_for_order(session, order.order_id)

            return OrderSnapshot(
                order=store.order_to_dict(order),
                payment=store.payment_to_dict(payment) if payment else None,
                transaction=store.transaction_to_dict(tx) if tx else None,
            )

    async def list_orders(
        self,
        user_id: str,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Union[OrderPage, Failure]:
        if page < 1:
            return Failure.validation("page must be >= 1", page=page)
        if not 1 <= limit <= MAX_PAGE_SIZE:
            return Failure.validation(f"limit must be between 1 and {MAX_PAGE_SIZE}", limit=limit)
        if status is not None:
            try:
                status = OrderStatus(status.upper()).value
            except ValueError:
                return Failure.validation(f"Unknown order status {status}", status=status)

        async with self.database.session() as session:
            rows, total = await store.list_orders(session, user_id, status, page, limit)

        items: List[Dict[str, Any]] = []
        for order, payment in rows:
            item = store.order_to_dict(order)
            item["payment"] = store.payment_to_dict(payment) if payment else None
            items.append(item)
        return OrderPage(items=items, page=page, limit=limit, total=total)

    async def get_transaction(self, tx_hash: str, user_id: Optional[str] = None) -> Union[Dict[str, Any], Failure]:
        async with self.database.session() as session:
            tx = await store.get_transaction(session, tx_hash)
            if tx is None:
                return Failure.not_found("Transaction", tx_hash)
            if user_id is not None:
                order = await store.get_order(session, tx.order_id)
                if order is None or order.user_id != user_id:
                    return Failure.not_found("Transaction", tx_hash)
            return store.transaction_to_dict(tx)

    async def list_entitlements(self, user_id: str, active_only: bool = True) -> List[Dict[str, Any]]:
        async with self.database.session() as session:
            rows = await store.list_entitlements(session, user_id, active_only)
        return [store.entitlement_to_dict(row) for row in rows]

    async def get_points(self, user_id: str) -> int:
        async with self.database.session() as session:
            user = await store.get_user(session, user_id)
        return user.points if user else 0

    async def quote(self, currency: str, fiat_amount: int, chain_id: int) -> Union[PriceQuote, Failure]:
        return await self.oracle.quote(currency, fiat_amount, chain_id, now=self.clock())

    async def network_status(self) -> List[Dict[str, Any]]:
        onchain = self.settings.onchain
        statuses = []
        for network in NETWORKS.values():
            recipient = onchain.recipient_for(network.key)
            entry: Dict[str, Any] = {
                "chain_id": network.chain_id,
                "key": network.key,
                "name": network.name,
                "symbol": network.native_symbol,
                "explorer_url": network.explorer_url,
                "is_testnet": network.is_testnet,
                "enabled": recipient is not None,
                "recipient_address": recipient,
                "required_confirmations": onchain.confirmations_for(network.chain_id),
                "block_number": None,
            }
            if recipient is not None:
                head = await self.chain_reader.head(network.chain_id)
                if not isinstance(head, Failure):
                    entry["block_number"] = head
            statuses.append(entry)
        return statuses

    # ------------------------------------------------------------- settlement

    async def apply_settlement(self, event: SettlementEvent) -> SettlementOutcome:
        """Apply a normalized provider event exactly once."""
        if event.kind is SettlementKind.INFORMATIONAL:
            logger.info(
                "Informational %s event %s (%s)",
                event.provider.value,
                event.provider_event_id,
                event.provider_event_kind,
            )
            return SettlementOutcome(applied=False, payment_number=event.payment_number)

        try:
            async with self.database.session() as session:
                async with session.begin():
                    payment = await store.lock_payment(session, event.payment_number, event.external_ids)
                    if payment is None:
                        logger.warning(
                            "No payment for %s event %s (payment_number=%s ids=%s)",
                            event.provider.value,
                            event.provider_event_id,
                            event.payment_number,
                            event.external_ids,
                        )
                        return SettlementOutcome(
                            applied=False,
                            payment_number=event.payment_number,
                            failure=Failure.not_found("Payment", event.payment_number),
                        )
                    return await self._apply_locked(session, payment, event)
        except IntegrityError as e:
            if not store.is_settlement_conflict(e):
                raise
            # A concurrent delivery of the same event committed first
            logger.info("Concurrent duplicate %s event %s", event.provider.value, event.provider_event_id)
            return SettlementOutcome(applied=False, duplicate=True, payment_number=event.payment_number)

    async def handle_inbound(
        self,
        method: PaymentMethod,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> Union[SettlementOutcome, RejectedSignature, Failure]:
        """Verify, normalize and apply a provider notification.

        Unknown payments and state conflicts come back inside the outcome;
        they are acknowledged to the provider, not retried.
        """
        adapter = self.adapters.get(method)
        if adapter is None:
            return Failure.validation(f"Unsupported payment method {method}")
        event = await adapter.normalize_inbound(raw_body, headers)
        if isinstance(event, RejectedSignature):
            logger.warning("Rejected %s notification: %s", method.value, event.reason)
            return event
        if isinstance(event, Failure):
            logger.warning("Unreadable %s notification: %s", method.value, event.message)
            return event
        return await self.apply_settlement(event)

    async def _apply_locked(
        self,
        session: AsyncSession,
        payment: PaymentDB,
        event: SettlementEvent,
    ) -> SettlementOutcome:
        if payment.method != event.provider.value:
            logger.warning(
                "%s event %s addresses %s payment %s",
                event.provider.value,
                event.provider_event_id,
                payment.method,
                payment.payment_number,
            )
            return self._outcome(
                payment,
                None,
                failure=Failure(ErrorKind.STATE_CONFLICT, "Event provider does not match payment method"),
            )

        order = await store.lock_order(session, payment.order_id)
        if await store.settlement_seen(session, event.provider.value, event.provider_event_id):
            logger.info("Duplicate delivery of event %s for %s", event.provider_event_id, payment.payment_number)
            return self._outcome(payment, order, duplicate=True)

        outcome = await self._transition(session, order, payment, event.kind, event.external_ids)
        if outcome.applied:
            label = Action.APPLY.value
        elif outcome.duplicate:
            label = Action.DUPLICATE.value
        else:
            label = Action.CONFLICT.value
        store.record_settlement(session, event, payment.payment_number, label)
        return outcome

    async def _transition(
        self,
        session: AsyncSession,
        order: OrderDB,
        payment: PaymentDB,
        kind: SettlementKind,
        external_ids: Optional[Dict[str, str]] = None,
    ) -> SettlementOutcome:
        current = PaymentStatus(payment.status)
        decision = decide(current, kind)

        if decision.action is Action.DUPLICATE:
            return self._outcome(payment, order, duplicate=True)
        if decision.action is not Action.APPLY:
            logger.warning(
                "Rejected %s for %s in state %s",
                kind.value,
                payment.payment_number,
                current.value,
            )
            return self._outcome(
                payment,
                order,
                failure=Failure(
                    ErrorKind.STATE_CONFLICT,
                    f"Cannot apply {kind.value} to a {current.value} payment",
                    {"payment_number": payment.payment_number, "status": current.value},
                ),
            )

        target = decision.target
        now = self.clock()
        values = {"status": target.payment_status.value, "updated_at": now}
        if target.payment_status is PaymentStatus.PAID:
            values["paid_at"] = now
        if not await store.swap_payment_status(session, payment, current.value, **values):
            logger.info("Payment %s left %s concurrently, re-reading", payment.payment_number, current.value)
            await session.refresh(payment)
            await session.refresh(order)
            return await self._transition(session, order, payment, kind, external_ids)

        order.status = target.order_status.value
        order.updated_at = now
        if target.payment_status is PaymentStatus.PAID:
            order.paid_at = now
        for key, value in (external_ids or {}).items():
            if key in store.EXTERNAL_ID_COLUMNS and value and not getattr(payment, key):
                setattr(payment, key, value)

        if target.grant:
            await self.entitlements.grant(session, order)
        if target.revoke:
            await self.entitlements.revoke(session, order)

        logger.info(
            "Order %s %s -> %s (%s)",
            order.order_number,
            current.value,
            target.payment_status.value,
            kind.value,
        )
        return self._outcome(payment, order, applied=True)

    @staticmethod
    def _outcome(
        payment: PaymentDB,
        order: Optional[OrderDB],
        applied: bool = False,
        duplicate: bool = False,
        failure: Optional[Failure] = None,
    ) -> SettlementOutcome:
        payment_status = PaymentStatus(payment.status)
        return SettlementOutcome(
            applied=applied,
            duplicate=duplicate,
            payment_number=payment.payment_number,
            order_status=OrderStatus(order.status) if order is not None else ORDER_STATUS_FOR[payment_status],
            payment_status=payment_status,
            failure=failure,
        )

    async def reconcile(self, order_id: str, user_id: Optional[str] = None) -> Union[OrderSnapshot, Failure]:
        """Poll the provider and apply whatever it reports."""
        async with self.database.session() as session:
            order = await store.get_order(session, order_id)
            payment = await store.get_payment_for_order(session, order_id) if order else None
        if order is None or payment is None or (user_id is not None and order.user_id != user_id):
            return Failure.not_found("Order", order_id)

        method = PaymentMethod(payment.method)
        if method is PaymentMethod.ONCHAIN:
            return Failure.validation("On-chain orders are reconciled through verification")

        external_ids = store.payment_external_ids(payment)
        event = await self.adapters[method].query_remote_status(payment.payment_number, external_ids)
        if isinstance(event, Failure):
            return event

        outcome = await self.apply_settlement(event)
        if outcome.failure is not None and outcome.failure.kind is not ErrorKind.STATE_CONFLICT:
            return outcome.failure
        return await self.query_status(order_id=order_id)

    async def request_refund(
        self,
        order_id: str,
        user_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Union[RefundRequested, Failure]:
        """Ask the provider to refund a paid order.

        Nothing changes here; the order moves to REFUNDED when the
        provider's refund notification is applied.
        """
        async with self.database.session() as session:
            order = await store.get_order(session, order_id)
            payment = await store.get_payment_for_order(session, order_id) if order else None
        if order is None or payment is None or (user_id is not None and order.user_id != user_id):
            return Failure.not_found("Order", order_id)
        if payment.status != PaymentStatus.PAID.value:
            return Failure(
                ErrorKind.STATE_CONFLICT,
                f"Only paid orders can be refunded (payment {payment.status})",
                {"order_id": order_id, "status": payment.status},
            )

        external_ids = store.payment_external_ids(payment)
        result = await self.adapters[PaymentMethod(payment.method)].request_refund(
            order_id,
            payment.payment_number,
            external_ids,
            payment.amount,
            payment.currency,
            reason=reason,
        )
        if isinstance(result, Failure):
            logger.warning("Refund of order %s failed: %s %s", order.order_number, result.kind.value, result.message)
            return result
        logger.info("Refund %s requested for order %s", result.refund_id, order.order_number)
        return result

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Expire PENDING payments whose expires_at has passed."""
        now = now or self.clock()
        async with self.database.session() as session:
            numbers = await store.stale_payment_numbers(session, now, self.settings.sweeper.batch_size)

        expired = 0
        for payment_number in numbers:
            async with self.database.session() as session:
                async with session.begin():
                    payment = await store.lock_payment(session, payment_number)
                    if payment is None or payment.status != PaymentStatus.PENDING.value or payment.expires_at >= now:
                        continue
                    order = await store.lock_order(session, payment.order_id)
                    outcome = await self._transition(session, order, payment, SettlementKind.EXPIRED)
                    if outcome.applied:
                        expired += 1
        if expired:
            logger.info("Expired %d stale payments", expired)
        return expired

    # ---------------------------------------------------------------- on-chain

    async def verify_onchain(
        self,
        order_id: str,
        tx_hash: str,
        from_address: str,
        user_id: Optional[str] = None,
    ) -> VerificationResult:
        tx_hash = (tx_hash or "").strip().lower()
        if not TX_HASH_RE.match(tx_hash):
            return VerificationResult(success=False, failure=Failure.validation("Invalid transaction hash"))
        try:
            from_address = checksum(from_address)
        except (ValueError, TypeError):
            return VerificationResult(success=False, failure=Failure.validation("Invalid sender address"))

        async with self.database.session() as session:
            order = await store.get_order(session, order_id)
            payment = await store.get_payment_for_order(session, order_id) if order else None
            known_tx = await store.get_transaction(session, tx_hash)

        if order is None or payment is None or (user_id is not None and order.user_id != user_id):
            return VerificationResult(success=False, failure=Failure.not_found("Order", order_id))
        if payment.method != PaymentMethod.ONCHAIN.value or order.chain_id is None:
            return VerificationResult(success=False, failure=Failure.validation("Order is not an on-chain order"))

        required = self.settings.onchain.confirmations_for(order.chain_id)
        if known_tx is not None and known_tx.order_id != order.order_id:
            return self._invalid(required, tx_hash, "Transaction already used for another order")

        quote_expired = to_unix(self.clock()) > (order.price_ttl or 0)
        if payment.status == PaymentStatus.EXPIRED.value and quote_expired:
            return self._price_expired(required, tx_hash)
        if payment.status != PaymentStatus.PENDING.value:
            return self._settled_result(payment, known_tx, required, tx_hash)
        if quote_expired:
            return await self._expire_quote(order_id, required, tx_hash)

        observation = await self.chain_reader.observe(order.chain_id, tx_hash)
        if isinstance(observation, Failure):
            return VerificationResult(
                success=False,
                required_confirmations=required,
                tx_hash=tx_hash,
                failure=observation,
            )

        mismatches = self._predicate_mismatches(order, observation, from_address)
        if mismatches:
            logger.warning("Transaction %s does not settle %s: %s", tx_hash, order.order_number, mismatches)
            return self._invalid(required, tx_hash, "Invalid transaction parameters", mismatches)

        if observation.confirmations < required:
            await self._record_pending_transaction(order, payment, observation)
            return self._observed_result(observation, required, confirmed=False)

        return await self._confirm(order_id, observation, required)

    def _predicate_mismatches(
        self,
        order: OrderDB,
        observation: ChainObservation,
        from_address: str,
    ) -> List[str]:
        mismatches = []
        if observation.chain_id != order.chain_id:
            mismatches.append("chain_id")
        if not same_address(observation.to_address, order.recipient_address):
            mismatches.append("recipient")
        if not same_address(observation.from_address, from_address):
            mismatches.append("sender")
        if observation.currency.upper() != (order.token_currency or "").upper():
            mismatches.append("currency")
        if observation.value != int(order.token_amount or 0):
            mismatches.append("amount")
        if not observation.succeeded:
            mismatches.append("reverted")
        return mismatches

    async def _expire_quote(self, order_id: str, required: int, tx_hash: str) -> VerificationResult:
        async with self.database.session() as session:
            async with session.begin():
                payment = await store.lock_payment_for_order(session, order_id)
                order = await store.lock_order(session, order_id)
                if payment.status == PaymentStatus.PENDING.value:
                    await self._transition(session, order, payment, SettlementKind.EXPIRED)
        logger.info("Price quote for order %s expired before verification", order_id)
        return self._price_expired(required, tx_hash)

    @staticmethod
    def _price_expired(required: int, tx_hash: str) -> VerificationResult:
        return VerificationResult(
            success=False,
            required_confirmations=required,
            tx_hash=tx_hash,
            failure=Failure(ErrorKind.PRICE_EXPIRED, "Price quote has expired"),
        )

    async def _record_pending_transaction(
        self,
        order: OrderDB,
        payment: PaymentDB,
        observation: ChainObservation,
    ) -> None:
        try:
            async with self.database.session() as session:
                async with session.begin():
                    self._upsert_transaction(
                        await store.get_transaction(session, observation.tx_hash),
                        session,
                        order,
                        payment,
                        observation,
                        TransactionStatus.PENDING,
                    )
        except IntegrityError:
            logger.debug("Pending transaction %s recorded concurrently", observation.tx_hash)

    def _upsert_transaction(
        self,
        existing: Optional[TransactionDB],
        session: AsyncSession,
        order: OrderDB,
        payment: PaymentDB,
        observation: ChainObservation,
        status: TransactionStatus,
    ) -> TransactionDB:
        now = self.clock()
        tx = existing
        if tx is None:
            tx = TransactionDB(
                tx_hash=observation.tx_hash,
                order_id=order.order_id,
                payment_id=payment.payment_id,
                chain_id=observation.chain_id,
                from_address=observation.from_address,
                to_address=observation.to_address,
                amount=str(observation.value),
                currency=observation.currency,
                created_at=now,
            )
            session.add(tx)
        tx.block_number = observation.block_number
        tx.confirmations = observation.confirmations
        tx.gas_used = str(observation.gas_used) if observation.gas_used is not None else None
        tx.gas_price = str(observation.gas_price) if observation.gas_price is not None else None
        if tx.status != TransactionStatus.CONFIRMED.value:
            tx.status = status.value
        if status is TransactionStatus.CONFIRMED and tx.confirmed_at is None:
            tx.confirmed_at = now
        return tx

    async def _confirm(self, order_id: str, observation: ChainObservation, required: int) -> VerificationResult:
        try:
            async with self.database.session() as session:
                async with session.begin():
                    payment = await store.lock_payment_for_order(session, order_id)
                    order = await store.lock_order(session, order_id)
                    existing = await store.get_transaction(session, observation.tx_hash)
                    if existing is not None and existing.order_id != order_id:
                        return self._invalid(required, observation.tx_hash, "Transaction already used for another order")
                    if payment.status != PaymentStatus.PENDING.value:
                        return self._settled_result(payment, existing, required, observation.tx_hash)

                    self._upsert_transaction(existing, session, order, payment, observation, TransactionStatus.CONFIRMED)
                    payment.tx_hash = observation.tx_hash
                    event = SettlementEvent(
                        provider=PaymentMethod.ONCHAIN,
                        kind=SettlementKind.SUCCESS,
                        provider_event_kind="onchain.confirmed",
                        provider_event_id=observation.tx_hash,
                        payment_number=payment.payment_number,
                        external_ids={"tx_hash": observation.tx_hash},
                    )
                    outcome = await self._apply_locked(session, payment, event)
        except IntegrityError:
            logger.warning("Transaction %s was claimed concurrently", observation.tx_hash)
            return self._invalid(required, observation.tx_hash, "Transaction already used for another order")

        if outcome.failure is not None:
            return VerificationResult(
                success=False,
                required_confirmations=required,
                tx_hash=observation.tx_hash,
                failure=outcome.failure,
            )
        return self._observed_result(observation, required, confirmed=True)

    def _settled_result(
        self,
        payment: PaymentDB,
        tx: Optional[TransactionDB],
        required: int,
        tx_hash: str,
    ) -> VerificationResult:
        if payment.status == PaymentStatus.PAID.value and payment.tx_hash == tx_hash:
            return VerificationResult(
                success=True,
                confirmed=True,
                confirmations=tx.confirmations if tx else required,
                required_confirmations=required,
                block_number=tx.block_number if tx else None,
                gas_used=int(tx.gas_used) if tx and tx.gas_used else None,
                gas_price=int(tx.gas_price) if tx and tx.gas_price else None,
                tx_hash=tx_hash,
            )
        return VerificationResult(
            success=False,
            required_confirmations=required,
            tx_hash=tx_hash,
            failure=Failure(
                ErrorKind.STATE_CONFLICT,
                f"Order is not pending (payment {payment.status})",
                {"status": payment.status},
            ),
        )

    @staticmethod
    def _invalid(required: int, tx_hash: str, message: str, mismatches: Optional[List[str]] = None) -> VerificationResult:
        details = {"mismatches": mismatches} if mismatches else {}
        return VerificationResult(
            success=False,
            required_confirmations=required,
            tx_hash=tx_hash,
            failure=Failure(ErrorKind.INVALID_TRANSACTION, message, details),
        )

    @staticmethod
    def _observed_result(observation: ChainObservation, required: int, confirmed: bool) -> VerificationResult:
        return VerificationResult(
            success=True,
            confirmed=confirmed,
            confirmations=observation.confirmations,
            required_confirmations=required,
            block_number=observation.block_number,
            gas_used=observation.gas_used,
            gas_price=observation.gas_price,
            tx_hash=observation.tx_hash,
        )

    async def close(self) -> None:
        for adapter in self.adapters.values():
            await adapter.close()
        await self.chain_reader.close()
        await self.oracle.close()


def build_orchestrator(
    settings: PlanPaySettings,
    database: Optional[Database] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], datetime] = utcnow,
) -> PaymentOrchestrator:
    """Wire the orchestrator and its collaborators from settings.

    ``transport`` replaces the network for every outbound HTTP client
    (providers, RPC nodes, price feed).
    """
    database = database or Database(settings.database_url, echo=settings.database_echo)
    oracle = PriceOracle(settings.price, settings.onchain, transport=transport)
    return PaymentOrchestrator(
        settings=settings,
        database=database,
        adapters=build_adapters(settings, oracle, transport=transport),
        chain_reader=ChainReader(settings.onchain, transport=transport),
        oracle=oracle,
        clock=clock,
    )
