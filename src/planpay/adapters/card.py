"""
Hosted-checkout card adapter (Stripe Checkout).

Outbound calls use the REST API over httpx; inbound webhooks are verified
with the Stripe SDK's signature verifier against the raw request body.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Mapping, Optional

import httpx
import stripe

from planpay.config import CardSettings
from planpay.errors import ErrorKind, Failure
from planpay.models import (
    PaymentDraft,
    PaymentMethod,
    PaymentUrls,
    ProviderArtifact,
    RefundRequested,
    RejectedSignature,
    SettlementEvent,
    SettlementKind,
    to_unix,
)

from .base import (
    CreateResult,
    InboundResult,
    ProviderAdapter,
    RefundResult,
    RemoteStatusResult,
    lower_headers,
)

logger = logging.getLogger(__name__)

EVENT_KINDS: Dict[str, SettlementKind] = {
    "checkout.session.completed": SettlementKind.SUCCESS,
    "checkout.session.expired": SettlementKind.EXPIRED,
    # SUCCESS is driven by checkout completion
    "payment_intent.succeeded": SettlementKind.INFORMATIONAL,
    "payment_intent.payment_failed": SettlementKind.FAILED,
    "charge.refunded": SettlementKind.REFUND_SUCCESS,
}


def _metadata(draft: PaymentDraft) -> Dict[str, str]:
    return {
        "order_id": draft.order_id,
        "payment_id": draft.payment_id,
        "user_id": draft.user_id,
        "plan_id": draft.plan_id,
        "order_number": draft.order_number,
        "payment_number": draft.payment_number,
    }


class CardAdapter(ProviderAdapter):
    method = PaymentMethod.CARD

    def __init__(
        self,
        settings: CardSettings,
        public_base_url: str = "http://localhost:3000",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._settings = settings
        self._public_base_url = public_base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=settings.api_base,
            auth=(settings.secret_key, ""),
            timeout=settings.timeout_seconds,
            transport=transport,
        )

    def _session_form(self, draft: PaymentDraft, urls: PaymentUrls) -> Dict[str, Any]:
        success_url = urls.return_url or (
            f"{self._public_base_url}/payment/success?session_id={{CHECKOUT_SESSION_ID}}"
        )
        cancel_url = urls.cancel_url or f"{self._public_base_url}/payment/cancel"
        form: Dict[str, Any] = {
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": draft.order_number,
            "expires_at": to_unix(draft.expires_at),
            "line_items[0][quantity]": 1,
            "line_items[0][price_data][currency]": draft.currency.lower(),
            "line_items[0][price_data][unit_amount]": draft.amount,
            "line_items[0][price_data][product_data][name]": draft.plan_name,
        }
        if draft.plan_description:
            form["line_items[0][price_data][product_data][description]"] = draft.plan_description
        for key, value in _metadata(draft).items():
            form[f"metadata[{key}]"] = value
            form[f"payment_intent_data[metadata][{key}]"] = value
        return form

    async def create_payment_intent(self, draft: PaymentDraft, urls: PaymentUrls) -> CreateResult:
        if not self._settings.secret_key:
            return Failure(ErrorKind.PROVIDER_UNAVAILABLE, "Card provider is not configured")

        try:
            response = await self._client.post("/checkout/sessions", data=self._session_form(draft, urls))
        except httpx.HTTPError as e:
            logger.error("Checkout session request for %s failed: %s", draft.payment_number, e)
            return Failure(ErrorKind.PROVIDER_UNAVAILABLE, "Card provider unreachable")

        if response.status_code >= 400:
            message = _error_message(response)
            logger.error(
                "Checkout session rejected for %s: %s %s",
                draft.payment_number,
                response.status_code,
                message,
            )
            return Failure(ErrorKind.PROVIDER_UNAVAILABLE, f"Card provider error: {message}")

        session = response.json()
        logger.info("Created checkout session %s for %s", session.get("id"), draft.payment_number)
        return ProviderArtifact(
            kind="checkout_session",
            external_ids={"provider_session_id": session["id"]},
            links={"checkout_url": session.get("url") or ""},
            expires_at=draft.expires_at,
        )

    async def normalize_inbound(self, raw_body: bytes, headers: Mapping[str, str]) -> InboundResult:
        lowered = lower_headers(headers)
        signature = lowered.get("stripe-signature") or lowered.get("signature")
        if not signature:
            return RejectedSignature(self.method, "missing signature header")
        if not self._settings.webhook_secret:
            logger.error("Card webhook secret not configured")
            return Failure(ErrorKind.INTERNAL, "Card webhook secret not configured")

        payload = raw_body.decode("utf-8", errors="replace")
        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature,
                self._settings.webhook_secret,
                self._settings.webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("Card webhook signature verification failed: %s", e)
            return RejectedSignature(self.method, "invalid signature")

        try:
            event = json.loads(payload)
            event_type = event["type"]
            event_id = event["id"]
            obj = event["data"]["object"]
        except (ValueError, KeyError, TypeError):
            return Failure.validation("Malformed card event")

        return self._to_settlement(event_type, event_id, obj)

    def _to_settlement(self, event_type: str, event_id: str, obj: Dict[str, Any]) -> SettlementEvent:
        kind = EVENT_KINDS.get(event_type, SettlementKind.INFORMATIONAL)
        metadata = obj.get("metadata") or {}
        external_ids: Dict[str, str] = {}

        if event_type.startswith("checkout.session."):
            external_ids["provider_session_id"] = obj.get("id")
            if obj.get("payment_intent"):
                external_ids["provider_transaction_id"] = obj["payment_intent"]
            if kind is SettlementKind.SUCCESS and obj.get("payment_status") not in (None, "paid", "no_payment_required"):
                # Delayed payment methods complete the session before funds arrive
                kind = SettlementKind.INFORMATIONAL
        elif event_type.startswith("payment_intent."):
            external_ids["provider_transaction_id"] = obj.get("id")
        elif event_type == "charge.refunded":
            if obj.get("payment_intent"):
                external_ids["provider_transaction_id"] = obj["payment_intent"]
            if not obj.get("refunded", True):
                # partial refund
                kind = SettlementKind.INFORMATIONAL

        return SettlementEvent(
            provider=self.method,
            kind=kind,
            provider_event_kind=event_type,
            provider_event_id=event_id,
            payment_number=metadata.get("payment_number"),
            external_ids={k: v for k, v in external_ids.items() if v},
        )

    async def query_remote_status(
        self,
        payment_number: str,
        external_ids: Mapping[str, str],
    ) -> RemoteStatusResult:
        session_id = external_ids.get("provider_session_id")
        if not session_id:
            return Failure.validation("Payment has no checkout session")
        try:
            response = await self._client.get(f"/checkout/sessions/{session_id}")
        except httpx.HTTPError as e:
            logger.error("Checkout session lookup %s failed: %s", session_id, e)
            return Failure(ErrorKind.PROVIDER_UNAVAILABLE, "Card provider unreachable")
        if response.status_code == 404:
            return Failure.not_found("Checkout session", session_id)
        if response.status_code >= 400:
            return Failure(ErrorKind.PROVIDER_UNAVAILABLE, f"Card provider error: {_error_message(response)}")

        session = response.json()
        status = session.get("status")
        if status == "complete" and session.get("payment_status") in ("paid", "no_payment_required"):
            kind = SettlementKind.SUCCESS
        elif status == "expired":
            kind = SettlementKind.EXPIRED
        else:
            kind = SettlementKind.INFORMATIONAL

        ids = {"provider_session_id": session_id}
        if session.get("payment_intent"):
            ids["provider_transaction_id"] = session["payment_intent"]
        return SettlementEvent(
            provider=self.method,
            kind=kind,
            provider_event_kind=f"checkout.session.{status}",
            provider_event_id=f"poll:{session_id}:{status}",
            payment_number=payment_number,
            external_ids=ids,
        )

    async def request_refund(
        self,
        order_id: str,
        payment_number: str,
        external_ids: Mapping[str, str],
        amount: int,
        currency: str,
        reason: Optional[str] = None,
    ) -> RefundResult:
        payment_intent = external_ids.get("provider_transaction_id")
        if not payment_intent:
            return Failure.validation("Payment has no payment intent to refund")

        form = {
            "payment_intent": payment_intent,
            "reason": "requested_by_customer",
            "metadata[order_id]": order_id,
            "metadata[payment_number]": payment_number,
        }
        if reason:
            form["metadata[reason]"] = reason[:500]
        try:
            response = await self._client.post(
                "/refunds",
                data=form,
                headers={"Idempotency-Key": f"refund-{payment_number}"},
            )
        except httpx.HTTPError as e:
            logger.error("Refund request for %s failed: %s", payment_number, e)
            return Failure(ErrorKind.PROVIDER_UNAVAILABLE, "Card provider unreachable")
        if response.status_code >= 400:
            message = _error_message(response)
            logger.error("Refund rejected for %s: %s %s", payment_number, response.status_code, message)
            return Failure(ErrorKind.PROVIDER_UNAVAILABLE, f"Card provider error: {message}")

        refund = response.json()
        logger.info("Requested refund %s for %s", refund.get("id"), payment_number)
        return RefundRequested(
            order_id=order_id,
            payment_number=payment_number,
            refund_id=refund["id"],
            status=str(refund.get("status") or "pending").upper(),
            amount=amount,
            currency=currency,
        )

    async def close(self) -> None:
        await self._client.aclose()


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("error", {}).get("message") or response.text[:200]
    except ValueError:
        return response.text[:200]
