"""
Crypto-exchange adapter (Binance Pay merchant API).

Requests and notifications are signed with HMAC-SHA512 over
``timestamp + "\\n" + nonce + "\\n" + body``. The body bytes that are signed
are exactly the bytes sent, so the JSON is serialized once.
"""
from __future__ import annotations

import hashlib
import json
import logging
import time
import uuid
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx

from planpay import signer
from planpay.config import CryptoExchangeSettings
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

CREATE_ORDER_PATH = "/binancepay/openapi/v2/order"
QUERY_ORDER_PATH = "/binancepay/openapi/v2/order/query"
REFUND_ORDER_PATH = "/binancepay/openapi/order/refund"

GOODS_TYPE_VIRTUAL = "02"
GOODS_CATEGORY_DIGITAL = "D000"

NOTIFICATION_KINDS: Dict[Tuple[str, str], SettlementKind] = {
    ("PAY", "PAY_SUCCESS"): SettlementKind.SUCCESS,
    ("PAY", "PAY_CLOSED"): SettlementKind.EXPIRED,
    ("REFUND", "REFUND_SUCCESS"): SettlementKind.REFUND_SUCCESS,
}

REMOTE_STATUS_KINDS: Dict[str, SettlementKind] = {
    "PAID": SettlementKind.SUCCESS,
    "EXPIRED": SettlementKind.EXPIRED,
    "CANCELED": SettlementKind.EXPIRED,
    "REFUNDED": SettlementKind.REFUND_SUCCESS,
}


def _dumps(body: Dict[str, Any]) -> str:
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False)


def format_major(amount_minor: int) -> str:
    """Cents to a two-decimal major-unit string."""
    sign = "-" if amount_minor < 0 else ""
    whole, cents = divmod(abs(amount_minor), 100)
    return f"{sign}{whole}.{cents:02d}"


class CryptoExchangeAdapter(ProviderAdapter):
    method = PaymentMethod.CRYPTO_EXCHANGE

    def __init__(
        self,
        settings: CryptoExchangeSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.api_url,
            timeout=settings.timeout_seconds,
            transport=transport,
        )

    def signed_headers(self, body: str, timestamp: Optional[str] = None, nonce: Optional[str] = None) -> Dict[str, str]:
        timestamp = timestamp or str(int(time.time() * 1000))
        nonce = nonce or uuid.uuid4().hex
        return {
            "Content-Type": "application/json",
            "BinancePay-Timestamp": timestamp,
            "BinancePay-Nonce": nonce,
            "BinancePay-Certificate-SN": self._settings.api_key,
            "BinancePay-Signature": signer.sign(self._settings.api_secret, timestamp, nonce, body),
        }

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any] | Failure:
        if not self._settings.api_key or not self._settings.api_secret:
            return Failure(ErrorKind.PROVIDER_UNAVAILABLE, "Crypto-exchange provider is not configured")

        payload = _dumps(body)
        try:
            response = await self._client.post(
                path,
                content=payload.encode("utf-8"),
                headers=self.signed_headers(payload),
            )
        except httpx.HTTPError as e:
            logger.error("Crypto-exchange request %s failed: %s", path, e)
            return Failure(ErrorKind.PROVIDER_UNAVAILABLE, "Crypto-exchange provider unreachable")

        try:
            result = response.json()
        except ValueError:
            result = {}
        if response.status_code >= 400 or result.get("status") != "SUCCESS":
            message = result.get("errorMessage") or response.text[:200]
            logger.error(
                "Crypto-exchange %s rejected: http=%s code=%s %s",
                path,
                response.status_code,
                result.get("code"),
                message,
            )
            return Failure(ErrorKind.PROVIDER_UNAVAILABLE, f"Crypto-exchange error: {message}")
        return result.get("data") or {}

    async def create_payment_intent(self, draft: PaymentDraft, urls: PaymentUrls) -> CreateResult:
        body: Dict[str, Any] = {
            "env": {"terminalType": "WEB"},
            "merchantTradeNo": draft.payment_number,
            "tradeType": "WEB",
            "orderAmount": format_major(draft.amount),
            "currency": "USD",
            "orderExpireTime": to_unix(draft.expires_at) * 1000,
            "goods": {
                "goodsType": GOODS_TYPE_VIRTUAL,
                "goodsCategory": GOODS_CATEGORY_DIGITAL,
                "referenceGoodsId": draft.plan_id,
                "goodsName": draft.plan_name,
            },
        }
        if urls.return_url:
            body["returnUrl"] = urls.return_url
        if urls.cancel_url:
            body["cancelUrl"] = urls.cancel_url

        data = await self._post(CREATE_ORDER_PATH, body)
        if isinstance(data, Failure):
            return data

        prepay_id = data.get("prepayId")
        if not prepay_id:
            return Failure(ErrorKind.PROVIDER_UNAVAILABLE, "Crypto-exchange returned no prepayId")

        logger.info("Created exchange order %s for %s", prepay_id, draft.payment_number)
        links = {
            "checkout_url": data.get("checkoutUrl"),
            "qrcode_link": data.get("qrcodeLink"),
            "qr_content": data.get("qrContent"),
            "deeplink": data.get("deeplink"),
            "universal_url": data.get("universalUrl"),
        }
        return ProviderArtifact(
            kind="exchange_order",
            external_ids={"provider_prepay_id": str(prepay_id)},
            links={k: v for k, v in links.items() if v},
            expires_at=draft.expires_at,
        )

    async def normalize_inbound(self, raw_body: bytes, headers: Mapping[str, str]) -> InboundResult:
        lowered = lower_headers(headers)
        timestamp = lowered.get("binancepay-timestamp") or lowered.get("timestamp")
        nonce = lowered.get("binancepay-nonce") or lowered.get("nonce")
        signature = lowered.get("binancepay-signature") or lowered.get("signature")
        if not (timestamp and nonce and signature):
            return RejectedSignature(self.method, "missing signature headers")
        if not signer.verify(self._settings.api_secret, timestamp, nonce, raw_body, signature):
            logger.warning("Crypto-exchange webhook signature mismatch (nonce=%s)", nonce)
            return RejectedSignature(self.method, "invalid signature")

        try:
            notification = json.loads(raw_body)
            biz_type = notification["bizType"]
            biz_status = notification["bizStatus"]
            data = notification.get("data") or {}
            if isinstance(data, str):
                data = json.loads(data)
        except (ValueError, KeyError, TypeError):
            return Failure.validation("Malformed crypto-exchange notification")

        biz_id = notification.get("bizIdStr") or notification.get("bizId")
        if biz_id:
            event_id = f"{biz_id}:{biz_type}:{biz_status}"
        else:
            event_id = hashlib.sha256(raw_body).hexdigest()

        external_ids: Dict[str, str] = {}
        if data.get("prepayId"):
            external_ids["provider_prepay_id"] = str(data["prepayId"])
        if data.get("transactionId") and biz_type == "PAY":
            external_ids["provider_transaction_id"] = str(data["transactionId"])

        return SettlementEvent(
            provider=self.method,
            kind=NOTIFICATION_KINDS.get((biz_type, biz_status), SettlementKind.INFORMATIONAL),
            provider_event_kind=f"{biz_type}/{biz_status}",
            provider_event_id=event_id,
            payment_number=data.get("merchantTradeNo"),
            external_ids=external_ids,
        )

    async def query_remote_status(
        self,
        payment_number: str,
        external_ids: Mapping[str, str],
    ) -> RemoteStatusResult:
        body: Dict[str, Any] = {"merchantTradeNo": payment_number}
        if external_ids.get("provider_prepay_id"):
            body = {"prepayId": external_ids["provider_prepay_id"]}

        data = await self._post(QUERY_ORDER_PATH, body)
        if isinstance(data, Failure):
            return data

        status = data.get("status", "UNKNOWN")
        ids: Dict[str, str] = {}
        if data.get("prepayId"):
            ids["provider_prepay_id"] = str(data["prepayId"])
        if data.get("transactionId"):
            ids["provider_transaction_id"] = str(data["transactionId"])
        return SettlementEvent(
            provider=self.method,
            kind=REMOTE_STATUS_KINDS.get(status, SettlementKind.INFORMATIONAL),
            provider_event_kind=f"QUERY/{status}",
            provider_event_id=f"poll:{payment_number}:{status}",
            payment_number=data.get("merchantTradeNo") or payment_number,
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
        prepay_id = external_ids.get("provider_prepay_id")
        if not prepay_id:
            return Failure.validation("Payment has no exchange order to refund")

        # One refund per payment, so the request id doubles as an idempotency key
        refund_request_id = "R" + payment_number.replace("-", "")
        body: Dict[str, Any] = {
            "refundRequestId": refund_request_id,
            "prepayId": prepay_id,
            "refundAmount": format_major(amount),
        }
        if reason:
            body["refundReason"] = reason[:256]

        data = await self._post(REFUND_ORDER_PATH, body)
        if isinstance(data, Failure):
            return data

        logger.info("Requested exchange refund %s for %s", refund_request_id, payment_number)
        return RefundRequested(
            order_id=order_id,
            payment_number=payment_number,
            refund_id=str(data.get("refundRequestId") or refund_request_id),
            status="PENDING",
            amount=amount,
            currency=currency,
        )

    async def close(self) -> None:
        await self._client.aclose()
