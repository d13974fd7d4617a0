"""In-process stand-ins for the card provider, the exchange, RPC nodes and the price feed.

Everything is served through one ``httpx.MockTransport`` so the real
adapters, chain reader and price oracle run unmodified.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl

import httpx

from planpay import signer

CARD_WEBHOOK_SECRET = "whsec_test_secret"
EXCHANGE_API_KEY = "exchange-api-key"
EXCHANGE_SECRET = "exchange-api-secret"
JWT_SECRET = "test-jwt-secret-0123456789abcdef0123"

RECIPIENT = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
SENDER = "0xfB6916095ca1df60bB79Ce92cE3Ea74c37c5d359"
OTHER_ADDRESS = "0xdbF03B407c01E7cD3CBea99509d93f8DDDC8C6FB"
SEPOLIA = 11155111


def tx_hash(seed: str) -> str:
    return "0x" + hashlib.sha256(seed.encode()).hexdigest()


class FakeChain:
    """Minimal JSON-RPC node state."""

    def __init__(self, head: int = 1000):
        self.head = head
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self.down = False

    def add_native_transfer(
        self,
        hash_: str,
        sender: str,
        recipient: str,
        value: int,
        block: Optional[int],
        status: int = 1,
        chain_id: int = SEPOLIA,
    ) -> None:
        self.transactions[hash_] = {
            "hash": hash_,
            "chainId": hex(chain_id),
            "from": sender.lower(),
            "to": recipient.lower(),
            "value": hex(value),
            "gasPrice": hex(10_000_000_000),
            "blockNumber": hex(block) if block is not None else None,
        }
        if block is not None:
            self.receipts[hash_] = {
                "transactionHash": hash_,
                "blockNumber": hex(block),
                "status": hex(status),
                "gasUsed": hex(21_000),
                "effectiveGasPrice": hex(12_000_000_000),
                "logs": [],
            }

    def add_token_transfer(
        self,
        hash_: str,
        token: str,
        sender: str,
        recipient: str,
        value: int,
        block: int,
        chain_id: int = SEPOLIA,
    ) -> None:
        def topic(address: str) -> str:
            return "0x" + "0" * 24 + address.lower()[2:]

        self.transactions[hash_] = {
            "hash": hash_,
            "from": sender.lower(),
            "chainId": hex(chain_id),
            "to": token.lower(),
            "value": "0x0",
            "gasPrice": hex(10_000_000_000),
            "blockNumber": hex(block),
        }
        self.receipts[hash_] = {
            "transactionHash": hash_,
            "blockNumber": hex(block),
            "status": "0x1",
            "gasUsed": hex(52_000),
            "logs": [
                {
                    "address": token.lower(),
                    "topics": [
                        "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef",
                        topic(sender),
                        topic(recipient),
                    ],
                    "data": hex(value),
                }
            ],
        }

    def confirm_to(self, hash_: str, confirmations: int) -> None:
        """Move the head so ``hash_`` has exactly ``confirmations``."""
        block = int(self.receipts[hash_]["blockNumber"], 16)
        self.head = block + confirmations - 1

    def handle(self, payload: Dict[str, Any]) -> httpx.Response:
        method = payload["method"]
        params = payload.get("params") or []
        self.calls.append(method)
        if self.down:
            return httpx.Response(503, text="node unavailable")
        if method == "eth_blockNumber":
            result: Any = hex(self.head)
        elif method == "eth_getTransactionByHash":
            result = self.transactions.get(params[0])
        elif method == "eth_getTransactionReceipt":
            result = self.receipts.get(params[0])
        else:
            return httpx.Response(
                200,
                json={"jsonrpc": "2.0", "id": payload["id"], "error": {"code": -32601, "message": "method not found"}},
            )
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})


class FakeProviders:
    """Routes every outbound request by host."""

    def __init__(self):
        self.chain = FakeChain()
        self.requests: List[httpx.Request] = []
        self.card_sessions: Dict[str, Dict[str, Any]] = {}
        self.exchange_orders: Dict[str, Dict[str, Any]] = {}
        self.card_refunds: Dict[str, Dict[str, Any]] = {}
        self.exchange_refunds: List[Dict[str, Any]] = []
        self.card_down = False
        self.exchange_error: Optional[str] = None
        self.coingecko_prices: Dict[str, float] = {}
        self._counter = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host == "api.stripe.com":
            return self._card(request)
        if host == "bpay.binanceapi.com":
            return self._exchange(request)
        if host == "api.coingecko.com":
            return self._coingecko(request)
        return self.chain.handle(json.loads(request.content))

    def requests_to(self, host: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.host == host]

    # card

    def _card(self, request: httpx.Request) -> httpx.Response:
        if self.card_down:
            return httpx.Response(500, json={"error": {"message": "card provider down"}})
        path = request.url.path
        if request.method == "POST" and path == "/v1/checkout/sessions":
            form = dict(parse_qsl(request.content.decode()))
            session_id = f"cs_test_{self._next()}"
            metadata = {
                key[len("metadata["):-1]: value
                for key, value in form.items()
                if key.startswith("metadata[")
            }
            self.card_sessions[session_id] = {
                "id": session_id,
                "object": "checkout.session",
                "url": f"https://checkout.stripe.com/c/pay/{session_id}",
                "status": "open",
                "payment_status": "unpaid",
                "payment_intent": None,
                "client_reference_id": form.get("client_reference_id"),
                "metadata": metadata,
                "form": form,
            }
            return httpx.Response(200, json=self.card_sessions[session_id])
        if request.method == "POST" and path == "/v1/refunds":
            form = dict(parse_qsl(request.content.decode()))
            refund_id = f"re_test_{self._next()}"
            self.card_refunds[refund_id] = {
                "id": refund_id,
                "object": "refund",
                "payment_intent": form.get("payment_intent"),
                "status": "pending",
                "form": form,
                "idempotency_key": request.headers.get("Idempotency-Key"),
            }
            return httpx.Response(200, json=self.card_refunds[refund_id])
        if request.method == "GET" and path.startswith("/v1/checkout/sessions/"):
            session = self.card_sessions.get(path.rsplit("/", 1)[-1])
            if session is None:
                return httpx.Response(404, json={"error": {"message": "No such checkout session"}})
            return httpx.Response(200, json=session)
        return httpx.Response(404, json={"error": {"message": "unknown path"}})

    def complete_card_session(self, session_id: str, payment_intent: str = "pi_test_1") -> None:
        self.card_sessions[session_id].update(status="complete", payment_status="paid", payment_intent=payment_intent)

    # exchange

    def _exchange(self, request: httpx.Request) -> httpx.Response:
        if self.exchange_error:
            return httpx.Response(
                200,
                json={"status": "FAIL", "code": "400201", "errorMessage": self.exchange_error},
            )
        body = json.loads(request.content)
        if request.url.path == "/binancepay/openapi/v2/order":
            prepay_id = str(29383937493038 + self._next())
            order = {
                "merchantTradeNo": body["merchantTradeNo"],
                "prepayId": prepay_id,
                "status": "INITIAL",
                "body": body,
            }
            self.exchange_orders[body["merchantTradeNo"]] = order
            return httpx.Response(
                200,
                json={
                    "status": "SUCCESS",
                    "code": "000000",
                    "data": {
                        "prepayId": prepay_id,
                        "terminalType": "WEB",
                        "expireTime": body["orderExpireTime"],
                        "qrcodeLink": f"https://public.bnbstatic.com/static/payment/{prepay_id}.jpg",
                        "qrContent": f"https://app.binance.com/qr/{prepay_id}",
                        "checkoutUrl": f"https://pay.binance.com/en/checkout/{prepay_id}",
                        "deeplink": f"bnc://app.binance.com/payment/secpay?tempToken={prepay_id}",
                        "universalUrl": f"https://app.binance.com/payment/secpay?tempToken={prepay_id}",
                    },
                },
            )
        if request.url.path == "/binancepay/openapi/order/refund":
            self.exchange_refunds.append(body)
            return httpx.Response(
                200,
                json={
                    "status": "SUCCESS",
                    "code": "000000",
                    "data": {
                        "refundRequestId": body["refundRequestId"],
                        "prepayId": body["prepayId"],
                        "refundAmount": body["refundAmount"],
                        "remainingAttempts": 9,
                        "duplicateRequest": "N",
                    },
                },
            )
        if request.url.path == "/binancepay/openapi/v2/order/query":
            order = next(
                (
                    o
                    for o in self.exchange_orders.values()
                    if o["prepayId"] == body.get("prepayId") or o["merchantTradeNo"] == body.get("merchantTradeNo")
                ),
                None,
            )
            if order is None:
                return httpx.Response(200, json={"status": "FAIL", "code": "400202", "errorMessage": "Order not found"})
            return httpx.Response(
                200,
                json={
                    "status": "SUCCESS",
                    "code": "000000",
                    "data": {
                        "merchantTradeNo": order["merchantTradeNo"],
                        "prepayId": order["prepayId"],
                        "transactionId": "M_R_" + order["prepayId"],
                        "status": order["status"],
                        "currency": "USD",
                    },
                },
            )
        return httpx.Response(404)

    # price feed

    def _coingecko(self, request: httpx.Request) -> httpx.Response:
        coin = request.url.params.get("ids")
        if coin not in self.coingecko_prices:
            return httpx.Response(429, json={"status": {"error_code": 429}})
        return httpx.Response(200, json={coin: {"usd": self.coingecko_prices[coin]}})


# Inbound payload builders


def card_signature_header(payload: str, secret: str = CARD_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = timestamp or int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def card_event(event_type: str, obj: Dict[str, Any], event_id: Optional[str] = None) -> str:
    return json.dumps(
        {
            "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }
    )


def completed_session(session_id: str, payment_number: str, payment_intent: str = "pi_test_1") -> Dict[str, Any]:
    return {
        "id": session_id,
        "object": "checkout.session",
        "status": "complete",
        "payment_status": "paid",
        "payment_intent": payment_intent,
        "metadata": {"payment_number": payment_number},
    }


def exchange_notification(
    biz_type: str,
    biz_status: str,
    merchant_trade_no: str,
    prepay_id: Optional[str] = None,
    biz_id: Optional[int] = 29383937493038367,
) -> str:
    data = {
        "merchantTradeNo": merchant_trade_no,
        "productType": "Food",
        "productName": "Starter",
        "transactTime": 1700000000000,
        "tradeType": "WEB",
        "totalFee": 19.99,
        "currency": "USDT",
        "transactionId": "M_P_71505104267788288",
    }
    if prepay_id:
        data["prepayId"] = prepay_id
    notification: Dict[str, Any] = {
        "bizType": biz_type,
        "bizStatus": biz_status,
        "data": json.dumps(data),
    }
    if biz_id is not None:
        notification["bizId"] = biz_id
    return json.dumps(notification)


def exchange_headers(
    body: str,
    secret: str = EXCHANGE_SECRET,
    timestamp: str = "1700000000000",
    nonce: str = "5K8264ILTKCH16CQ2502SI8ZNMTM67VS",
) -> Dict[str, str]:
    return {
        "Content-Type": "application/json",
        "BinancePay-Timestamp": timestamp,
        "BinancePay-Nonce": nonce,
        "BinancePay-Certificate-SN": EXCHANGE_API_KEY,
        "BinancePay-Signature": signer.sign(secret, timestamp, nonce, body),
    }
