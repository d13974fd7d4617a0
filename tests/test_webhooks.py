"""Provider notification endpoints."""
import json

from sqlalchemy.exc import OperationalError

from planpay.models import PaymentMethod

from conftest import USER_ID
from fakes import (
    card_event,
    card_signature_header,
    completed_session,
    exchange_headers,
    exchange_notification,
)


async def post_card(client, payload, header=None):
    return await client.post(
        "/webhooks/card",
        content=payload,
        headers={
            "Content-Type": "application/json",
            "Stripe-Signature": header or card_signature_header(payload),
        },
    )


async def post_exchange(client, body, headers=None):
    return await client.post("/webhooks/crypto-exchange", content=body, headers=headers or exchange_headers(body))


class TestCardWebhook:
    async def test_completed_checkout(self, client, orchestrator):
        created = await orchestrator.create_order("starter", USER_ID, PaymentMethod.CARD)
        payload = card_event(
            "checkout.session.completed",
            completed_session(created.artifact.external_ids["provider_session_id"], created.payment_number),
        )

        response = await post_card(client, payload)

        assert response.status_code == 200
        assert response.text == "ok"
        assert await orchestrator.get_points(USER_ID) == 500

    async def test_redelivery_acknowledged(self, client, orchestrator):
        created = await orchestrator.create_order("starter", USER_ID, PaymentMethod.CARD)
        payload = card_event(
            "checkout.session.completed",
            completed_session(created.artifact.external_ids["provider_session_id"], created.payment_number),
            event_id="evt_redelivered",
        )

        first = await post_card(client, payload)
        second = await post_card(client, payload)

        assert (first.status_code, second.status_code) == (200, 200)
        assert await orchestrator.get_points(USER_ID) == 500

    async def test_conflict_acknowledged(self, client, orchestrator):
        created = await orchestrator.create_order("starter", USER_ID, PaymentMethod.CARD)
        session_id = created.artifact.external_ids["provider_session_id"]
        expired = card_event(
            "checkout.session.expired",
            {"id": session_id, "metadata": {"payment_number": created.payment_number}},
        )
        late = card_event("checkout.session.completed", completed_session(session_id, created.payment_number))

        await post_card(client, expired)
        response = await post_card(client, late)

        assert response.status_code == 200
        snapshot = await orchestrator.query_status(order_id=created.order_id)
        assert snapshot.order["status"] == "EXPIRED"

    async def test_unknown_payment_acknowledged(self, client):
        payload = card_event("checkout.session.completed", completed_session("cs_unknown", "PAY-UNKNOWN"))
        response = await post_card(client, payload)
        assert response.status_code == 200

    async def test_invalid_signature(self, client, orchestrator):
        created = await orchestrator.create_order("starter", USER_ID, PaymentMethod.CARD)
        payload = card_event(
            "checkout.session.completed",
            completed_session(created.artifact.external_ids["provider_session_id"], created.payment_number),
        )

        response = await post_card(client, payload, header=card_signature_header(payload, secret="whsec_wrong"))

        assert response.status_code == 400
        assert response.text == "invalid signature"
        assert await orchestrator.get_points(USER_ID) == 0

    async def test_missing_signature(self, client):
        response = await client.post("/webhooks/card", content="{}")
        assert response.status_code == 400

    async def test_no_bearer_token_needed(self, client):
        payload = card_event("customer.created", {"id": "cus_1"})
        response = await post_card(client, payload)
        assert response.status_code == 200


class TestCryptoExchangeWebhook:
    async def test_pay_success(self, client, orchestrator):
        created = await orchestrator.create_order("starter", USER_ID, PaymentMethod.CRYPTO_EXCHANGE)
        body = exchange_notification("PAY", "PAY_SUCCESS", created.payment_number)

        response = await post_exchange(client, body)

        assert response.status_code == 200
        assert response.json() == {"returnCode": "SUCCESS", "returnMessage": None}
        snapshot = await orchestrator.query_status(order_id=created.order_id)
        assert snapshot.order["status"] == "PAID"

    async def test_tampered_body(self, client, orchestrator):
        """A signature over the original bytes does not cover an edited body."""
        created = await orchestrator.create_order("starter", USER_ID, PaymentMethod.CRYPTO_EXCHANGE)
        body = exchange_notification("PAY", "PAY_SUCCESS", created.payment_number)
        headers = exchange_headers(body)
        tampered = body.replace("PAY_SUCCESS", "PAY_CLOSED")

        response = await post_exchange(client, tampered, headers)

        assert response.status_code == 401
        assert response.json() == {"returnCode": "FAIL", "returnMessage": "Invalid signature"}
        snapshot = await orchestrator.query_status(order_id=created.order_id)
        assert snapshot.order["status"] == "PENDING"

    async def test_reformatted_body_rejected(self, client, orchestrator):
        created = await orchestrator.create_order("starter", USER_ID, PaymentMethod.CRYPTO_EXCHANGE)
        body = exchange_notification("PAY", "PAY_SUCCESS", created.payment_number)
        headers = exchange_headers(body)
        reformatted = json.dumps(json.loads(body), indent=2)

        response = await post_exchange(client, reformatted, headers)
        assert response.status_code == 401

    async def test_unreadable_body(self, client):
        body = "not json"
        response = await post_exchange(client, body)
        assert response.status_code == 400
        assert response.json()["returnCode"] == "FAIL"


class TestUncommittedSettlement:
    """A settlement that cannot commit asks the provider to retry."""

    async def test_card_grant_failure_returns_500(self, client, orchestrator, monkeypatch):
        created = await orchestrator.create_order("starter", USER_ID, PaymentMethod.CARD)
        payload = card_event(
            "checkout.session.completed",
            completed_session(created.artifact.external_ids["provider_session_id"], created.payment_number),
            event_id="evt_retry_me",
        )

        async def broken_grant(session, order):
            raise OperationalError("INSERT INTO points_journal", {}, Exception("disk I/O error"))

        with monkeypatch.context() as m:
            m.setattr(orchestrator.entitlements, "grant", broken_grant)
            response = await post_card(client, payload)

        assert response.status_code == 500
        assert response.text == "error"
        snapshot = await orchestrator.query_status(order_id=created.order_id)
        assert snapshot.order["status"] == "PENDING"
        assert await orchestrator.get_points(USER_ID) == 0

        retried = await post_card(client, payload)
        assert retried.status_code == 200
        assert await orchestrator.get_points(USER_ID) == 500

    async def test_exchange_database_down_returns_fail(self, client, orchestrator, monkeypatch):
        created = await orchestrator.create_order("starter", USER_ID, PaymentMethod.CRYPTO_EXCHANGE)
        body = exchange_notification("PAY", "PAY_SUCCESS", created.payment_number)

        def locked():
            raise OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))

        with monkeypatch.context() as m:
            m.setattr(orchestrator.database, "session", locked)
            response = await post_exchange(client, body)

        assert response.status_code == 500
        assert response.json() == {"returnCode": "FAIL", "returnMessage": "Internal error"}
        snapshot = await orchestrator.query_status(order_id=created.order_id)
        assert snapshot.order["status"] == "PENDING"
        assert snapshot.payment["status"] == "PENDING"
