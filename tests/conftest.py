from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

import httpx
import pytest

from planpay import store
from planpay.api.auth import issue_token
from planpay.api.main import create_app
from planpay.config import (
    AuthSettings,
    CardSettings,
    CryptoExchangeSettings,
    OnchainRecipients,
    OnchainSettings,
    PlanPaySettings,
    PriceSettings,
    SweeperSettings,
)
from planpay.database import Database
from planpay.orchestrator import build_orchestrator

from fakes import (
    CARD_WEBHOOK_SECRET,
    EXCHANGE_API_KEY,
    EXCHANGE_SECRET,
    JWT_SECRET,
    RECIPIENT,
    FakeProviders,
)

USER_ID = "user-1"


class FakeClock:
    """Settable clock handed to the orchestrator."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, 0))


@pytest.fixture
def settings(tmp_path):
    return PlanPaySettings(
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'planpay.db'}",
        card=CardSettings(secret_key="sk_test_123", webhook_secret=CARD_WEBHOOK_SECRET),
        crypto_exchange=CryptoExchangeSettings(api_key=EXCHANGE_API_KEY, api_secret=EXCHANGE_SECRET),
        onchain=OnchainSettings(recipient=OnchainRecipients(sepolia=RECIPIENT)),
        price=PriceSettings(static_rates={"ETH": Decimal("2000")}, live_rates_enabled=False),
        auth=AuthSettings(jwt_secret=JWT_SECRET),
        sweeper=SweeperSettings(enabled=False),
    )


@pytest.fixture
async def database(settings):
    db = Database(settings.database_url)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
async def plans(database):
    async with database.session() as session:
        async with session.begin():
            await store.save_plan(
                session,
                "starter",
                name="Starter",
                description="500 points",
                price=1999,
                currency="USD",
                points_amount=500,
                benefits=["points"],
            )
            await store.save_plan(
                session,
                "pro",
                name="Pro",
                description="Premium access and 100 points",
                price=1000,
                currency="USD",
                points_amount=100,
                plan_type="premium",
                benefits=["points", "premium_access"],
            )
            await store.save_plan(
                session,
                "retired",
                name="Retired",
                price=500,
                currency="USD",
                points_amount=10,
                benefits=["points"],
                active=False,
            )


@pytest.fixture
def providers():
    return FakeProviders()


@pytest.fixture
async def orchestrator(settings, database, plans, providers, clock):
    orch = build_orchestrator(settings, database=database, transport=providers.transport, clock=clock)
    yield orch
    await orch.close()


@pytest.fixture
def app(settings, orchestrator):
    return create_app(settings, orchestrator=orchestrator, configure_logging=False)


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as c:
        yield c


@pytest.fixture
def auth_headers(settings):
    return {"Authorization": f"Bearer {issue_token(USER_ID, settings.auth)}"}
