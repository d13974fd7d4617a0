"""Payment provider adapters, dispatched by :class:`PaymentMethod`."""
from __future__ import annotations

from typing import Dict, Optional

import httpx

from planpay.config import PlanPaySettings
from planpay.models import PaymentMethod
from planpay.pricing import PriceOracle

from .base import ProviderAdapter
from .card import CardAdapter
from .crypto_exchange import CryptoExchangeAdapter
from .onchain import OnchainAdapter

Adapters = Dict[PaymentMethod, ProviderAdapter]


def build_adapters(
    settings: PlanPaySettings,
    oracle: PriceOracle,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Adapters:
    return {
        PaymentMethod.CARD: CardAdapter(settings.card, settings.public_base_url, transport=transport),
        PaymentMethod.CRYPTO_EXCHANGE: CryptoExchangeAdapter(settings.crypto_exchange, transport=transport),
        PaymentMethod.ONCHAIN: OnchainAdapter(settings.onchain, oracle),
    }


__all__ = [
    "Adapters",
    "CardAdapter",
    "CryptoExchangeAdapter",
    "OnchainAdapter",
    "ProviderAdapter",
    "build_adapters",
]
