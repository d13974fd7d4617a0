"""
Fiat to token price quotes for on-chain payments.

Rates resolve in this order:
1. Stablecoins are pegged 1:1 to USD
2. Configured static rate (price.static_rates)
3. Cached live rate younger than price.cache_ttl_seconds
4. Live rate from CoinGecko
5. Stale cached rate
6. Hardcoded fallback

A quote is only honored until its price_ttl; it is persisted on the order
that consumed it and nowhere else.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_UP, Decimal
from typing import Dict, Optional, Union

import httpx

from .chain.networks import get_network, token_decimals
from .config import OnchainSettings, PriceSettings
from .errors import ErrorKind, Failure
from .models import PriceQuote, to_unix, utcnow

logger = logging.getLogger(__name__)

STABLECOINS = frozenset({"USDT", "USDC", "DAI", "BUSD"})

COINGECKO_IDS: Dict[str, str] = {
    "ETH": "ethereum",
    "BNB": "binancecoin",
    "MATIC": "matic-network",
    "POL": "matic-network",
}

FALLBACK_PRICES: Dict[str, Decimal] = {
    "ETH": Decimal("2000"),
    "BNB": Decimal("300"),
    "MATIC": Decimal("0.50"),
    "POL": Decimal("0.50"),
}

# Quotes are rounded up to this many token decimal places
QUOTE_PRECISION = Decimal("0.000001")

GAS_LIMIT_NATIVE = 21_000
GAS_LIMIT_TOKEN = 65_000
TYPICAL_GAS_PRICE_GWEI: Dict[int, int] = {
    1: 30,
    56: 3,
    137: 50,
    11155111: 10,
    80002: 30,
}


@dataclass
class PriceEntry:
    price_usd: Decimal
    fetched_at: float
    source: str  # "static", "live", "fallback"


class PriceOracle:
    def __init__(
        self,
        settings: PriceSettings,
        onchain: OnchainSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._settings = settings
        self._onchain = onchain
        self._cache: Dict[str, PriceEntry] = {}
        self._lock = asyncio.Lock()
        self._client = httpx.AsyncClient(
            base_url=settings.coingecko_url,
            timeout=settings.timeout_seconds,
            transport=transport,
        )

    async def get_price_usd(self, symbol: str) -> Decimal:
        symbol = symbol.upper()
        if symbol in STABLECOINS:
            return Decimal("1")

        static = self._settings.static_rates.get(symbol)
        if static is not None:
            return Decimal(static)

        cached = self._cache.get(symbol)
        if cached and (time.monotonic() - cached.fetched_at) < self._settings.cache_ttl_seconds:
            return cached.price_usd

        async with self._lock:
            cached = self._cache.get(symbol)
            if cached and (time.monotonic() - cached.fetched_at) < self._settings.cache_ttl_seconds:
                return cached.price_usd

            if self._settings.live_rates_enabled:
                live = await self._fetch_live_price(symbol)
                if live is not None:
                    self._cache[symbol] = PriceEntry(live, time.monotonic(), "live")
                    return live

        if cached:
            logger.warning("Using stale cached price for %s: $%s (source=%s)", symbol, cached.price_usd, cached.source)
            return cached.price_usd

        fallback = FALLBACK_PRICES.get(symbol, Decimal("2000"))
        logger.warning(
            "Using hardcoded fallback price for %s: $%s. Set price.static_rates for accuracy.",
            symbol,
            fallback,
        )
        self._cache[symbol] = PriceEntry(fallback, time.monotonic(), "fallback")
        return fallback

    async def _fetch_live_price(self, symbol: str) -> Optional[Decimal]:
        coingecko_id = COINGECKO_IDS.get(symbol)
        if not coingecko_id:
            return None
        try:
            response = await self._client.get(
                "/simple/price",
                params={"ids": coingecko_id, "vs_currencies": "usd"},
            )
            if response.status_code != 200:
                logger.debug("CoinGecko returned %s for %s", response.status_code, symbol)
                return None
            price = response.json().get(coingecko_id, {}).get("usd")
            if price is None:
                return None
            return Decimal(str(price))
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("CoinGecko lookup for %s failed: %s", symbol, e)
            return None

    def gas_estimate(self, chain_id: int, native: bool) -> Decimal:
        """Rough network fee in native token units."""
        gwei = TYPICAL_GAS_PRICE_GWEI.get(chain_id, 30)
        limit = GAS_LIMIT_NATIVE if native else GAS_LIMIT_TOKEN
        return (Decimal(limit) * gwei).scaleb(-9).normalize()

    async def quote(
        self,
        currency: str,
        fiat_amount: int,
        chain_id: int,
        fiat_currency: str = "USD",
        now: Optional[datetime] = None,
    ) -> Union[PriceQuote, Failure]:
        """Token amount (minor units) owed for ``fiat_amount`` cents."""
        network = get_network(chain_id)
        if network is None:
            return Failure(ErrorKind.UNSUPPORTED_CHAIN, f"Unsupported chain {chain_id}")
        symbol = currency.upper()
        decimals = token_decimals(chain_id, symbol, self._onchain)
        if decimals is None:
            return Failure.validation(f"Token {symbol} is not accepted on {network.name}", currency=symbol)
        if fiat_amount <= 0:
            return Failure.validation("Amount must be positive", fiat_amount=fiat_amount)

        rate = await self.get_price_usd(symbol)
        if rate <= 0:
            return Failure(ErrorKind.INTERNAL, f"No usable rate for {symbol}")

        fiat_major = Decimal(fiat_amount).scaleb(-2)
        token_major = (fiat_major / rate).quantize(QUOTE_PRECISION, rounding=ROUND_UP)
        token_minor = int(token_major.scaleb(decimals))

        issued_at = now or utcnow()
        return PriceQuote(
            currency=symbol,
            fiat_amount=fiat_amount,
            fiat_currency=fiat_currency,
            token_amount=token_minor,
            token_decimals=decimals,
            exchange_rate=rate,
            gas_estimate=self.gas_estimate(chain_id, native=symbol == network.native_symbol),
            price_ttl=to_unix(issued_at) + self._settings.quote_ttl_seconds,
        )

    async def close(self) -> None:
        await self._client.aclose()
