"""Configuration surface for planpay services.

Settings are built once at startup and handed to the components that need
them. Nothing reads the environment after that.
"""
from __future__ import annotations

import os
import warnings
from decimal import Decimal
from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_REQUIRED_CONFIRMATIONS = 3


class CardSettings(BaseModel):
    """Hosted-checkout card provider."""
    secret_key: str = ""
    webhook_secret: str = ""
    api_base: str = "https://api.stripe.com/v1"
    webhook_tolerance_seconds: int = 300
    timeout_seconds: float = 30.0


class CryptoExchangeSettings(BaseModel):
    """Crypto-exchange (Binance Pay) merchant credentials."""
    api_key: str = ""
    api_secret: str = ""
    api_url: str = "https://bpay.binanceapi.com"
    timeout_seconds: float = 30.0


class OnchainRecipients(BaseModel):
    """Merchant receiving address per network. Unset disables the network."""
    ethereum: Optional[str] = None
    bsc: Optional[str] = None
    polygon: Optional[str] = None
    sepolia: Optional[str] = None
    polygon_amoy: Optional[str] = None


class TokenContract(BaseModel):
    address: str
    decimals: int = 6


class OnchainSettings(BaseModel):
    recipient: OnchainRecipients = Field(default_factory=OnchainRecipients)
    required_confirmations: Dict[int, int] = Field(default_factory=dict)
    rpc_urls: Dict[int, str] = Field(default_factory=dict)
    # chain_id -> token symbol -> ERC-20 contract, merged over the built-in table
    token_contracts: Dict[int, Dict[str, TokenContract]] = Field(default_factory=dict)
    rpc_timeout_seconds: float = 15.0

    def recipient_for(self, network_key: str) -> Optional[str]:
        address = getattr(self.recipient, network_key, None)
        return address or None

    def confirmations_for(self, chain_id: int) -> int:
        return self.required_confirmations.get(chain_id, DEFAULT_REQUIRED_CONFIRMATIONS)


class PriceSettings(BaseModel):
    quote_ttl_seconds: int = 900
    # symbol -> USD price; takes precedence over live lookups
    static_rates: Dict[str, Decimal] = Field(default_factory=dict)
    live_rates_enabled: bool = True
    coingecko_url: str = "https://api.coingecko.com/api/v3"
    cache_ttl_seconds: int = 60
    timeout_seconds: float = 10.0


class AuthSettings(BaseModel):
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    user_claim: str = "sub"


class SweeperSettings(BaseModel):
    enabled: bool = True
    interval_seconds: float = 60.0
    batch_size: int = 100


class PlanPaySettings(BaseSettings):
    """Main planpay configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PLANPAY_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
        frozen=True,
    )

    environment: Literal["dev", "test", "staging", "prod"] = "dev"
    api_prefix: str = ""
    public_base_url: str = "http://localhost:3000"
    log_level: str = "INFO"
    log_json: Optional[bool] = None

    database_url: str = "sqlite+aiosqlite:///./planpay.db"
    database_echo: bool = False

    card: CardSettings = Field(default_factory=CardSettings)
    crypto_exchange: CryptoExchangeSettings = Field(default_factory=CryptoExchangeSettings)
    onchain: OnchainSettings = Field(default_factory=OnchainSettings)
    price: PriceSettings = Field(default_factory=PriceSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    sweeper: SweeperSettings = Field(default_factory=SweeperSettings)

    @field_validator("database_url", mode="before")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """Accept Heroku-style and sync driver URLs and use the async drivers."""
        if not v:
            v = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./planpay.db")
        if v.startswith("postgres://"):
            v = v.replace("postgres://", "postgresql+asyncpg://", 1)
        elif v.startswith("postgresql://"):
            v = v.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif v.startswith("sqlite:///"):
            v = v.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        return v

    @model_validator(mode="after")
    def check_production_secrets(self) -> "PlanPaySettings":
        if self.environment in ("staging", "prod"):
            if len(self.auth.jwt_secret) < 32:
                raise ValueError("auth.jwt_secret must be at least 32 characters outside dev/test")
            if self.database_url.startswith("sqlite"):
                warnings.warn(
                    "SQLite is not recommended for production. Set PLANPAY_DATABASE_URL to PostgreSQL.",
                    RuntimeWarning,
                )
        return self

    @property
    def use_json_logs(self) -> bool:
        if self.log_json is not None:
            return self.log_json
        return self.environment not in ("dev", "test")


def load_settings(**overrides) -> PlanPaySettings:
    """Build settings from the environment; keyword overrides win."""
    return PlanPaySettings(**overrides)
