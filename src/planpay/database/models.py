"""
SQLAlchemy models for planpay.

Money is stored in integer minor units. On-chain token amounts can exceed
64 bits (wei), so they are stored as decimal strings.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

from planpay.models import utcnow

Base = declarative_base()

SETTLEMENT_CONSTRAINT = "uq_settlement_provider_event"


class PlanDB(Base):
    """Catalog entry. Never mutated once an order references it."""

    __tablename__ = "plans"

    plan_id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False, default="USD")
    points_amount = Column(Integer, nullable=False, default=0)
    plan_type = Column(String(32), nullable=False, default="points")
    benefits = Column(JSON, nullable=False, default=list)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class UserDB(Base):
    __tablename__ = "users"

    user_id = Column(String(64), primary_key=True)
    points = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class OrderDB(Base):
    __tablename__ = "orders"

    order_id = Column(String(64), primary_key=True)
    order_number = Column(String(32), unique=True, nullable=False, index=True)
    user_id = Column(String(64), ForeignKey("users.user_id"), nullable=False, index=True)
    plan_id = Column(String(64), ForeignKey("plans.plan_id"), nullable=False)

    # Snapshot taken at creation
    plan_name = Column(String(255), nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False)
    points = Column(Integer, nullable=False, default=0)
    benefits = Column(JSON, nullable=False, default=list)

    status = Column(String(16), nullable=False, default="PENDING", index=True)
    method = Column(String(32), nullable=False)

    # On-chain quote
    chain_id = Column(Integer, nullable=True)
    recipient_address = Column(String(64), nullable=True)
    token_currency = Column(String(16), nullable=True)
    token_amount = Column(String(80), nullable=True)
    token_decimals = Column(Integer, nullable=True)
    exchange_rate = Column(String(40), nullable=True)
    price_ttl = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    paid_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_orders_user_status", "user_id", "status"),
    )


class PaymentDB(Base):
    __tablename__ = "payments"

    payment_id = Column(String(64), primary_key=True)
    payment_number = Column(String(32), unique=True, nullable=False, index=True)
    order_id = Column(String(64), ForeignKey("orders.order_id"), unique=True, nullable=False)
    user_id = Column(String(64), nullable=False, index=True)
    method = Column(String(32), nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False)
    status = Column(String(16), nullable=False, default="PENDING", index=True)

    provider_session_id = Column(String(255), nullable=True, index=True)
    provider_prepay_id = Column(String(255), nullable=True, index=True)
    provider_transaction_id = Column(String(255), nullable=True, index=True)
    tx_hash = Column(String(80), nullable=True, index=True)
    artifact = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)
    paid_at = Column(DateTime, nullable=True)


class TransactionDB(Base):
    """Observed on-chain transaction relevant to a payment."""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tx_hash = Column(String(80), unique=True, nullable=False)
    order_id = Column(String(64), ForeignKey("orders.order_id"), nullable=False, index=True)
    payment_id = Column(String(64), ForeignKey("payments.payment_id"), nullable=False)
    chain_id = Column(Integer, nullable=False)
    from_address = Column(String(64), nullable=False)
    to_address = Column(String(64), nullable=False)
    amount = Column(String(80), nullable=False)
    currency = Column(String(16), nullable=False)
    block_number = Column(Integer, nullable=True)
    confirmations = Column(Integer, nullable=False, default=0)
    status = Column(String(16), nullable=False, default="PENDING")
    gas_used = Column(String(40), nullable=True)
    gas_price = Column(String(40), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    confirmed_at = Column(DateTime, nullable=True)


class EntitlementDB(Base):
    __tablename__ = "entitlements"

    entitlement_id = Column(String(64), primary_key=True)
    user_id = Column(String(64), ForeignKey("users.user_id"), nullable=False, index=True)
    order_id = Column(String(64), ForeignKey("orders.order_id"), nullable=False, index=True)
    kind = Column(String(32), nullable=False)
    value = Column(String(255), nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    revoked_at = Column(DateTime, nullable=True)


class SettlementRecordDB(Base):
    """One row per provider event id; re-deliveries hit the unique key."""

    __tablename__ = "settlement_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(32), nullable=False)
    provider_event_id = Column(String(255), nullable=False)
    provider_event_kind = Column(String(64), nullable=False)
    payment_number = Column(String(32), nullable=True, index=True)
    kind = Column(String(32), nullable=False)
    outcome = Column(String(32), nullable=False)
    received_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id", name=SETTLEMENT_CONSTRAINT),
    )


class PointsJournalDB(Base):
    __tablename__ = "points_journal"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), ForeignKey("users.user_id"), nullable=False, index=True)
    order_id = Column(String(64), ForeignKey("orders.order_id"), nullable=False, index=True)
    reason = Column(String(16), nullable=False)
    delta = Column(Integer, nullable=False)
    applied = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
