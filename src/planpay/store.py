"""Queries over the planpay schema.

Every function takes the caller's session; none of them commit. Callers own
the transaction boundary so that Order, Payment and User writes land
together.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from .database.models import (
    SETTLEMENT_CONSTRAINT,
    EntitlementDB,
    OrderDB,
    PaymentDB,
    PlanDB,
    SettlementRecordDB,
    TransactionDB,
    UserDB,
)
from .errors import ErrorKind, Failure
from .models import SettlementEvent, utcnow

# Payment columns that hold provider-side identifiers
EXTERNAL_ID_COLUMNS = {
    "provider_session_id": PaymentDB.provider_session_id,
    "provider_prepay_id": PaymentDB.provider_prepay_id,
    "provider_transaction_id": PaymentDB.provider_transaction_id,
    "tx_hash": PaymentDB.tx_hash,
}


def payment_external_ids(payment: PaymentDB) -> Dict[str, str]:
    return {key: getattr(payment, key) for key in EXTERNAL_ID_COLUMNS if getattr(payment, key)}


async def get_plan(session: AsyncSession, plan_id: str) -> Optional[PlanDB]:
    return await session.get(PlanDB, plan_id)


async def plan_in_use(session: AsyncSession, plan_id: str) -> bool:
    stmt = select(OrderDB.order_id).where(OrderDB.plan_id == plan_id).limit(1)
    return (await session.scalar(stmt)) is not None


async def save_plan(session: AsyncSession, plan_id: str, **fields: Any) -> Union[PlanDB, Failure]:
    """Insert a plan, or update it in place while no order references it.

    Once ordered, a plan may only be switched on or off; any other change
    needs a new plan_id.
    """
    plan = await get_plan(session, plan_id)
    if plan is None:
        plan = PlanDB(plan_id=plan_id, **fields)
        session.add(plan)
    else:
        changed = sorted(key for key, value in fields.items() if getattr(plan, key) != value)
        frozen = [key for key in changed if key != "active"]
        if frozen and await plan_in_use(session, plan_id):
            return Failure(
                ErrorKind.STATE_CONFLICT,
                f"Plan {plan_id} is referenced by orders; create a new plan_id instead",
                {"plan_id": plan_id, "fields": frozen},
            )
        for key in changed:
            setattr(plan, key, fields[key])
    await session.flush()
    return plan


async def get_user(session: AsyncSession, user_id: str, lock: bool = False) -> Optional[UserDB]:
    stmt = select(UserDB).where(UserDB.user_id == user_id)
    if lock:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def ensure_user(session: AsyncSession, user_id: str) -> UserDB:
    user = await get_user(session, user_id)
    if user is None:
        user = UserDB(user_id=user_id, points=0)
        session.add(user)
        await session.flush()
    return user


async def get_order(session: AsyncSession, order_id: str) -> Optional[OrderDB]:
    return await session.get(OrderDB, order_id)


async def get_payment(session: AsyncSession, payment_id: str) -> Optional[PaymentDB]:
    return await session.get(PaymentDB, payment_id)


async def get_payment_for_order(session: AsyncSession, order_id: str) -> Optional[PaymentDB]:
    result = await session.execute(select(PaymentDB).where(PaymentDB.order_id == order_id))
    return result.scalar_one_or_none()


async def lock_payment_for_order(session: AsyncSession, order_id: str) -> Optional[PaymentDB]:
    stmt = select(PaymentDB).where(PaymentDB.order_id == order_id).with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def lock_payment(
    session: AsyncSession,
    payment_number: Optional[str] = None,
    external_ids: Optional[Mapping[str, str]] = None,
) -> Optional[PaymentDB]:
    """Row-lock the payment addressed by trade number or provider id."""
    if payment_number:
        stmt = select(PaymentDB).where(PaymentDB.payment_number == payment_number)
        result = await session.execute(stmt.with_for_update())
        payment = result.scalar_one_or_none()
        if payment is not None:
            return payment

    for key, value in (external_ids or {}).items():
        column = EXTERNAL_ID_COLUMNS.get(key)
        if column is None or not value:
            continue
        stmt = select(PaymentDB).where(column == value).with_for_update()
        result = await session.execute(stmt)
        payment = result.scalars().first()
        if payment is not None:
            return payment
    return None


async def swap_payment_status(session: AsyncSession, payment: PaymentDB, expected: str, **values: Any) -> bool:
    """Compare-and-set on Payment.status.

    Returns False, leaving ``payment`` untouched, when another writer moved
    the row away from ``expected`` first.
    """
    result = await session.execute(
        update(PaymentDB)
        .where(PaymentDB.payment_id == payment.payment_id, PaymentDB.status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    for key, value in values.items():
        set_committed_value(payment, key, value)
    return True


async def lock_order(session: AsyncSession, order_id: str) -> Optional[OrderDB]:
    stmt = select(OrderDB).where(OrderDB.order_id == order_id).with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_orders(
    session: AsyncSession,
    user_id: str,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[Tuple[OrderDB, Optional[PaymentDB]]], int]:
    filters = [OrderDB.user_id == user_id]
    if status:
        filters.append(OrderDB.status == status)

    total = await session.scalar(select(func.count()).select_from(OrderDB).where(*filters))

    stmt = (
        select(OrderDB, PaymentDB)
        .outerjoin(PaymentDB, PaymentDB.order_id == OrderDB.order_id)
        .where(*filters)
        .order_by(OrderDB.created_at.desc(), OrderDB.order_id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return [(row[0], row[1]) for row in result.all()], int(total or 0)


async def stale_payment_numbers(session: AsyncSession, now: datetime, limit: int = 100) -> Sequence[str]:
    stmt = (
        select(PaymentDB.payment_number)
        .where(PaymentDB.status == "PENDING", PaymentDB.expires_at < now)
        .order_by(PaymentDB.expires_at)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_transaction(session: AsyncSession, tx_hash: str) -> Optional[TransactionDB]:
    result = await session.execute(select(TransactionDB).where(TransactionDB.tx_hash == tx_hash.lower()))
    return result.scalar_one_or_none()


async def get_transaction_for_order(session: AsyncSession, order_id: str) -> Optional[TransactionDB]:
    stmt = (
        select(TransactionDB)
        .where(TransactionDB.order_id == order_id)
        .order_by(TransactionDB.created_at.desc())
    )
    result = await session.execute(stmt)
    return result.scalars().first()


async def list_entitlements(session: AsyncSession, user_id: str, active_only: bool = True) -> List[EntitlementDB]:
    stmt = select(EntitlementDB).where(EntitlementDB.user_id == user_id)
    if active_only:
        stmt = stmt.where(EntitlementDB.active.is_(True))
    result = await session.execute(stmt.order_by(EntitlementDB.created_at))
    return list(result.scalars().all())


async def settlement_seen(session: AsyncSession, provider: str, provider_event_id: str) -> bool:
    stmt = select(SettlementRecordDB.id).where(
        SettlementRecordDB.provider == provider,
        SettlementRecordDB.provider_event_id == provider_event_id,
    )
    return (await session.scalar(stmt)) is not None


def is_settlement_conflict(error: IntegrityError) -> bool:
    """True when ``error`` is a second insert of the same (provider, event id)."""
    message = str(error.orig)
    # PostgreSQL names the constraint, SQLite names the columns
    return SETTLEMENT_CONSTRAINT in message or "settlement_records.provider_event_id" in message


def record_settlement(
    session: AsyncSession,
    event: SettlementEvent,
    payment_number: Optional[str],
    outcome: str,
) -> None:
    session.add(
        SettlementRecordDB(
            provider=event.provider.value,
            provider_event_id=event.provider_event_id,
            provider_event_kind=event.provider_event_kind,
            payment_number=payment_number,
            kind=event.kind.value,
            outcome=outcome,
            received_at=utcnow(),
        )
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def order_to_dict(order: OrderDB) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "order_id": order.order_id,
        "order_number": order.order_number,
        "user_id": order.user_id,
        "plan_id": order.plan_id,
        "plan_name": order.plan_name,
        "amount": order.amount,
        "currency": order.currency,
        "points": order.points,
        "benefits": list(order.benefits or []),
        "method": order.method,
        "status": order.status,
        "created_at": _iso(order.created_at),
        "updated_at": _iso(order.updated_at),
        "paid_at": _iso(order.paid_at),
        "expires_at": _iso(order.expires_at),
    }
    if order.chain_id is not None:
        data.update(
            chain_id=order.chain_id,
            recipient_address=order.recipient_address,
            token_currency=order.token_currency,
            token_amount=order.token_amount,
            token_decimals=order.token_decimals,
            exchange_rate=order.exchange_rate,
            price_ttl=order.price_ttl,
        )
    return data


def payment_to_dict(payment: PaymentDB) -> Dict[str, Any]:
    return {
        "payment_id": payment.payment_id,
        "payment_number": payment.payment_number,
        "order_id": payment.order_id,
        "method": payment.method,
        "amount": payment.amount,
        "currency": payment.currency,
        "status": payment.status,
        "external_ids": payment_external_ids(payment),
        "artifact": payment.artifact,
        "created_at": _iso(payment.created_at),
        "expires_at": _iso(payment.expires_at),
        "paid_at": _iso(payment.paid_at),
    }


def transaction_to_dict(tx: TransactionDB) -> Dict[str, Any]:
    return {
        "tx_hash": tx.tx_hash,
        "order_id": tx.order_id,
        "chain_id": tx.chain_id,
        "from_address": tx.from_address,
        "to_address": tx.to_address,
        "amount": tx.amount,
        "currency": tx.currency,
        "block_number": tx.block_number,
        "confirmations": tx.confirmations,
        "status": tx.status,
        "gas_used": tx.gas_used,
        "gas_price": tx.gas_price,
        "created_at": _iso(tx.created_at),
        "confirmed_at": _iso(tx.confirmed_at),
    }


def entitlement_to_dict(ent: EntitlementDB) -> Dict[str, Any]:
    return {
        "entitlement_id": ent.entitlement_id,
        "order_id": ent.order_id,
        "kind": ent.kind,
        "value": ent.value,
        "active": ent.active,
        "expires_at": _iso(ent.expires_at),
        "created_at": _iso(ent.created_at),
        "revoked_at": _iso(ent.revoked_at),
    }
