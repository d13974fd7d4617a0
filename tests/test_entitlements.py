"""Grant/revoke side effects of PAID and REFUNDED orders."""
from datetime import timedelta

import pytest
from sqlalchemy import select

from planpay import store
from planpay.database import EntitlementDB, OrderDB, PointsJournalDB
from planpay.entitlements import EntitlementEngine


async def _order(database, clock, order_id="ord_1", points=100, benefits=("points", "premium_access"), user_id="user-1"):
    async with database.session() as session:
        async with session.begin():
            await store.ensure_user(session, user_id)
            order = OrderDB(
                order_id=order_id,
                order_number=f"ORD-{order_id}",
                user_id=user_id,
                plan_id="pro",
                plan_name="Pro",
                amount=1000,
                currency="USD",
                points=points,
                benefits=list(benefits),
                status="PAID",
                method="CARD",
                created_at=clock(),
                updated_at=clock(),
                expires_at=clock() + timedelta(hours=1),
            )
            session.add(order)
    return order


async def _grant(database, engine, order_id):
    async with database.session() as session:
        async with session.begin():
            order = await store.get_order(session, order_id)
            return await engine.grant(session, order)


async def _revoke(database, engine, order_id):
    async with database.session() as session:
        async with session.begin():
            order = await store.get_order(session, order_id)
            return await engine.revoke(session, order)


async def _points(database, user_id="user-1"):
    async with database.session() as session:
        user = await store.get_user(session, user_id)
        return user.points


async def _journal(database, order_id):
    async with database.session() as session:
        result = await session.execute(
            select(PointsJournalDB).where(PointsJournalDB.order_id == order_id).order_by(PointsJournalDB.id)
        )
        return list(result.scalars().all())


@pytest.fixture
def engine(clock):
    return EntitlementEngine(clock=clock)


class TestGrant:
    async def test_creates_one_entitlement_per_benefit(self, database, plans, engine, clock):
        await _order(database, clock)
        await _grant(database, engine, "ord_1")

        async with database.session() as session:
            rows = await store.list_entitlements(session, "user-1")
        by_kind = {row.kind: row for row in rows}
        assert set(by_kind) == {"points", "premium_access"}
        assert by_kind["points"].value == "100"
        assert by_kind["premium_access"].value == "30d"
        assert by_kind["premium_access"].expires_at == clock() + timedelta(days=30)
        assert by_kind["points"].expires_at is None

    async def test_credits_points_and_journals(self, database, plans, engine, clock):
        await _order(database, clock)
        await _grant(database, engine, "ord_1")

        assert await _points(database) == 100
        journal = await _journal(database, "ord_1")
        assert [(j.reason, j.delta, j.applied, j.balance_after) for j in journal] == [("grant", 100, 100, 100)]

    async def test_points_only_plan_without_benefit_list(self, database, plans, engine, clock):
        await _order(database, clock, benefits=())
        await _grant(database, engine, "ord_1")

        async with database.session() as session:
            rows = await store.list_entitlements(session, "user-1")
        assert [row.kind for row in rows] == ["points"]


class TestRevoke:
    async def test_deactivates_entitlements_and_debits(self, database, plans, engine, clock):
        await _order(database, clock)
        await _grant(database, engine, "ord_1")
        clock.advance(days=2)
        removed = await _revoke(database, engine, "ord_1")

        assert removed == 100
        assert await _points(database) == 0
        async with database.session() as session:
            active = await store.list_entitlements(session, "user-1")
            everything = await store.list_entitlements(session, "user-1", active_only=False)
        assert active == []
        assert all(not row.active and row.revoked_at == clock() for row in everything)

    async def test_debit_clamps_at_zero(self, database, plans, engine, clock, caplog):
        await _order(database, clock)
        await _grant(database, engine, "ord_1")
        # points spent elsewhere
        async with database.session() as session:
            async with session.begin():
                user = await store.get_user(session, "user-1")
                user.points = 30

        with caplog.at_level("WARNING", logger="planpay.entitlements"):
            removed = await _revoke(database, engine, "ord_1")

        assert removed == 30
        assert await _points(database) == 0
        assert "balance already spent" in caplog.text
        journal = await _journal(database, "ord_1")
        revoke = journal[-1]
        assert (revoke.reason, revoke.delta, revoke.applied, revoke.balance_after) == ("revoke", -100, -30, 0)

    async def test_journal_deltas_net_to_zero_after_refund(self, database, plans, engine, clock):
        await _order(database, clock)
        await _grant(database, engine, "ord_1")
        await _revoke(database, engine, "ord_1")

        journal = await _journal(database, "ord_1")
        assert sum(j.delta for j in journal) == 0

    async def test_revoke_leaves_other_orders_alone(self, database, plans, engine, clock):
        await _order(database, clock, order_id="ord_1")
        await _order(database, clock, order_id="ord_2", points=50)
        await _grant(database, engine, "ord_1")
        await _grant(database, engine, "ord_2")
        await _revoke(database, engine, "ord_1")

        assert await _points(database) == 50
        async with database.session() as session:
            result = await session.execute(select(EntitlementDB).where(EntitlementDB.active.is_(True)))
            active = list(result.scalars().all())
        assert {row.order_id for row in active} == {"ord_2"}
