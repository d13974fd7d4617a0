"""Grants and revokes what an order buys.

Runs inside the caller's transaction; it never commits. It is the only
writer of user points, entitlements and the points journal.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .database.models import EntitlementDB, OrderDB, PointsJournalDB, UserDB
from .models import utcnow
from .store import get_user

logger = logging.getLogger(__name__)

PREMIUM_ACCESS = "premium_access"
POINTS = "points"
PREMIUM_ACCESS_PERIOD = timedelta(days=30)


class EntitlementEngine:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    async def _locked_user(self, session: AsyncSession, user_id: str) -> UserDB:
        user = await get_user(session, user_id, lock=True)
        if user is None:
            user = UserDB(user_id=user_id, points=0)
            session.add(user)
            await session.flush()
        return user

    def _benefit_kinds(self, order: OrderDB) -> List[str]:
        kinds = list(dict.fromkeys(order.benefits or []))
        if not kinds and order.points:
            kinds = [POINTS]
        return kinds

    async def grant(self, session: AsyncSession, order: OrderDB) -> int:
        """Create the order's entitlements and credit its points."""
        now = self._clock()
        for kind in self._benefit_kinds(order):
            if kind == PREMIUM_ACCESS:
                value, expires_at = "30d", now + PREMIUM_ACCESS_PERIOD
            elif kind == POINTS:
                value, expires_at = str(order.points), None
            else:
                value, expires_at = None, None
            session.add(
                EntitlementDB(
                    entitlement_id=f"ent_{uuid.uuid4().hex}",
                    user_id=order.user_id,
                    order_id=order.order_id,
                    kind=kind,
                    value=value,
                    active=True,
                    expires_at=expires_at,
                    created_at=now,
                )
            )

        user = await self._locked_user(session, order.user_id)
        user.points = (user.points or 0) + order.points
        user.updated_at = now
        session.add(
            PointsJournalDB(
                user_id=order.user_id,
                order_id=order.order_id,
                reason="grant",
                delta=order.points,
                applied=order.points,
                balance_after=user.points,
                created_at=now,
            )
        )
        logger.info("Granted %s points to %s for %s", order.points, order.user_id, order.order_number)
        return order.points

    async def revoke(self, session: AsyncSession, order: OrderDB) -> int:
        """Deactivate the order's entitlements and debit its points, never below zero.

        Returns the number of points actually removed.
        """
        now = self._clock()
        result = await session.execute(
            select(EntitlementDB).where(
                EntitlementDB.order_id == order.order_id,
                EntitlementDB.active.is_(True),
            )
        )
        for entitlement in result.scalars().all():
            entitlement.active = False
            entitlement.revoked_at = now

        user = await self._locked_user(session, order.user_id)
        before = user.points or 0
        user.points = max(0, before - order.points)
        user.updated_at = now
        removed = before - user.points
        if removed < order.points:
            logger.warning(
                "Refund of %s debited %s of %s points from %s; balance already spent",
                order.order_number,
                removed,
                order.points,
                order.user_id,
            )
        session.add(
            PointsJournalDB(
                user_id=order.user_id,
                order_id=order.order_id,
                reason="revoke",
                delta=-order.points,
                applied=-removed,
                balance_after=user.points,
                created_at=now,
            )
        )
        logger.info("Revoked entitlements of %s for %s", order.order_number, order.user_id)
        return removed
