"""Persistence layer: SQLAlchemy schema and engine lifecycle."""

from .models import (
    Base,
    EntitlementDB,
    OrderDB,
    PaymentDB,
    PlanDB,
    PointsJournalDB,
    SettlementRecordDB,
    TransactionDB,
    UserDB,
)
from .session import Database

__all__ = [
    "Base",
    "Database",
    "EntitlementDB",
    "OrderDB",
    "PaymentDB",
    "PlanDB",
    "PointsJournalDB",
    "SettlementRecordDB",
    "TransactionDB",
    "UserDB",
]
