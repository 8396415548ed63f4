from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class TransactionType(str, Enum):
    expense = "expense"
    income = "income"


class PaymentMethod(str, Enum):
    cash = "cash"
    card = "card"


class BuiltinCategory(str, Enum):
    groceries = "groceries"
    rent = "rent"
    bills = "bills"
    transport = "transport"
    health = "health"
    education = "education"
    dining = "dining"
    shopping = "shopping"
    other = "other"


class IntervalUnit(str, Enum):
    day = "day"
    week = "week"
    month = "month"
    year = "year"


class Level(str, Enum):
    ok = "ok"
    watch = "watch"
    risk = "risk"

    @property
    def rank(self) -> int:
        return {"ok": 1, "watch": 2, "risk": 3}[self.value]


class AlertState(str, Enum):
    none = "none"
    t70 = "t70"
    t80 = "t80"
    near = "near"
    over = "over"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class LedgerSnapshot(Base, TimestampMixin):
    __tablename__ = "ledger_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    payload: Mapped[str] = mapped_column(Text, nullable=False)


class AlertStateRecord(Base, TimestampMixin):
    __tablename__ = "alert_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ledger_key: Mapped[str] = mapped_column(String(120), nullable=False)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    scope: Mapped[str] = mapped_column(String(200), nullable=False)
    state: Mapped[str] = mapped_column(String(10), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "ledger_key", "month", "scope", name="uq_alert_state_ledger_month_scope"
        ),
        Index("ix_alert_state_ledger_month", "ledger_key", "month"),
    )


class ImportHistoryEntry(Base, TimestampMixin):
    __tablename__ = "import_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ledger_key: Mapped[str] = mapped_column(String(120), nullable=False)
    digest: Mapped[str] = mapped_column(String(64), nullable=False)
    row_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("ledger_key", "digest", name="uq_import_history_digest"),
    )
