from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Optional

from ledger import Category, Store, Transaction
from models import PaymentMethod, TransactionType
from periods import days_in_month, elapsed_days, is_current_month


@dataclass(frozen=True)
class MonthSummary:
    month: str
    budget: int
    total_spent: int
    income: int
    remaining: int
    daily_avg: int
    spent_ratio: float


@dataclass(frozen=True)
class CategoryRow:
    category: Category
    total: int


@dataclass(frozen=True)
class PaymentRow:
    method: PaymentMethod
    total: int
    share: float


@dataclass(frozen=True)
class DayPoint:
    day: int
    amount: int


@dataclass(frozen=True)
class DayGroup:
    day: date
    title: str
    items: list[Transaction]


def format_currency(cents: int, include_cents: bool = True) -> str:
    if include_cents:
        return f"{cents / 100:,.2f}".replace(",", " ").replace(".", ",")
    return f"{cents / 100:,.0f}".replace(",", " ")


def format_percent(share: float) -> str:
    return f"{share * 100:.0f}%"


def month_summary(
    store: Store, month: str, *, today: Optional[date] = None
) -> MonthSummary:
    budget = store.budget(month)
    total = store.spent(month)
    if is_current_month(month, today=today):
        divisor = elapsed_days(month, today=today)
    else:
        divisor = days_in_month(month)
    ratio = total / budget if budget > 0 else 0.0
    return MonthSummary(
        month=month,
        budget=budget,
        total_spent=total,
        income=store.income(month),
        remaining=store.remaining(month),
        daily_avg=total // max(1, divisor),
        spent_ratio=ratio,
    )


def category_breakdown(store: Store, month: str) -> list[CategoryRow]:
    """Per-category totals of every transaction in the month, largest first.

    Income and expense amounts are summed together.
    """
    totals: dict[Category, int] = defaultdict(int)
    for txn in store.month_transactions(month):
        totals[txn.category] += txn.amount
    rows = [CategoryRow(category=c, total=t) for c, t in totals.items()]
    return sorted(rows, key=lambda r: r.total, reverse=True)


def category_spent(store: Store, month: str) -> dict[str, int]:
    """Expense totals keyed by category storage key."""
    totals: dict[str, int] = defaultdict(int)
    for txn in store.month_transactions(month):
        if txn.type == TransactionType.expense:
            totals[txn.category.key] += txn.amount
    return dict(totals)


def payment_breakdown(store: Store, month: str) -> list[PaymentRow]:
    totals: dict[PaymentMethod, int] = defaultdict(int)
    for txn in store.month_transactions(month):
        totals[txn.payment_method] += txn.amount
    grand_total = sum(totals.values())
    if grand_total == 0:
        return []
    rows = [
        PaymentRow(method=method, total=total, share=total / grand_total)
        for method, total in totals.items()
    ]
    return sorted(rows, key=lambda r: r.total, reverse=True)


def daily_spend_points(store: Store, month: str) -> list[DayPoint]:
    by_day: dict[int, int] = defaultdict(int)
    for txn in store.month_transactions(month):
        if txn.type == TransactionType.expense:
            by_day[txn.date.day] += txn.amount
    return [DayPoint(day=d, amount=by_day[d]) for d in sorted(by_day)]


def group_by_day(transactions: list[Transaction]) -> list[DayGroup]:
    groups: dict[date, list[Transaction]] = defaultdict(list)
    for txn in transactions:
        groups[txn.day].append(txn)
    out = [
        DayGroup(
            day=day,
            title=f"{day:%A}, {day:%b} {day.day}",
            items=sorted(items, key=lambda t: t.date, reverse=True),
        )
        for day, items in groups.items()
    ]
    return sorted(out, key=lambda g: g.day, reverse=True)
