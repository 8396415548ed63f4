from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date
from typing import Optional

from analytics import MonthSummary, month_summary
from ledger import Store
from models import Level, TransactionType
from periods import days_in_month, elapsed_days, month_period

MIN_TRIM_SAMPLE = 5
LOW_CUT = 0.10
HIGH_CUT = 0.90


@dataclass(frozen=True)
class Projection:
    projected_total: int
    delta: int
    daily_mean: float
    status_text: str
    level: Level


@dataclass(frozen=True)
class Pressure:
    title: str
    detail: str
    level: Level


def daily_expense_series(
    store: Store, month: str, *, today: Optional[date] = None
) -> list[int]:
    """Expense totals for day 1..elapsed, zero-filled."""
    elapsed = elapsed_days(month, today=today)
    series = [0] * elapsed
    period = month_period(month)
    for txn in store.transactions:
        if txn.type != TransactionType.expense or not period.contains(txn.date):
            continue
        idx = txn.date.day - 1
        if idx < elapsed:
            series[idx] += txn.amount
    return series


def winsorized_mean(values: list[int]) -> float:
    n = len(values)
    if n == 0:
        return 0.0
    if n < MIN_TRIM_SAMPLE:
        return sum(values) / n
    ordered = sorted(values)
    low_idx = math.floor(n * LOW_CUT)
    high_idx = max(low_idx, math.floor(n * HIGH_CUT) - 1)
    low, high = ordered[low_idx], ordered[high_idx]
    clamped = [min(max(v, low), high) for v in values]
    return sum(clamped) / n


def project_end_of_month(
    store: Store, month: str, *, today: Optional[date] = None
) -> Projection:
    budget = store.budget(month)
    if budget == 0:
        spent = store.spent(month)
        return Projection(
            projected_total=spent,
            delta=0,
            daily_mean=0.0,
            status_text="Budget not set",
            level=Level.watch,
        )

    mean = winsorized_mean(daily_expense_series(store, month, today=today))
    # half-up; round() would pick the even neighbour
    projected = math.floor(mean * days_in_month(month) + 0.5)
    delta = projected - budget
    if delta <= 0:
        status, level = "Below monthly budget", Level.ok
    elif delta < budget // 10:
        status, level = "Close to budget limit", Level.watch
    else:
        status, level = "Likely to exceed budget", Level.risk
    return Projection(
        projected_total=projected,
        delta=delta,
        daily_mean=mean,
        status_text=status,
        level=level,
    )


def budget_pressure(summary: MonthSummary) -> Pressure:
    if summary.spent_ratio < 0.75:
        return Pressure(
            "Stable", "Spending is under control. Keep the pattern.", Level.ok
        )
    if summary.spent_ratio < 0.95:
        return Pressure(
            "Needs attention",
            "You're approaching the budget limit. Review discretionary spending.",
            Level.watch,
        )
    return Pressure(
        "Budget pressure",
        "Spending is very high. Reduce non-essential costs.",
        Level.risk,
    )


def month_pressure(
    store: Store, month: str, *, today: Optional[date] = None
) -> Pressure:
    return budget_pressure(month_summary(store, month, today=today))
