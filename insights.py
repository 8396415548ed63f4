from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Optional

from analytics import category_spent, format_currency, format_percent
from forecast import project_end_of_month
from ledger import Store, category_from_key
from models import BuiltinCategory, Level

MIN_TRANSACTIONS_FOR_TRENDS = 5
CONCENTRATION_SHARE = 0.35
NEAR_CAP_RATIO = 0.90
SMALL_EXPENSE_FLOOR = 80_000
SMALL_EXPENSE_COUNT = 8
DISCRETIONARY_SHARE = 0.22
DISCRETIONARY_KEYS = (BuiltinCategory.dining.value, BuiltinCategory.other.value)


@dataclass(frozen=True)
class Insight:
    title: str
    detail: str
    level: Level


@dataclass(frozen=True)
class CapStatus:
    key: str
    title: str
    spent: int
    cap: int

    @property
    def ratio(self) -> float:
        return self.spent / self.cap if self.cap > 0 else 0.0

    @property
    def over_by(self) -> int:
        return max(0, self.spent - self.cap)


def _title_for(key: str) -> str:
    try:
        return category_from_key(key).title
    except ValueError:
        return key


def cap_statuses(store: Store, month: str) -> list[CapStatus]:
    spent = category_spent(store, month)
    return [
        CapStatus(key=key, title=_title_for(key), spent=spent.get(key, 0), cap=cap)
        for key, cap in sorted(store.category_caps(month).items())
    ]


def generate_insights(
    store: Store, month: str, *, today: Optional[date] = None
) -> list[Insight]:
    tx = store.month_transactions(month)
    if not tx:
        return []

    out: list[Insight] = []
    spent_by_key = category_spent(store, month)
    total_spent = sum(spent_by_key.values())

    if len(tx) >= MIN_TRANSACTIONS_FOR_TRENDS:
        proj = project_end_of_month(store, month, today=today)
        if proj.level == Level.risk:
            out.append(
                Insight(
                    "This trend will pressure your budget",
                    "End-of-month projection is above budget. "
                    "Prioritize cutting discretionary costs.",
                    Level.risk,
                )
            )
        elif proj.level == Level.watch:
            out.append(
                Insight(
                    "Approaching the limit",
                    "To stay in control, trim one discretionary category slightly.",
                    Level.watch,
                )
            )
        else:
            out.append(
                Insight(
                    "Good control",
                    "Current trend aligns with your budget. Keep it steady.",
                    Level.ok,
                )
            )

        if total_spent > 0:
            top_key, top_total = max(spent_by_key.items(), key=lambda kv: kv[1])
            share = top_total / total_spent
            if share > CONCENTRATION_SHARE:
                out.append(
                    Insight(
                        f"Spending concentrated in “{_title_for(top_key)}”",
                        f"This category is {format_percent(share)} of monthly "
                        "spending. If reducible, start here.",
                        Level.watch,
                    )
                )

    for status in cap_statuses(store, month):
        if status.spent > status.cap:
            out.append(
                Insight(
                    f"Over budget in “{status.title}”",
                    f"You are {format_currency(status.over_by)} above the "
                    f"{format_currency(status.cap)} cap for this category.",
                    Level.risk,
                )
            )
        elif status.ratio >= NEAR_CAP_RATIO:
            out.append(
                Insight(
                    f"“{status.title}” is near the cap",
                    f"{format_percent(status.ratio)} of the "
                    f"{format_currency(status.cap)} cap is used.",
                    Level.watch,
                )
            )

    small_threshold = max(SMALL_EXPENSE_FLOOR, store.budget(month) // 500)
    # income entries count toward the small-transaction tally too
    smalls = [t for t in tx if t.amount <= small_threshold]
    if len(smalls) >= SMALL_EXPENSE_COUNT:
        small_sum = sum(t.amount for t in smalls)
        out.append(
            Insight(
                "Small expenses are adding up",
                f"You have {len(smalls)} small transactions totaling "
                f"{format_currency(small_sum)}. Set a daily cap for small spending.",
                Level.watch,
            )
        )

    if total_spent > 0:
        optional = sum(spent_by_key.get(key, 0) for key in DISCRETIONARY_KEYS)
        share = optional / total_spent
        if share > DISCRETIONARY_SHARE:
            out.append(
                Insight(
                    "Discretionary costs can be reduced",
                    f"Dining + Other is {format_percent(share)} of spending. "
                    "A 10% cut noticeably reduces pressure.",
                    Level.watch,
                )
            )

    if store.remaining(month) < 0:
        out.append(
            Insight(
                "Over budget",
                "You're above the monthly budget. Firm move: pause non-essential "
                "spending until month end.",
                Level.risk,
            )
        )

    return sorted(out, key=lambda i: i.level.rank, reverse=True)


def quick_actions(
    store: Store, month: str, *, today: Optional[date] = None, limit: int = 3
) -> list[str]:
    tx = store.month_transactions(month)
    if not tx:
        return []

    actions: list[str] = []
    for status in cap_statuses(store, month):
        if status.spent > status.cap:
            actions.append(f"Pause spending in “{status.title}” until month end.")

    if len(tx) >= MIN_TRANSACTIONS_FOR_TRENDS:
        proj = project_end_of_month(store, month, today=today)
        if proj.level == Level.risk:
            actions.append("Set a daily spending cap for the next 7 days.")
            actions.append(
                "Temporarily limit one discretionary category "
                "(Dining / Shopping / Other)."
            )
        spent_by_key = category_spent(store, month)
        if spent_by_key:
            top_key = max(spent_by_key.items(), key=lambda kv: kv[1])[0]
            actions.append(f"Set a weekly cap for “{_title_for(top_key)}”.")

    return actions[:limit]
