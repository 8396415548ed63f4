from datetime import date, datetime

from analytics import (
    category_breakdown,
    category_spent,
    daily_spend_points,
    format_currency,
    group_by_day,
    month_summary,
    payment_breakdown,
)
from ledger import Builtin, Custom, Store, Transaction
from models import BuiltinCategory, PaymentMethod, TransactionType

GROCERIES = Builtin(BuiltinCategory.groceries)
DINING = Builtin(BuiltinCategory.dining)


def _store() -> Store:
    store = Store()
    store.set_budget("2025-04", 300_000)
    store.add(
        Transaction(amount=30_000, date=datetime(2025, 4, 1, 9), category=GROCERIES)
    )
    store.add(
        Transaction(
            amount=10_000,
            date=datetime(2025, 4, 1, 19),
            category=DINING,
            payment_method=PaymentMethod.cash,
        )
    )
    store.add(
        Transaction(amount=20_000, date=datetime(2025, 4, 5, 12), category=GROCERIES)
    )
    store.add(
        Transaction(
            amount=50_000,
            date=datetime(2025, 4, 6, 12),
            category=Custom("Side job"),
            type=TransactionType.income,
        )
    )
    return store


def test_daily_average_uses_elapsed_days_for_current_month() -> None:
    store = _store()
    summary = month_summary(store, "2025-04", today=date(2025, 4, 10))
    assert summary.total_spent == 60_000
    assert summary.daily_avg == 6_000
    assert summary.income == 50_000
    assert summary.remaining == 290_000
    assert summary.spent_ratio == 0.2


def test_daily_average_uses_full_month_when_finished() -> None:
    store = _store()
    summary = month_summary(store, "2025-04", today=date(2025, 6, 1))
    assert summary.daily_avg == 2_000


def test_zero_budget_gives_zero_ratio() -> None:
    store = Store()
    store.add(
        Transaction(amount=5_000, date=datetime(2025, 4, 2, 12), category=GROCERIES)
    )
    summary = month_summary(store, "2025-04", today=date(2025, 4, 2))
    assert summary.budget == 0
    assert summary.spent_ratio == 0.0
    assert summary.daily_avg == 2_500


def test_category_breakdown_sorted_by_total() -> None:
    rows = category_breakdown(_store(), "2025-04")
    # ties keep newest-first order
    assert [(r.category.key, r.total) for r in rows] == [
        ("custom:Side job", 50_000),
        ("groceries", 50_000),
        ("dining", 10_000),
    ]


def test_category_spent_ignores_income() -> None:
    spent = category_spent(_store(), "2025-04")
    assert spent == {"groceries": 50_000, "dining": 10_000}


def test_payment_breakdown_shares() -> None:
    rows = payment_breakdown(_store(), "2025-04")
    by_method = {r.method: r for r in rows}
    assert by_method[PaymentMethod.card].total == 100_000
    assert by_method[PaymentMethod.cash].total == 10_000
    assert abs(sum(r.share for r in rows) - 1.0) < 1e-9
    assert rows[0].method == PaymentMethod.card


def test_daily_points_skip_days_without_expenses() -> None:
    points = daily_spend_points(_store(), "2025-04")
    assert [(p.day, p.amount) for p in points] == [(1, 40_000), (5, 20_000)]


def test_empty_month_has_no_rows() -> None:
    store = Store()
    assert category_breakdown(store, "2025-04") == []
    assert payment_breakdown(store, "2025-04") == []
    assert daily_spend_points(store, "2025-04") == []


def test_group_by_day_newest_first_with_titles() -> None:
    store = _store()
    groups = group_by_day(store.month_transactions("2025-04"))
    assert [g.day for g in groups] == [
        date(2025, 4, 6),
        date(2025, 4, 5),
        date(2025, 4, 1),
    ]
    assert groups[-1].title == "Tuesday, Apr 1"
    assert [t.amount for t in groups[-1].items] == [10_000, 30_000]


def test_format_currency() -> None:
    assert format_currency(123_456) == "1 234,56"
    assert format_currency(123_456, include_cents=False) == "1 235"
