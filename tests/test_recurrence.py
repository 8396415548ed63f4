from datetime import date, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from alerts import InMemoryAlertStateStore, LoggingNotificationSink
from database import Base
from dedup import merge_stores
from ledger import Builtin, Custom, RecurringRule, Store
from models import BuiltinCategory, IntervalUnit, TransactionType
from recurrence import (
    calculate_next_date,
    has_due_rules,
    monthly_recurring_total,
    post_due_rules,
    skip_missed,
    upcoming,
)
from schemas import StoreRecord
from services import AlertService, LedgerRepository, RecurringService

RENT = Builtin(BuiltinCategory.rent)
TODAY = date(2025, 4, 10)
STAMP = datetime(2025, 4, 10, 8)


def _rule(unit=IntervalUnit.month, start=date(2025, 1, 15), **kwargs) -> RecurringRule:
    kwargs.setdefault("amount", 50_000)
    kwargs.setdefault("category", RENT)
    return RecurringRule(interval_unit=unit, start_date=start, **kwargs)


def test_monthly_rule_snaps_to_month_end_and_recovers() -> None:
    rule = _rule(start=date(2024, 1, 31))
    assert calculate_next_date(rule, date(2024, 1, 31)) == date(2024, 2, 29)
    assert calculate_next_date(rule, date(2024, 2, 29)) == date(2024, 3, 31)

    yearly = _rule(IntervalUnit.year, start=date(2024, 2, 29))
    assert calculate_next_date(yearly, date(2024, 2, 29)) == date(2025, 2, 28)

    fortnightly = _rule(IntervalUnit.week, interval_count=2)
    assert calculate_next_date(fortnightly, date(2025, 4, 1)) == date(2025, 4, 15)


def test_rule_validation() -> None:
    with pytest.raises(ValueError):
        _rule(amount=0)
    with pytest.raises(ValueError):
        _rule(interval_count=0)
    with pytest.raises(ValueError):
        _rule(end_date=date(2025, 1, 1))
    assert _rule().next_occurrence == date(2025, 1, 15)


def test_post_due_rules_catches_up_missed_months_once() -> None:
    store = Store()
    store.add_recurring(_rule())

    posted = post_due_rules(store, today=TODAY, modified_at=STAMP)
    assert [t.date for t in posted] == [
        datetime(2025, 1, 15, 12),
        datetime(2025, 2, 15, 12),
        datetime(2025, 3, 15, 12),
    ]
    assert {t.note for t in posted} == {"Auto-generated - Monthly"}
    assert all(t.last_modified == STAMP for t in posted)
    assert len(store.transactions) == 3
    assert store.recurring_rules[0].next_occurrence == date(2025, 4, 15)

    assert post_due_rules(store, today=TODAY) == []
    assert has_due_rules(store, today=TODAY) is False
    assert has_due_rules(store, today=date(2025, 4, 15)) is True


def test_end_date_and_paused_rules() -> None:
    store = Store()
    store.add_recurring(
        _rule(
            IntervalUnit.day,
            start=date(2025, 4, 1),
            end_date=date(2025, 4, 3),
            amount=500,
            note="Coffee",
        )
    )
    store.add_recurring(_rule(active=False))

    posted = post_due_rules(store, today=TODAY)
    assert [t.day for t in posted] == [
        date(2025, 4, 1),
        date(2025, 4, 2),
        date(2025, 4, 3),
    ]
    assert {t.note for t in posted} == {"Coffee"}
    assert has_due_rules(store, today=date(2025, 12, 31)) is False


def test_deleted_occurrence_is_not_posted_again() -> None:
    store = Store()
    rule = _rule()
    store.add_recurring(rule)
    first, *_ = post_due_rules(store, today=TODAY)
    store.delete(first.id)

    # rewinding the rule must not resurrect anything
    store.update_recurring(rule.id, next_occurrence=rule.start_date)
    assert post_due_rules(store, today=TODAY) == []
    assert len(store.transactions) == 2


def test_upcoming_lists_the_next_week_in_date_order() -> None:
    store = Store()
    weekly = _rule(IntervalUnit.week, start=date(2025, 4, 8), amount=2_000)
    monthly = _rule(start=date(2025, 4, 12))
    store.add_recurring(weekly)
    store.add_recurring(monthly)
    store.add_recurring(_rule(start=date(2025, 4, 11), active=False))

    assert upcoming(store, today=TODAY) == [
        (date(2025, 4, 12), monthly),
        (date(2025, 4, 15), weekly),
    ]


def test_monthly_recurring_total_normalises_frequencies() -> None:
    store = Store()
    store.add_recurring(_rule(IntervalUnit.day, amount=100))
    store.add_recurring(_rule(IntervalUnit.week, amount=1_000))
    store.add_recurring(
        _rule(IntervalUnit.year, amount=12_000, type=TransactionType.income)
    )
    store.add_recurring(
        _rule(amount=50_000, interval_count=2, type=TransactionType.income)
    )
    store.add_recurring(_rule(amount=99_999, active=False))

    totals = monthly_recurring_total(store)
    assert totals.expense == 3_000 + 4_000
    assert totals.income == 1_000 + 25_000


def test_skip_missed_moves_to_first_future_date() -> None:
    rule = _rule()
    assert skip_missed(rule, TODAY).next_occurrence == date(2025, 4, 15)
    assert skip_missed(rule, date(2025, 1, 15)).next_occurrence == date(2025, 1, 15)


def test_rules_follow_custom_category_deletion() -> None:
    store = Store()
    store.add_custom_category("Gym")
    store.add_recurring(_rule(category=Custom("Gym")))
    store.delete_custom_category("Gym")
    assert store.recurring_rules[0].category == Builtin(BuiltinCategory.other)


def test_rules_survive_storage_and_sync() -> None:
    local = Store()
    local.add_recurring(_rule(end_date=date(2025, 12, 15), note="Flat"))
    payload = StoreRecord.from_store(local).to_json()
    assert '"recurringTransactions"' in payload
    decoded = StoreRecord.model_validate_json(payload).to_store()
    assert decoded.recurring_rules == local.recurring_rules

    remote = Store()
    remote.add_recurring(_rule(IntervalUnit.week))
    merged = merge_stores(local, remote)
    assert {r.id for r in merged.recurring_rules} == {
        local.recurring_rules[0].id,
        remote.recurring_rules[0].id,
    }


def test_recurring_service_saves_then_alerts() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    store = Store()
    store.set_budget("2025-03", 10_000)
    store.add_recurring(_rule(start=date(2025, 3, 1), amount=9_000))
    with Session(engine) as session:
        LedgerRepository(session).save_ledger(store, "ledger-a")

    sink = LoggingNotificationSink()
    with Session(engine) as session:
        alerts = AlertService(InMemoryAlertStateStore(), sink)
        service = RecurringService(LedgerRepository(session), alerts, "ledger-a")
        assert service.catch_up_all(today=date(2025, 3, 5)) == 1
        assert service.catch_up_all(today=date(2025, 3, 5)) == 0

    assert [r.identifier for r in sink.delivered] == ["budget-2025-03-overall-t80"]
    with Session(engine) as session:
        saved = LedgerRepository(session).load_ledger("ledger-a")
    assert saved.spent("2025-03") == 9_000
    assert saved.recurring_rules[0].next_occurrence == date(2025, 4, 1)
