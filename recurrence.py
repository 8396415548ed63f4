import logging
import uuid
from calendar import monthrange
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta
from typing import Optional

from ledger import RecurringRule, Store, Transaction
from models import IntervalUnit, TransactionType
from periods import local_now, local_today

logger = logging.getLogger(__name__)

POSTING_TIME = time(12, 0)
MAX_CATCH_UP = 365
UPCOMING_DAYS = 7

FREQUENCY_LABELS = {
    IntervalUnit.day: "Daily",
    IntervalUnit.week: "Weekly",
    IntervalUnit.month: "Monthly",
    IntervalUnit.year: "Yearly",
}


@dataclass(frozen=True)
class RecurringTotals:
    income: int
    expense: int


def _add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(desired_day, monthrange(year, month)[1]))


def calculate_next_date(rule: RecurringRule, from_date: date) -> date:
    if rule.interval_unit == IntervalUnit.day:
        return from_date + timedelta(days=rule.interval_count)
    if rule.interval_unit == IntervalUnit.week:
        return from_date + timedelta(weeks=rule.interval_count)
    months = rule.interval_count
    if rule.interval_unit == IntervalUnit.year:
        months *= 12
    return _add_months(from_date, months, desired_day=rule.start_date.day)


def occurrence_id(rule: RecurringRule, on: date) -> uuid.UUID:
    """Stable id per rule and date, so replicas post the same transaction."""
    return uuid.uuid5(rule.id, on.isoformat())


def occurrence_note(rule: RecurringRule) -> str:
    note = rule.note.strip()
    if note:
        return note
    return f"Auto-generated - {FREQUENCY_LABELS[rule.interval_unit]}"


def _within_end(rule: RecurringRule, on: date) -> bool:
    return rule.end_date is None or on <= rule.end_date


def is_due(rule: RecurringRule, today: date) -> bool:
    return (
        rule.active
        and rule.next_occurrence <= today
        and _within_end(rule, rule.next_occurrence)
    )


def catch_up_rule(
    store: Store,
    rule: RecurringRule,
    *,
    today: date,
    modified_at: Optional[datetime] = None,
) -> tuple[RecurringRule, list[Transaction]]:
    """Build every missed occurrence of `rule` up to and including `today`.

    Occurrences already in the store, or deleted from it, are skipped. Returns
    the rule advanced past `today` and the transactions to add.
    """
    stamp = modified_at or local_now()
    known = {t.id for t in store.transactions}
    dead = set(store.deleted_transaction_ids)
    posted: list[Transaction] = []
    current = rule.next_occurrence
    iterations = 0
    while current <= today and iterations < MAX_CATCH_UP:
        if not _within_end(rule, current):
            break
        txn_id = occurrence_id(rule, current)
        if txn_id not in known and str(txn_id) not in dead:
            posted.append(
                Transaction(
                    amount=rule.amount,
                    date=datetime.combine(current, POSTING_TIME),
                    category=rule.category,
                    note=occurrence_note(rule),
                    payment_method=rule.payment_method,
                    type=rule.type,
                    id=txn_id,
                    last_modified=stamp,
                )
            )
        current = calculate_next_date(rule, current)
        iterations += 1
    return replace(rule, next_occurrence=current), posted


def skip_missed(rule: RecurringRule, today: date) -> RecurringRule:
    """Move `next_occurrence` to the first date on or after `today`."""
    current = rule.next_occurrence
    iterations = 0
    while current < today and iterations < MAX_CATCH_UP:
        current = calculate_next_date(rule, current)
        iterations += 1
    return replace(rule, next_occurrence=current)


def post_due_rules(
    store: Store,
    *,
    today: Optional[date] = None,
    modified_at: Optional[datetime] = None,
) -> list[Transaction]:
    """Post the missed occurrences of every active rule into `store`."""
    today = today or local_today()
    posted: list[Transaction] = []
    for idx, rule in enumerate(store.recurring_rules):
        if not is_due(rule, today):
            continue
        advanced, created = catch_up_rule(
            store, rule, today=today, modified_at=modified_at
        )
        store.recurring_rules[idx] = advanced
        store.transactions.extend(created)
        posted.extend(created)
        logger.info(
            f"recurring_posted: rule={rule.id} count={len(created)} "
            f"next={advanced.next_occurrence.isoformat()}"
        )
    return posted


def has_due_rules(store: Store, *, today: Optional[date] = None) -> bool:
    today = today or local_today()
    return any(is_due(rule, today) for rule in store.recurring_rules)


def upcoming(
    store: Store, *, today: Optional[date] = None, days: int = UPCOMING_DAYS
) -> list[tuple[date, RecurringRule]]:
    """Occurrences of active rules falling on today or the next `days - 1` days."""
    today = today or local_today()
    horizon = today + timedelta(days=days)
    found: list[tuple[date, RecurringRule]] = []
    for rule in store.recurring_rules:
        if not rule.active:
            continue
        current = rule.next_occurrence
        iterations = 0
        while current < horizon and iterations < MAX_CATCH_UP:
            if not _within_end(rule, current):
                break
            if current >= today:
                found.append((current, rule))
            current = calculate_next_date(rule, current)
            iterations += 1
    return sorted(found, key=lambda item: item[0])


def monthly_amount(rule: RecurringRule) -> int:
    count = rule.interval_count
    if rule.interval_unit == IntervalUnit.day:
        return rule.amount * 30 // count
    if rule.interval_unit == IntervalUnit.week:
        return rule.amount * 4 // count
    if rule.interval_unit == IntervalUnit.month:
        return rule.amount // count
    return rule.amount // (12 * count)


def monthly_recurring_total(store: Store) -> RecurringTotals:
    income = expense = 0
    for rule in store.recurring_rules:
        if not rule.active:
            continue
        if rule.type == TransactionType.income:
            income += monthly_amount(rule)
        else:
            expense += monthly_amount(rule)
    return RecurringTotals(income=income, expense=expense)
