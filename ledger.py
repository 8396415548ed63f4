from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Optional, Union

from models import BuiltinCategory, IntervalUnit, PaymentMethod, TransactionType
from periods import is_past_month, local_now, local_today, month_key, month_period

CUSTOM_PREFIX = "custom:"


@dataclass(frozen=True)
class Builtin:
    tag: BuiltinCategory

    @property
    def key(self) -> str:
        return self.tag.value

    @property
    def title(self) -> str:
        return self.tag.value.capitalize()


@dataclass(frozen=True)
class Custom:
    name: str

    @property
    def key(self) -> str:
        return CUSTOM_PREFIX + self.name

    @property
    def title(self) -> str:
        return self.name


Category = Union[Builtin, Custom]

OTHER = Builtin(BuiltinCategory.other)


def category_from_key(key: str) -> Category:
    if key.startswith(CUSTOM_PREFIX):
        name = key[len(CUSTOM_PREFIX) :]
        if not name:
            raise ValueError("Custom category name is empty")
        return Custom(name)
    try:
        return Builtin(BuiltinCategory(key))
    except ValueError as exc:
        raise ValueError(f"Unknown category key: {key!r}") from exc


@dataclass(frozen=True)
class Transaction:
    amount: int
    date: datetime
    category: Category
    note: str = ""
    payment_method: PaymentMethod = PaymentMethod.card
    type: TransactionType = TransactionType.expense
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    last_modified: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError("Amount must be positive")
        if self.last_modified is None:
            object.__setattr__(self, "last_modified", self.date)

    @property
    def day(self) -> date:
        return self.date.date()

    @property
    def month(self) -> str:
        return month_key(self.date)


@dataclass(frozen=True)
class RecurringRule:
    """Template posting one transaction every `interval_count` units.

    `next_occurrence` is the first date not yet posted. Monthly and yearly
    rules keep the day of `start_date`, snapping to the last day of shorter
    months.
    """

    amount: int
    category: Category
    interval_unit: IntervalUnit
    start_date: date
    interval_count: int = 1
    end_date: Optional[date] = None
    note: str = ""
    payment_method: PaymentMethod = PaymentMethod.card
    type: TransactionType = TransactionType.expense
    active: bool = True
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    next_occurrence: Optional[date] = None

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError("Amount must be positive")
        if self.interval_count < 1:
            raise ValueError("Interval count must be at least 1")
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date is before the start date")
        if self.next_occurrence is None:
            object.__setattr__(self, "next_occurrence", self.start_date)


@dataclass
class Store:
    """Ledger root: transactions plus per-month budgets and category caps.

    Month arguments are `YYYY-MM` keys. The store is an owned value; callers
    hand `snapshot()` copies to analytics and swap whole stores after merges.
    """

    selected_month: str = field(default_factory=lambda: month_key(local_today()))
    budgets_by_month: dict[str, int] = field(default_factory=dict)
    category_budgets_by_month: dict[str, dict[str, int]] = field(default_factory=dict)
    transactions: list[Transaction] = field(default_factory=list)
    custom_category_names: list[str] = field(default_factory=list)
    deleted_transaction_ids: list[str] = field(default_factory=list)
    recurring_rules: list[RecurringRule] = field(default_factory=list)

    def snapshot(self) -> Store:
        return copy.deepcopy(self)

    # budgets

    def budget(self, month: str) -> int:
        return self.budgets_by_month.get(month, 0)

    def set_budget(self, month: str, value: int) -> None:
        self.budgets_by_month[month] = max(0, value)

    def category_budget(self, category: Category, month: str) -> int:
        return self.category_budgets_by_month.get(month, {}).get(category.key, 0)

    def set_category_budget(self, category: Category, month: str, value: int) -> None:
        caps = self.category_budgets_by_month.setdefault(month, {})
        if value <= 0:
            caps.pop(category.key, None)
            if not caps:
                del self.category_budgets_by_month[month]
            return
        caps[category.key] = value

    def category_caps(self, month: str) -> dict[str, int]:
        return {
            key: value
            for key, value in self.category_budgets_by_month.get(month, {}).items()
            if value > 0
        }

    def total_category_budgets(self, month: str) -> int:
        return sum(self.category_caps(month).values())

    # derived amounts

    def month_transactions(self, month: str) -> list[Transaction]:
        period = month_period(month)
        items = [t for t in self.transactions if period.contains(t.date)]
        return sorted(items, key=lambda t: t.date, reverse=True)

    def _total(self, month: str, txn_type: TransactionType) -> int:
        period = month_period(month)
        return sum(
            t.amount
            for t in self.transactions
            if t.type == txn_type and period.contains(t.date)
        )

    def spent(self, month: str) -> int:
        return self._total(month, TransactionType.expense)

    def income(self, month: str) -> int:
        return self._total(month, TransactionType.income)

    def remaining(self, month: str) -> int:
        # Income tops up the month's budget, so remaining may exceed it.
        return self.budget(month) + self.income(month) - self.spent(month)

    def saved(self, month: str, *, today: Optional[date] = None) -> int:
        if not is_past_month(month, today=today):
            return 0
        return max(0, self.remaining(month))

    def total_saved(self, *, today: Optional[date] = None) -> int:
        return sum(self.saved(month, today=today) for month in self.budgets_by_month)

    # mutations

    def add(self, transaction: Transaction) -> None:
        self.transactions.append(transaction)

    def get(self, transaction_id: uuid.UUID) -> Transaction:
        for txn in self.transactions:
            if txn.id == transaction_id:
                return txn
        raise ValueError("Transaction not found")

    def update_transaction(
        self,
        transaction_id: uuid.UUID,
        *,
        modified_at: Optional[datetime] = None,
        **changes: object,
    ) -> Transaction:
        if "id" in changes:
            raise ValueError("Transaction id is immutable")
        for idx, txn in enumerate(self.transactions):
            if txn.id == transaction_id:
                updated = replace(
                    txn, last_modified=modified_at or local_now(), **changes
                )
                self.transactions[idx] = updated
                return updated
        raise ValueError("Transaction not found")

    def delete(self, transaction_id: uuid.UUID) -> None:
        before = len(self.transactions)
        self.transactions = [t for t in self.transactions if t.id != transaction_id]
        if len(self.transactions) == before:
            raise ValueError("Transaction not found")
        tombstone = str(transaction_id)
        if tombstone not in self.deleted_transaction_ids:
            self.deleted_transaction_ids.append(tombstone)

    def clear_month_data(self, month: str) -> int:
        period = month_period(month)
        kept = [t for t in self.transactions if not period.contains(t.date)]
        removed = len(self.transactions) - len(kept)
        self.transactions = kept
        self.budgets_by_month.pop(month, None)
        self.category_budgets_by_month.pop(month, None)
        return removed

    # custom categories

    def custom_categories(self) -> list[Custom]:
        return [Custom(name) for name in self.custom_category_names]

    def find_custom_category(self, name: str) -> Optional[str]:
        wanted = name.strip().lower()
        for existing in self.custom_category_names:
            if existing.lower() == wanted:
                return existing
        return None

    def add_custom_category(self, name: str) -> Custom:
        clean = name.strip()
        if not clean:
            raise ValueError("Category name is empty")
        existing = self.find_custom_category(clean)
        if existing is not None:
            return Custom(existing)
        self.custom_category_names.append(clean)
        self.custom_category_names.sort(key=str.lower)
        return Custom(clean)

    def delete_custom_category(
        self, name: str, *, modified_at: Optional[datetime] = None
    ) -> int:
        """Drop a custom category, moving its transactions and rules to `other`."""
        if name not in self.custom_category_names:
            raise ValueError("Category not found")
        self.custom_category_names.remove(name)
        doomed = Custom(name)
        stamp = modified_at or local_now()
        remapped = 0
        for idx, txn in enumerate(self.transactions):
            if txn.category == doomed:
                self.transactions[idx] = replace(
                    txn, category=OTHER, last_modified=stamp
                )
                remapped += 1
        for idx, rule in enumerate(self.recurring_rules):
            if rule.category == doomed:
                self.recurring_rules[idx] = replace(rule, category=OTHER)
        for month in list(self.category_budgets_by_month):
            caps = self.category_budgets_by_month[month]
            caps.pop(doomed.key, None)
            if not caps:
                del self.category_budgets_by_month[month]
        return remapped

    # recurring rules

    def add_recurring(self, rule: RecurringRule) -> None:
        self.recurring_rules.append(rule)

    def get_recurring(self, rule_id: uuid.UUID) -> RecurringRule:
        for rule in self.recurring_rules:
            if rule.id == rule_id:
                return rule
        raise ValueError("Recurring rule not found")

    def update_recurring(self, rule_id: uuid.UUID, **changes: object) -> RecurringRule:
        if "id" in changes:
            raise ValueError("Recurring rule id is immutable")
        for idx, rule in enumerate(self.recurring_rules):
            if rule.id == rule_id:
                updated = replace(rule, **changes)
                self.recurring_rules[idx] = updated
                return updated
        raise ValueError("Recurring rule not found")

    def delete_recurring(self, rule_id: uuid.UUID) -> None:
        before = len(self.recurring_rules)
        self.recurring_rules = [r for r in self.recurring_rules if r.id != rule_id]
        if len(self.recurring_rules) == before:
            raise ValueError("Recurring rule not found")
