from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ledger import RecurringRule, Store, Transaction, category_from_key
from models import IntervalUnit, PaymentMethod, TransactionType

STORE_SCHEMA_VERSION = 2
BACKUP_VERSION = 1


class ColumnMapping(BaseModel):
    """Column indexes of an imported table; optional fields may be absent."""

    date: int = Field(..., ge=0)
    amount: int = Field(..., ge=0)
    category: int = Field(..., ge=0)
    type: Optional[int] = Field(default=None, ge=0)
    payment: Optional[int] = Field(default=None, ge=0)
    note: Optional[int] = Field(default=None, ge=0)
    has_header: bool = True


class TransactionRecord(BaseModel):
    """Stored transaction shape.

    Older records predate payment methods, income and edit tracking:
    a missing `paymentMethod` decodes as card, a missing `type` as expense,
    and a missing `lastModified` as the transaction date.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: uuid.UUID
    amount: int = Field(..., gt=0)
    date: datetime
    category: str = Field(..., min_length=1)
    note: str = ""
    payment_method: PaymentMethod = Field(
        default=PaymentMethod.card, alias="paymentMethod"
    )
    type: TransactionType = TransactionType.expense
    last_modified: Optional[datetime] = Field(default=None, alias="lastModified")

    @field_validator("category")
    @classmethod
    def _known_category(cls, value: str) -> str:
        category_from_key(value)
        return value

    @field_validator("date", "last_modified")
    @classmethod
    def _drop_tz(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is not None:
            return value.replace(tzinfo=None)
        return value

    @model_validator(mode="after")
    def _default_last_modified(self) -> TransactionRecord:
        if self.last_modified is None:
            self.last_modified = self.date
        return self

    @classmethod
    def from_transaction(cls, txn: Transaction) -> TransactionRecord:
        return cls(
            id=txn.id,
            amount=txn.amount,
            date=txn.date,
            category=txn.category.key,
            note=txn.note,
            payment_method=txn.payment_method,
            type=txn.type,
            last_modified=txn.last_modified,
        )

    def to_transaction(self) -> Transaction:
        return Transaction(
            id=self.id,
            amount=self.amount,
            date=self.date,
            category=category_from_key(self.category),
            note=self.note,
            payment_method=self.payment_method,
            type=self.type,
            last_modified=self.last_modified,
        )


class RecurringRuleRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: uuid.UUID
    amount: int = Field(..., gt=0)
    category: str = Field(..., min_length=1)
    frequency: IntervalUnit
    interval_count: int = Field(default=1, ge=1, alias="intervalCount")
    start_date: date = Field(..., alias="startDate")
    end_date: Optional[date] = Field(default=None, alias="endDate")
    next_occurrence: Optional[date] = Field(default=None, alias="nextOccurrence")
    note: str = ""
    payment_method: PaymentMethod = Field(
        default=PaymentMethod.card, alias="paymentMethod"
    )
    type: TransactionType = TransactionType.expense
    is_active: bool = Field(default=True, alias="isActive")

    @field_validator("category")
    @classmethod
    def _known_category(cls, value: str) -> str:
        category_from_key(value)
        return value

    @classmethod
    def from_rule(cls, rule: RecurringRule) -> RecurringRuleRecord:
        return cls(
            id=rule.id,
            amount=rule.amount,
            category=rule.category.key,
            frequency=rule.interval_unit,
            interval_count=rule.interval_count,
            start_date=rule.start_date,
            end_date=rule.end_date,
            next_occurrence=rule.next_occurrence,
            note=rule.note,
            payment_method=rule.payment_method,
            type=rule.type,
            is_active=rule.active,
        )

    def to_rule(self) -> RecurringRule:
        return RecurringRule(
            id=self.id,
            amount=self.amount,
            category=category_from_key(self.category),
            interval_unit=self.frequency,
            interval_count=self.interval_count,
            start_date=self.start_date,
            end_date=self.end_date,
            next_occurrence=self.next_occurrence,
            note=self.note,
            payment_method=self.payment_method,
            type=self.type,
            active=self.is_active,
        )


class StoreRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(default=1, alias="schemaVersion")
    selected_month: Optional[str] = Field(default=None, alias="selectedMonth")
    budgets_by_month: dict[str, int] = Field(
        default_factory=dict, alias="budgetsByMonth"
    )
    category_budgets_by_month: dict[str, dict[str, int]] = Field(
        default_factory=dict, alias="categoryBudgetsByMonth"
    )
    transactions: list[TransactionRecord] = Field(default_factory=list)
    custom_category_names: list[str] = Field(
        default_factory=list, alias="customCategoryNames"
    )
    deleted_transaction_ids: list[str] = Field(
        default_factory=list, alias="deletedTransactionIds"
    )
    recurring_rules: list[RecurringRuleRecord] = Field(
        default_factory=list, alias="recurringTransactions"
    )

    @field_validator("budgets_by_month")
    @classmethod
    def _clamp_budgets(cls, value: dict[str, int]) -> dict[str, int]:
        return {month: max(0, amount) for month, amount in value.items()}

    @field_validator("category_budgets_by_month")
    @classmethod
    def _drop_empty_caps(
        cls, value: dict[str, dict[str, int]]
    ) -> dict[str, dict[str, int]]:
        out: dict[str, dict[str, int]] = {}
        for month, caps in value.items():
            kept = {key: amount for key, amount in caps.items() if amount > 0}
            if kept:
                out[month] = kept
        return out

    @classmethod
    def from_store(cls, store: Store) -> StoreRecord:
        return cls(
            schema_version=STORE_SCHEMA_VERSION,
            selected_month=store.selected_month,
            budgets_by_month=dict(store.budgets_by_month),
            category_budgets_by_month={
                month: dict(caps)
                for month, caps in store.category_budgets_by_month.items()
            },
            transactions=[
                TransactionRecord.from_transaction(t) for t in store.transactions
            ],
            custom_category_names=list(store.custom_category_names),
            deleted_transaction_ids=list(store.deleted_transaction_ids),
            recurring_rules=[
                RecurringRuleRecord.from_rule(r) for r in store.recurring_rules
            ],
        )

    def to_store(self) -> Store:
        store = Store(
            budgets_by_month=dict(self.budgets_by_month),
            category_budgets_by_month={
                month: dict(caps)
                for month, caps in self.category_budgets_by_month.items()
            },
            transactions=[t.to_transaction() for t in self.transactions],
            custom_category_names=sorted(self.custom_category_names, key=str.lower),
            deleted_transaction_ids=list(self.deleted_transaction_ids),
            recurring_rules=[r.to_rule() for r in self.recurring_rules],
        )
        if self.selected_month:
            store.selected_month = self.selected_month
        return store

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class BackupEnvelope(BaseModel):
    version: int
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    store: StoreRecord

    model_config = ConfigDict(populate_by_name=True)


class ImportRequest(BaseModel):
    rows: list[list[str]]
    mapping: ColumnMapping


class RestoreRequest(BaseModel):
    mode: Literal["merge", "replace"] = "merge"
    payload: str = Field(..., min_length=1)


class BudgetIn(BaseModel):
    amount_cents: int = Field(..., ge=0)


class CategoryBudgetIn(BaseModel):
    category: str = Field(..., min_length=1)
    amount_cents: int = Field(..., ge=0)


class CustomCategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class TransactionIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    date: datetime
    category: str = Field(..., min_length=1)
    note: str = Field(default="", max_length=500)
    payment_method: PaymentMethod = PaymentMethod.card
    type: TransactionType = TransactionType.expense

    @field_validator("date")
    @classmethod
    def _drop_tz(cls, value: datetime) -> datetime:
        return value.replace(tzinfo=None) if value.tzinfo is not None else value


class TransactionUpdate(BaseModel):
    """Partial edit; omitted fields keep their stored value."""

    amount_cents: Optional[int] = Field(default=None, gt=0)
    date: Optional[datetime] = None
    category: Optional[str] = Field(default=None, min_length=1)
    note: Optional[str] = Field(default=None, max_length=500)
    payment_method: Optional[PaymentMethod] = None
    type: Optional[TransactionType] = None

    @field_validator("date")
    @classmethod
    def _drop_tz(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is not None:
            return value.replace(tzinfo=None)
        return value


class RecurringRuleIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    category: str = Field(..., min_length=1)
    interval_unit: IntervalUnit = IntervalUnit.month
    interval_count: int = Field(default=1, ge=1, le=366)
    start_date: date
    end_date: Optional[date] = None
    note: str = Field(default="", max_length=500)
    payment_method: PaymentMethod = PaymentMethod.card
    type: TransactionType = TransactionType.expense

    @model_validator(mode="after")
    def _end_after_start(self) -> RecurringRuleIn:
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self
