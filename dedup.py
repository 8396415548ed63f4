"""Content-addressed deduplication for imports, backup restores and syncs.

Transactions are compared by what they say (day, amount, category, note),
never by their generated ids, so re-importing a file whose rows got fresh
ids still finds every duplicate.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, replace
from datetime import date, datetime
from enum import Enum
from typing import Iterable, Optional, Protocol, Union

from pydantic import ValidationError

from ledger import Custom, RecurringRule, Store, Transaction
from periods import local_now
from schemas import BACKUP_VERSION, BackupEnvelope, StoreRecord

logger = logging.getLogger(__name__)


class RestoreMode(str, Enum):
    merge = "merge"
    replace = "replace"


class RestoreFailure(str, Enum):
    invalid_format = "invalid_format"
    unsupported_version = "unsupported_version"


class BackupRestoreError(ValueError):
    def __init__(self, failure: RestoreFailure, message: str) -> None:
        super().__init__(message)
        self.failure = failure


class ImportHistory(Protocol):
    def contains(self, digest: str) -> bool: ...

    def add(self, digest: str, row_count: int) -> None: ...


class InMemoryImportHistory:
    def __init__(self) -> None:
        self.digests: dict[str, int] = {}

    def contains(self, digest: str) -> bool:
        return digest in self.digests

    def add(self, digest: str, row_count: int) -> None:
        self.digests.setdefault(digest, row_count)


@dataclass(frozen=True)
class MergeResult:
    store: Store
    added: int
    duplicates: int


def day_string(value: Union[date, datetime]) -> str:
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


def transaction_signature(txn: Transaction) -> str:
    return f"{day_string(txn.date)}|{txn.amount}|{txn.category.key}|{txn.note.strip()}"


def dataset_signature(transactions: Iterable[Transaction]) -> str:
    signatures = sorted(transaction_signature(t) for t in transactions)
    return hashlib.sha256("\n".join(signatures).encode("utf-8")).hexdigest()


def _with_registered_category(store: Store, txn: Transaction) -> Transaction:
    """Register a custom category and point `txn` at its canonical spelling."""
    if not isinstance(txn.category, Custom):
        return txn
    canonical = store.add_custom_category(txn.category.name)
    if canonical == txn.category:
        return txn
    return replace(txn, category=canonical)


def merge_incoming(store: Store, incoming: Iterable[Transaction]) -> MergeResult:
    """Stage every incoming transaction not already present, then apply at once.

    Rows repeated within `incoming` count as duplicates too. Custom categories
    differing only by case collapse onto the name the store already knows. The
    input store is not modified; the result carries a new store.
    """
    merged = store.snapshot()
    existing = {transaction_signature(t) for t in store.transactions}
    seen: set[str] = set()
    staged: list[Transaction] = []
    duplicates = 0
    for txn in incoming:
        txn = _with_registered_category(merged, txn)
        signature = transaction_signature(txn)
        if signature in existing or signature in seen:
            duplicates += 1
            continue
        staged.append(txn)
        existing.add(signature)
        seen.add(signature)

    merged.transactions.extend(staged)
    return MergeResult(store=merged, added=len(staged), duplicates=duplicates)


def decode_backup(raw: Union[str, bytes]) -> StoreRecord:
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as exc:
        raise BackupRestoreError(
            RestoreFailure.invalid_format, "Backup is not valid JSON"
        ) from exc
    if not isinstance(payload, dict) or "version" not in payload:
        raise BackupRestoreError(
            RestoreFailure.invalid_format, "Backup has no version field"
        )
    version = payload.get("version")
    if version != BACKUP_VERSION:
        raise BackupRestoreError(
            RestoreFailure.unsupported_version,
            f"Unsupported backup version: {version!r}",
        )
    try:
        return BackupEnvelope.model_validate(payload).store
    except ValidationError as exc:
        raise BackupRestoreError(
            RestoreFailure.invalid_format,
            f"Backup content is invalid ({exc.error_count()} errors)",
        ) from exc


def encode_backup(store: Store, *, created_at: Optional[datetime] = None) -> str:
    envelope = BackupEnvelope(
        version=BACKUP_VERSION,
        created_at=created_at or local_now(),
        store=StoreRecord.from_store(store),
    )
    return envelope.model_dump_json(by_alias=True)


def _add_missing_rules(store: Store, rules: Iterable[RecurringRule]) -> None:
    known = {rule.id for rule in store.recurring_rules}
    for rule in rules:
        if rule.id in known:
            continue
        if isinstance(rule.category, Custom):
            rule = replace(
                rule, category=store.add_custom_category(rule.category.name)
            )
        store.recurring_rules.append(rule)
        known.add(rule.id)


def restore_backup(store: Store, backup: Store, mode: RestoreMode) -> MergeResult:
    if mode == RestoreMode.replace:
        restored = store.snapshot()
        restored.transactions = list(backup.transactions)
        restored.budgets_by_month = dict(backup.budgets_by_month)
        restored.category_budgets_by_month = {
            month: dict(caps)
            for month, caps in backup.category_budgets_by_month.items()
        }
        restored.custom_category_names = sorted(
            backup.custom_category_names, key=str.lower
        )
        restored.recurring_rules = list(backup.recurring_rules)
        return MergeResult(
            store=restored, added=len(restored.transactions), duplicates=0
        )

    result = merge_incoming(store, backup.transactions)
    merged = result.store
    for month, amount in backup.budgets_by_month.items():
        merged.budgets_by_month.setdefault(month, amount)
    for month, caps in backup.category_budgets_by_month.items():
        target = merged.category_budgets_by_month.setdefault(month, {})
        for key, amount in caps.items():
            target.setdefault(key, amount)
    for name in backup.custom_category_names:
        merged.add_custom_category(name)
    _add_missing_rules(merged, backup.recurring_rules)
    return result


def merge_stores(local: Store, remote: Store) -> Store:
    """Combine two replicas of the same ledger.

    Tombstones from either side win over live copies; for transactions known to
    both sides the later `last_modified` wins, ties going to the remote copy.
    Budgets and caps keep local values and gain the keys only remote has.
    Recurring rules known to both sides keep the local copy.
    """
    merged = local.snapshot()
    tombstones = list(
        dict.fromkeys(local.deleted_transaction_ids + remote.deleted_transaction_ids)
    )
    dead = set(tombstones)
    merged.deleted_transaction_ids = tombstones

    by_id: dict[str, Transaction] = {}
    for txn in remote.transactions:
        if str(txn.id) not in dead:
            by_id[str(txn.id)] = txn
    local_wins = remote_wins = 0
    for txn in local.transactions:
        key = str(txn.id)
        if key in dead:
            continue
        other = by_id.get(key)
        if other is None:
            by_id[key] = txn
        elif txn.last_modified > other.last_modified:
            by_id[key] = txn
            local_wins += 1
        else:
            remote_wins += 1
    merged.transactions = sorted(by_id.values(), key=lambda t: t.date, reverse=True)

    for month, amount in remote.budgets_by_month.items():
        merged.budgets_by_month.setdefault(month, amount)
    for month, caps in remote.category_budgets_by_month.items():
        target = merged.category_budgets_by_month.setdefault(month, {})
        for key, amount in caps.items():
            target.setdefault(key, amount)
    for name in remote.custom_category_names:
        merged.add_custom_category(name)
    _add_missing_rules(merged, remote.recurring_rules)

    logger.info(
        f"sync_merge: transactions={len(merged.transactions)} "
        f"tombstones={len(tombstones)} "
        f"local_wins={local_wins} remote_wins={remote_wins}"
    )
    return merged


def has_newer_changes(local: Store, remote: Store) -> bool:
    """True when `local` holds anything the remote replica has not seen."""
    if not set(local.deleted_transaction_ids) <= set(remote.deleted_transaction_ids):
        return True
    remote_by_id = {t.id: t for t in remote.transactions}
    for txn in local.transactions:
        other = remote_by_id.get(txn.id)
        if other is None or txn.last_modified > other.last_modified:
            return True
    for month, amount in local.budgets_by_month.items():
        if remote.budgets_by_month.get(month) != amount:
            return True
    for month, caps in local.category_budgets_by_month.items():
        remote_caps = remote.category_budgets_by_month.get(month, {})
        if any(remote_caps.get(key) != amount for key, amount in caps.items()):
            return True
    remote_rules = {rule.id: rule for rule in remote.recurring_rules}
    if any(remote_rules.get(rule.id) != rule for rule in local.recurring_rules):
        return True
    return set(local.custom_category_names) != set(remote.custom_category_names)
