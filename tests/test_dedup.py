import json
import uuid
from datetime import datetime

import pytest

from dedup import (
    BackupRestoreError,
    RestoreFailure,
    RestoreMode,
    dataset_signature,
    decode_backup,
    encode_backup,
    has_newer_changes,
    merge_incoming,
    merge_stores,
    restore_backup,
    transaction_signature,
)
from ledger import Builtin, Custom, Store, Transaction
from models import BuiltinCategory

GROCERIES = Builtin(BuiltinCategory.groceries)


def _txn(
    amount: int, when: datetime, note: str = "", category=GROCERIES, **kwargs
) -> Transaction:
    return Transaction(
        amount=amount, date=when, category=category, note=note, **kwargs
    )


def test_signature_ignores_id_and_time_of_day() -> None:
    a = _txn(1_250, datetime(2025, 4, 3, 8, 15), note=" Bakery ")
    b = _txn(1_250, datetime(2025, 4, 3, 21, 40), note="Bakery")
    assert a.id != b.id
    assert transaction_signature(a) == transaction_signature(b)
    assert transaction_signature(a) == "2025-04-03|1250|groceries|Bakery"


def test_dataset_signature_is_order_independent() -> None:
    a = _txn(1_000, datetime(2025, 4, 1, 12))
    b = _txn(2_000, datetime(2025, 4, 2, 12))
    assert dataset_signature([a, b]) == dataset_signature([b, a])
    assert len(dataset_signature([a])) == 64
    assert dataset_signature([a]) != dataset_signature([b])


def test_merge_incoming_skips_existing_and_repeated_rows() -> None:
    store = Store()
    store.add(_txn(1_000, datetime(2025, 4, 1, 12), note="Milk"))
    incoming = [
        _txn(1_000, datetime(2025, 4, 1, 9), note="Milk"),
        _txn(2_000, datetime(2025, 4, 2, 12), note="Bread"),
        _txn(2_000, datetime(2025, 4, 2, 18), note="Bread"),
        _txn(3_000, datetime(2025, 4, 3, 12), category=Custom("Pets")),
    ]

    result = merge_incoming(store, incoming)

    assert result.added == 2
    assert result.duplicates == 2
    assert len(result.store.transactions) == 3
    assert result.store.custom_category_names == ["Pets"]
    assert len(store.transactions) == 1


def test_merge_incoming_twice_adds_nothing() -> None:
    incoming = [_txn(1_000, datetime(2025, 4, 1, 12), note="Milk")]
    first = merge_incoming(Store(), incoming)
    fresh_ids = [_txn(1_000, datetime(2025, 4, 1, 12), note="Milk")]
    second = merge_incoming(first.store, fresh_ids)
    assert second.added == 0
    assert second.duplicates == 1


def test_decode_backup_failures() -> None:
    with pytest.raises(BackupRestoreError) as exc:
        decode_backup("not json")
    assert exc.value.failure == RestoreFailure.invalid_format

    with pytest.raises(BackupRestoreError) as exc:
        decode_backup(json.dumps({"store": {}}))
    assert exc.value.failure == RestoreFailure.invalid_format

    with pytest.raises(BackupRestoreError) as exc:
        decode_backup(json.dumps({"version": 99, "store": {}}))
    assert exc.value.failure == RestoreFailure.unsupported_version

    with pytest.raises(BackupRestoreError) as exc:
        decode_backup(json.dumps({"version": 1, "store": {"transactions": [{}]}}))
    assert exc.value.failure == RestoreFailure.invalid_format


def test_backup_round_trip_keeps_ledger() -> None:
    store = Store()
    store.set_budget("2025-04", 100_000)
    store.set_category_budget(GROCERIES, "2025-04", 30_000)
    pets = store.add_custom_category("Pets")
    store.add(_txn(4_200, datetime(2025, 4, 1, 12), note="Food", category=pets))

    raw = encode_backup(store, created_at=datetime(2025, 4, 30, 20))
    assert json.loads(raw)["version"] == 1
    assert json.loads(raw)["createdAt"].startswith("2025-04-30T20:00")

    restored = decode_backup(raw).to_store()
    assert restored.budgets_by_month == {"2025-04": 100_000}
    assert restored.category_budgets_by_month == {"2025-04": {"groceries": 30_000}}
    assert restored.custom_category_names == ["Pets"]
    assert restored.transactions == store.transactions


def test_restore_merge_keeps_local_values_and_dedups() -> None:
    local = Store()
    local.set_budget("2025-04", 100_000)
    local.add(_txn(1_000, datetime(2025, 4, 1, 12), note="Milk"))

    backup = Store()
    backup.set_budget("2025-04", 50_000)
    backup.set_budget("2025-03", 70_000)
    backup.add(_txn(1_000, datetime(2025, 4, 1, 8), note="Milk"))
    backup.add(_txn(9_000, datetime(2025, 3, 20, 12), note="Shoes"))

    result = restore_backup(local, backup, RestoreMode.merge)
    assert result.added == 1
    assert result.duplicates == 1
    assert result.store.budgets_by_month == {"2025-04": 100_000, "2025-03": 70_000}


def test_restore_replace_takes_backup_verbatim() -> None:
    local = Store()
    local.set_budget("2025-04", 100_000)
    gone = _txn(1_000, datetime(2025, 4, 1, 12))
    local.add(gone)
    local.delete(gone.id)
    local.add(_txn(2_000, datetime(2025, 4, 2, 12)))

    backup = Store()
    backup.set_budget("2025-03", 70_000)
    backup.add(_txn(9_000, datetime(2025, 3, 20, 12)))

    result = restore_backup(local, backup, RestoreMode.replace)
    assert result.store.budgets_by_month == {"2025-03": 70_000}
    assert result.store.transactions == backup.transactions
    assert result.store.deleted_transaction_ids == [str(gone.id)]
    assert result.added == 1


def test_sync_merge_tombstones_and_last_writer() -> None:
    shared_id = uuid.uuid4()
    deleted_id = uuid.uuid4()
    base = datetime(2025, 4, 1, 12)

    local = Store()
    local.add(_txn(1_000, base, id=shared_id, last_modified=datetime(2025, 4, 5)))
    local.add(_txn(5_000, base, id=deleted_id))
    local.set_budget("2025-04", 100_000)

    remote = Store()
    remote.add(_txn(1_500, base, id=shared_id, last_modified=datetime(2025, 4, 3)))
    remote.deleted_transaction_ids.append(str(deleted_id))
    remote.set_budget("2025-04", 80_000)
    remote.set_budget("2025-05", 90_000)
    only_remote = _txn(700, datetime(2025, 4, 2, 12))
    remote.add(only_remote)

    merged = merge_stores(local, remote)

    by_id = {t.id: t for t in merged.transactions}
    assert set(by_id) == {shared_id, only_remote.id}
    assert by_id[shared_id].amount == 1_000
    assert merged.deleted_transaction_ids == [str(deleted_id)]
    assert merged.budgets_by_month == {"2025-04": 100_000, "2025-05": 90_000}


def test_sync_merge_tie_goes_to_remote() -> None:
    shared_id = uuid.uuid4()
    stamp = datetime(2025, 4, 5)
    local = Store()
    local.add(_txn(1_000, stamp, id=shared_id))
    remote = Store()
    remote.add(_txn(2_000, stamp, id=shared_id))
    merged = merge_stores(local, remote)
    assert [t.amount for t in merged.transactions] == [2_000]


def test_has_newer_changes() -> None:
    txn = _txn(1_000, datetime(2025, 4, 1, 12))
    local = Store()
    local.add(txn)
    remote = Store()
    assert has_newer_changes(local, remote)

    remote.add(txn)
    assert not has_newer_changes(local, remote)

    remote.set_budget("2025-05", 10_000)
    assert not has_newer_changes(local, remote)

    local.update_transaction(txn.id, modified_at=datetime(2025, 4, 9), amount=1_100)
    assert has_newer_changes(local, remote)

    synced = merge_stores(local, remote)
    assert has_newer_changes(synced, remote)
    assert not has_newer_changes(remote, synced)


def test_merge_restore_keeps_existing_category_spelling() -> None:
    local = Store()
    local.add_custom_category("Pets")
    local.add(_txn(1_000, datetime(2025, 4, 1, 12), category=Custom("Pets")))

    backup = Store(custom_category_names=["pets"])
    backup.add(_txn(2_000, datetime(2025, 4, 2, 12), category=Custom("pets")))

    result = restore_backup(local, backup, RestoreMode.merge)
    assert result.added == 1
    assert result.store.custom_category_names == ["Pets"]
    assert {t.category for t in result.store.transactions} == {Custom("Pets")}
    assert result.store.delete_custom_category("Pets") == 2
