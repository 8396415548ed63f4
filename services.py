from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import date
from typing import Optional, Sequence

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from alerts import (
    AlertScope,
    AlertStateStore,
    BudgetAlertEngine,
    CategorySpend,
    NotificationRequest,
    NotificationSink,
    deliver_all,
)
from analytics import month_summary
from config import get_settings
from csv_utils import parse_rows
from dedup import (
    BackupRestoreError,
    ImportHistory,
    RestoreFailure,
    RestoreMode,
    dataset_signature,
    decode_backup,
    encode_backup,
    merge_incoming,
    restore_backup,
)
from insights import cap_statuses
from ledger import Store
from recurrence import post_due_rules
from models import AlertState, AlertStateRecord, ImportHistoryEntry, LedgerSnapshot
from schemas import STORE_SCHEMA_VERSION, ColumnMapping, StoreRecord

logger = logging.getLogger(__name__)

# Alert state is read-modify-write; one evaluation at a time per process.
_evaluation_lock = threading.Lock()


def get_current_ledger_key() -> str:
    return get_settings().ledger_key


class LedgerRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def load_ledger(self, key: Optional[str] = None) -> Store:
        key = key or get_current_ledger_key()
        snapshot = self.session.scalar(
            select(LedgerSnapshot).where(LedgerSnapshot.key == key)
        )
        if not snapshot:
            return Store()
        try:
            return StoreRecord.model_validate_json(snapshot.payload).to_store()
        except (ValidationError, ValueError) as exc:
            logger.warning(f"ledger_load_failed: key={key} error={exc}")
            return Store()

    def save_ledger(self, store: Store, key: Optional[str] = None) -> None:
        key = key or get_current_ledger_key()
        payload = StoreRecord.from_store(store).to_json()
        snapshot = self.session.scalar(
            select(LedgerSnapshot).where(LedgerSnapshot.key == key)
        )
        if not snapshot:
            snapshot = LedgerSnapshot(key=key, payload=payload)
            self.session.add(snapshot)
        snapshot.payload = payload
        snapshot.schema_version = STORE_SCHEMA_VERSION
        self.session.commit()


class SqlAlertStateStore:
    def __init__(self, session: Session, ledger_key: Optional[str] = None) -> None:
        self.session = session
        self.ledger_key = ledger_key or get_current_ledger_key()

    def _record(self, scope: AlertScope) -> Optional[AlertStateRecord]:
        return self.session.scalar(
            select(AlertStateRecord).where(
                AlertStateRecord.ledger_key == self.ledger_key,
                AlertStateRecord.month == scope.month,
                AlertStateRecord.scope == scope.name,
            )
        )

    def get(self, scope: AlertScope) -> AlertState:
        record = self._record(scope)
        if not record:
            return AlertState.none
        return AlertState(record.state)

    def set(self, scope: AlertScope, state: AlertState) -> None:
        record = self._record(scope)
        if not record:
            record = AlertStateRecord(
                ledger_key=self.ledger_key, month=scope.month, scope=scope.name
            )
            self.session.add(record)
        record.state = state.value
        self.session.commit()


class SqlImportHistory:
    def __init__(self, session: Session, ledger_key: Optional[str] = None) -> None:
        self.session = session
        self.ledger_key = ledger_key or get_current_ledger_key()

    def contains(self, digest: str) -> bool:
        found = self.session.scalar(
            select(ImportHistoryEntry.id).where(
                ImportHistoryEntry.ledger_key == self.ledger_key,
                ImportHistoryEntry.digest == digest,
            )
        )
        return found is not None

    def add(self, digest: str, row_count: int) -> None:
        if self.contains(digest):
            return
        self.session.add(
            ImportHistoryEntry(
                ledger_key=self.ledger_key, digest=digest, row_count=row_count
            )
        )
        # Committed together with the ledger snapshot by `save_ledger`.
        self.session.flush()


class EmptyImport(ValueError):
    pass


@dataclass
class ImportResult:
    added: int = 0
    skipped: int = 0
    duplicates: int = 0
    already_imported: bool = False
    errors: list[str] = field(default_factory=list)


class ImportService:
    def __init__(self, history: ImportHistory) -> None:
        self.history = history

    def import_rows(
        self,
        store: Store,
        rows: Sequence[Sequence[str]],
        mapping: ColumnMapping,
    ) -> tuple[Store, ImportResult]:
        parsed, errors = parse_rows(rows, mapping, store.custom_category_names)
        if not parsed:
            raise EmptyImport("; ".join(errors) or "No rows to import")

        digest = dataset_signature(parsed)
        if self.history.contains(digest):
            logger.info(f"import_skip: digest={digest[:12]} rows={len(parsed)}")
            return store, ImportResult(
                skipped=len(errors),
                duplicates=len(parsed),
                already_imported=True,
                errors=errors,
            )

        merged = merge_incoming(store, parsed)
        self.history.add(digest, len(parsed))
        result = ImportResult(
            added=merged.added,
            skipped=len(errors),
            duplicates=merged.duplicates,
            errors=errors,
        )
        logger.info(
            f"import_commit: added={result.added} duplicates={result.duplicates} "
            f"skipped={result.skipped}"
        )
        return merged.store, result


@dataclass(frozen=True)
class RestoreResult:
    success: bool
    message: str
    added: int = 0
    duplicates: int = 0
    failure: Optional[RestoreFailure] = None


class BackupService:
    def create_backup(self, store: Store) -> str:
        return encode_backup(store)

    def restore(
        self, store: Store, raw: str, mode: RestoreMode = RestoreMode.merge
    ) -> tuple[Store, RestoreResult]:
        try:
            backup = decode_backup(raw).to_store()
        except BackupRestoreError as exc:
            logger.warning(f"backup_restore_failed: reason={exc.failure.value}")
            return store, RestoreResult(
                success=False, message=str(exc), failure=exc.failure
            )

        result = restore_backup(store, backup, mode)
        logger.info(
            f"backup_restore: mode={mode.value} added={result.added} "
            f"duplicates={result.duplicates}"
        )
        if mode == RestoreMode.replace:
            message = f"Restored {result.added} transactions"
        else:
            message = (
                f"Merged {result.added} transactions, "
                f"{result.duplicates} duplicates skipped"
            )
        return result.store, RestoreResult(
            success=True,
            message=message,
            added=result.added,
            duplicates=result.duplicates,
        )


class AlertService:
    """Run the alert engine after a ledger commit and hand results to the sink."""

    def __init__(
        self, states: AlertStateStore, sink: Optional[NotificationSink] = None
    ) -> None:
        self.engine = BudgetAlertEngine(states)
        self.sink = sink

    def evaluate(
        self, store: Store, month: str, *, today: Optional[date] = None
    ) -> list[NotificationRequest]:
        summary = month_summary(store, month, today=today)
        categories = [
            CategorySpend(
                key=status.key, title=status.title, spent=status.spent, cap=status.cap
            )
            for status in cap_statuses(store, month)
        ]
        with _evaluation_lock:
            requests = self.engine.evaluate(summary, categories)
        deliver_all(self.sink, requests)
        return requests


class RecurringService:
    """Post due recurring occurrences and re-run alerts for the months touched."""

    def __init__(
        self,
        repo: LedgerRepository,
        alerts: Optional[AlertService] = None,
        ledger_key: Optional[str] = None,
    ) -> None:
        self.repo = repo
        self.alerts = alerts
        self.ledger_key = ledger_key

    def catch_up_all(self, *, today: Optional[date] = None) -> int:
        store = self.repo.load_ledger(self.ledger_key)
        posted = post_due_rules(store, today=today)
        if not posted:
            return 0
        self.repo.save_ledger(store, self.ledger_key)
        if self.alerts is not None:
            for month in sorted({txn.month for txn in posted}):
                self.alerts.evaluate(store, month, today=today)
        return len(posted)
