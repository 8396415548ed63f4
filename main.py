import logging
import uuid

from fastapi import Depends, FastAPI, HTTPException
from sqlalchemy.orm import Session

from analytics import (
    category_breakdown,
    daily_spend_points,
    group_by_day,
    month_summary,
    payment_breakdown,
)
from database import SessionLocal, init_db
from dedup import RestoreMode
from forecast import budget_pressure, project_end_of_month
from insights import generate_insights, quick_actions
from ledger import (
    Builtin,
    Category,
    Custom,
    RecurringRule,
    Transaction,
    category_from_key,
)
from models import BuiltinCategory
from periods import local_now, local_today, parse_month_key
from recurrence import monthly_recurring_total, skip_missed, upcoming
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    CategoryBudgetIn,
    CustomCategoryIn,
    ImportRequest,
    RecurringRuleIn,
    RestoreRequest,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    AlertService,
    BackupService,
    EmptyImport,
    ImportService,
    LedgerRepository,
    RecurringService,
    SqlAlertStateStore,
    SqlImportHistory,
)

app = FastAPI(title="Budget Intelligence")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    init_db()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _month_or_400(month: str) -> str:
    try:
        parse_month_key(month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return month


def _transaction_json(txn) -> dict[str, object]:
    return {
        "id": str(txn.id),
        "amount_cents": txn.amount,
        "date": txn.date.isoformat(),
        "category": txn.category.key,
        "note": txn.note,
        "payment_method": txn.payment_method.value,
        "type": txn.type.value,
        "last_modified": txn.last_modified.isoformat(),
    }


def _evaluate_alerts(db: Session, store, month: str) -> list[dict[str, str]]:
    fired = AlertService(SqlAlertStateStore(db), scheduler_manager.sink).evaluate(
        store, month
    )
    return [{"id": r.identifier, "title": r.title, "body": r.body} for r in fired]


@app.get("/api/months/{month}/summary")
def get_summary(month: str, db: Session = Depends(get_db)):
    month = _month_or_400(month)
    store = LedgerRepository(db).load_ledger()
    summary = month_summary(store, month)
    pressure = budget_pressure(summary)
    return {
        "summary": {
            "month": summary.month,
            "budget_cents": summary.budget,
            "total_spent_cents": summary.total_spent,
            "income_cents": summary.income,
            "remaining_cents": summary.remaining,
            "daily_avg_cents": summary.daily_avg,
            "spent_ratio": summary.spent_ratio,
        },
        "pressure": {
            "title": pressure.title,
            "detail": pressure.detail,
            "level": pressure.level.value,
        },
        "saved_cents": store.saved(month),
        "total_saved_cents": store.total_saved(),
        "categories": [
            {
                "category": row.category.key,
                "title": row.category.title,
                "total_cents": row.total,
            }
            for row in category_breakdown(store, month)
        ],
        "payments": [
            {"method": row.method.value, "total_cents": row.total, "share": row.share}
            for row in payment_breakdown(store, month)
        ],
        "daily": [
            {"day": p.day, "amount_cents": p.amount}
            for p in daily_spend_points(store, month)
        ],
    }


@app.get("/api/months/{month}/transactions")
def list_transactions(month: str, db: Session = Depends(get_db)):
    month = _month_or_400(month)
    store = LedgerRepository(db).load_ledger()
    return [
        {
            "day": group.day.isoformat(),
            "title": group.title,
            "items": [_transaction_json(t) for t in group.items],
        }
        for group in group_by_day(store.month_transactions(month))
    ]


@app.get("/api/months/{month}/forecast")
def get_forecast(month: str, db: Session = Depends(get_db)):
    month = _month_or_400(month)
    store = LedgerRepository(db).load_ledger()
    proj = project_end_of_month(store, month)
    return {
        "projected_total_cents": proj.projected_total,
        "delta_cents": proj.delta,
        "status": proj.status_text,
        "level": proj.level.value,
    }


@app.get("/api/months/{month}/insights")
def get_insights(month: str, db: Session = Depends(get_db)):
    month = _month_or_400(month)
    store = LedgerRepository(db).load_ledger()
    return {
        "insights": [
            {"title": i.title, "detail": i.detail, "level": i.level.value}
            for i in generate_insights(store, month)
        ],
        "quick_actions": quick_actions(store, month),
    }


@app.put("/api/months/{month}/budget")
def put_budget(month: str, data: BudgetIn, db: Session = Depends(get_db)):
    month = _month_or_400(month)
    repo = LedgerRepository(db)
    store = repo.load_ledger()
    store.set_budget(month, data.amount_cents)
    repo.save_ledger(store)
    return {"alerts": _evaluate_alerts(db, store, month)}


@app.put("/api/months/{month}/category-budget")
def put_category_budget(
    month: str, data: CategoryBudgetIn, db: Session = Depends(get_db)
):
    month = _month_or_400(month)
    try:
        category = category_from_key(data.category)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    repo = LedgerRepository(db)
    store = repo.load_ledger()
    store.set_category_budget(category, month, data.amount_cents)
    repo.save_ledger(store)
    return {"alerts": _evaluate_alerts(db, store, month)}


@app.get("/api/categories")
def list_categories(db: Session = Depends(get_db)):
    store = LedgerRepository(db).load_ledger()
    categories = [Builtin(tag) for tag in BuiltinCategory] + store.custom_categories()
    return [{"key": c.key, "title": c.title} for c in categories]


@app.post("/api/categories")
def create_category(data: CustomCategoryIn, db: Session = Depends(get_db)):
    repo = LedgerRepository(db)
    store = repo.load_ledger()
    try:
        category = store.add_custom_category(data.name)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    repo.save_ledger(store)
    return {"key": category.key, "title": category.title}


@app.delete("/api/categories/{name}")
def delete_category(name: str, db: Session = Depends(get_db)):
    repo = LedgerRepository(db)
    store = repo.load_ledger()
    try:
        remapped = store.delete_custom_category(name)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    repo.save_ledger(store)
    return {"remapped": remapped}


def _category_or_400(store, key: str) -> Category:
    try:
        category = category_from_key(key)
        if isinstance(category, Custom):
            category = store.add_custom_category(category.name)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return category


@app.post("/api/transactions")
def create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    repo = LedgerRepository(db)
    store = repo.load_ledger()
    txn = Transaction(
        amount=data.amount_cents,
        date=data.date,
        category=_category_or_400(store, data.category),
        note=data.note.strip(),
        payment_method=data.payment_method,
        type=data.type,
        last_modified=local_now(),
    )
    store.add(txn)
    repo.save_ledger(store)
    return {
        "transaction": _transaction_json(txn),
        "alerts": _evaluate_alerts(db, store, txn.month),
    }


@app.patch("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: uuid.UUID, data: TransactionUpdate, db: Session = Depends(get_db)
):
    repo = LedgerRepository(db)
    store = repo.load_ledger()
    try:
        before = store.get(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    changes: dict[str, object] = {}
    if data.amount_cents is not None:
        changes["amount"] = data.amount_cents
    if data.date is not None:
        changes["date"] = data.date
    if data.category is not None:
        changes["category"] = _category_or_400(store, data.category)
    if data.note is not None:
        changes["note"] = data.note.strip()
    if data.payment_method is not None:
        changes["payment_method"] = data.payment_method
    if data.type is not None:
        changes["type"] = data.type
    updated = store.update_transaction(transaction_id, **changes)
    repo.save_ledger(store)
    alerts = _evaluate_alerts(db, store, updated.month)
    if before.month != updated.month:
        alerts.extend(_evaluate_alerts(db, store, before.month))
    return {"transaction": _transaction_json(updated), "alerts": alerts}


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(transaction_id: uuid.UUID, db: Session = Depends(get_db)):
    repo = LedgerRepository(db)
    store = repo.load_ledger()
    try:
        month = store.get(transaction_id).month
        store.delete(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    repo.save_ledger(store)
    return {"alerts": _evaluate_alerts(db, store, month)}


@app.delete("/api/months/{month}/data")
def clear_month(month: str, db: Session = Depends(get_db)):
    month = _month_or_400(month)
    repo = LedgerRepository(db)
    store = repo.load_ledger()
    removed = store.clear_month_data(month)
    repo.save_ledger(store)
    logging.info(f"month_cleared: month={month} removed={removed}")
    return {"removed": removed, "alerts": _evaluate_alerts(db, store, month)}


@app.post("/api/import")
def import_rows(data: ImportRequest, db: Session = Depends(get_db)):
    repo = LedgerRepository(db)
    store = repo.load_ledger()
    try:
        store, result = ImportService(SqlImportHistory(db)).import_rows(
            store, data.rows, data.mapping
        )
    except EmptyImport as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    repo.save_ledger(store)
    logging.info(f"import: added={result.added} duplicates={result.duplicates}")
    return {
        "added": result.added,
        "skipped": result.skipped,
        "duplicates": result.duplicates,
        "already_imported": result.already_imported,
        "errors": result.errors,
    }


def _rule_json(rule: RecurringRule) -> dict[str, object]:
    return {
        "id": str(rule.id),
        "amount_cents": rule.amount,
        "category": rule.category.key,
        "interval_unit": rule.interval_unit.value,
        "interval_count": rule.interval_count,
        "start_date": rule.start_date.isoformat(),
        "end_date": rule.end_date.isoformat() if rule.end_date else None,
        "next_occurrence": rule.next_occurrence.isoformat(),
        "note": rule.note,
        "payment_method": rule.payment_method.value,
        "type": rule.type.value,
        "active": rule.active,
    }


def _catch_up(db: Session) -> int:
    alerts = AlertService(SqlAlertStateStore(db), scheduler_manager.sink)
    return RecurringService(LedgerRepository(db), alerts).catch_up_all()


@app.get("/api/recurring")
def list_recurring(db: Session = Depends(get_db)):
    store = LedgerRepository(db).load_ledger()
    totals = monthly_recurring_total(store)
    return {
        "rules": [_rule_json(r) for r in store.recurring_rules],
        "monthly_income_cents": totals.income,
        "monthly_expense_cents": totals.expense,
        "upcoming": [
            {"date": on.isoformat(), "rule_id": str(rule.id)}
            for on, rule in upcoming(store)
        ],
    }


@app.post("/api/recurring")
def create_recurring(data: RecurringRuleIn, db: Session = Depends(get_db)):
    repo = LedgerRepository(db)
    store = repo.load_ledger()
    rule = RecurringRule(
        amount=data.amount_cents,
        category=_category_or_400(store, data.category),
        interval_unit=data.interval_unit,
        interval_count=data.interval_count,
        start_date=data.start_date,
        end_date=data.end_date,
        note=data.note.strip(),
        payment_method=data.payment_method,
        type=data.type,
    )
    store.add_recurring(rule)
    repo.save_ledger(store)
    logging.info(f"recurring_created: id={rule.id} unit={rule.interval_unit.value}")
    posted = _catch_up(db)
    rule = repo.load_ledger().get_recurring(rule.id)
    return {"rule": _rule_json(rule), "posted": posted}


@app.post("/api/recurring/{rule_id}/toggle")
def toggle_recurring(rule_id: uuid.UUID, db: Session = Depends(get_db)):
    repo = LedgerRepository(db)
    store = repo.load_ledger()
    try:
        rule = store.get_recurring(rule_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if rule.active:
        rule = store.update_recurring(rule_id, active=False)
    else:
        # occurrences that fell while paused are not posted
        resumed = skip_missed(rule, local_today())
        rule = store.update_recurring(
            rule_id, active=True, next_occurrence=resumed.next_occurrence
        )
    repo.save_ledger(store)
    return {"rule": _rule_json(rule), "posted": _catch_up(db) if rule.active else 0}


@app.delete("/api/recurring/{rule_id}")
def delete_recurring(rule_id: uuid.UUID, db: Session = Depends(get_db)):
    repo = LedgerRepository(db)
    store = repo.load_ledger()
    try:
        store.delete_recurring(rule_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    repo.save_ledger(store)
    return {"deleted": str(rule_id)}


@app.post("/api/recurring/catch-up")
def catch_up_recurring(db: Session = Depends(get_db)):
    return {"posted": _catch_up(db)}


@app.get("/api/backup")
def get_backup(db: Session = Depends(get_db)):
    store = LedgerRepository(db).load_ledger()
    return {"payload": BackupService().create_backup(store)}


@app.post("/api/backup/restore")
def restore_backup(data: RestoreRequest, db: Session = Depends(get_db)):
    repo = LedgerRepository(db)
    store = repo.load_ledger()
    store, result = BackupService().restore(
        store, data.payload, RestoreMode(data.mode)
    )
    if not result.success:
        raise HTTPException(status_code=400, detail=result.message)
    repo.save_ledger(store)
    return {
        "message": result.message,
        "added": result.added,
        "duplicates": result.duplicates,
    }


@app.post("/api/months/{month}/alerts/evaluate")
def evaluate_alerts(month: str, db: Session = Depends(get_db)):
    month = _month_or_400(month)
    store = LedgerRepository(db).load_ledger()
    return {"alerts": _evaluate_alerts(db, store, month)}


def main():
    import uvicorn

    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=False)


if __name__ == "__main__":
    main()
