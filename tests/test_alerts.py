from datetime import date, datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from alerts import (
    AlertScope,
    BudgetAlertEngine,
    CategorySpend,
    InMemoryAlertStateStore,
    LoggingNotificationSink,
)
from analytics import MonthSummary
from database import Base
from ledger import Builtin, Store, Transaction
from models import AlertState, BuiltinCategory
from services import AlertService, SqlAlertStateStore

MONTH = "2025-04"
BUDGET = 100_000


def _summary(ratio: float) -> MonthSummary:
    spent = int(BUDGET * ratio)
    return MonthSummary(
        month=MONTH,
        budget=BUDGET,
        total_spent=spent,
        income=0,
        remaining=BUDGET - spent,
        daily_avg=0,
        spent_ratio=spent / BUDGET,
    )


def test_overall_ladder_fires_on_upward_edges_only() -> None:
    engine = BudgetAlertEngine(InMemoryAlertStateStore())
    ratios = [0.5, 0.72, 0.85, 1.05, 0.60, 1.10]

    fired = [engine.evaluate_overall(_summary(r)) for r in ratios]

    assert [i for i, requests in enumerate(fired) if requests] == [1, 2, 3, 5]
    assert fired[1][0].identifier == "budget-2025-04-overall-t70"
    assert fired[2][0].identifier == "budget-2025-04-overall-t80"
    assert fired[3][0].identifier == "budget-2025-04-overall-over"
    assert fired[5][0].identifier == "budget-2025-04-overall-over"


def test_overall_repeat_evaluation_is_silent() -> None:
    engine = BudgetAlertEngine(InMemoryAlertStateStore())
    assert len(engine.evaluate_overall(_summary(0.75))) == 1
    assert engine.evaluate_overall(_summary(0.75)) == []
    assert engine.evaluate_overall(_summary(0.78)) == []


def test_jump_straight_past_thresholds_fires_once() -> None:
    engine = BudgetAlertEngine(InMemoryAlertStateStore())
    requests = engine.evaluate_overall(_summary(0.9))
    assert [r.identifier for r in requests] == ["budget-2025-04-overall-t80"]


def test_zero_budget_skips_overall_alerts() -> None:
    states = InMemoryAlertStateStore()
    engine = BudgetAlertEngine(states)
    summary = MonthSummary(MONTH, 0, 50_000, 0, -50_000, 0, 0.0)
    assert engine.evaluate_overall(summary) == []
    assert states.states == {}


def test_category_latch_transitions() -> None:
    states = InMemoryAlertStateStore()
    engine = BudgetAlertEngine(states)
    scope = AlertScope.category(MONTH, "groceries")

    def run(spent: int) -> list[str]:
        row = CategorySpend("groceries", "Groceries", spent, 10_000)
        return [r.identifier for r in engine.evaluate_category(MONTH, row)]

    assert run(5_000) == []
    assert run(9_200) == ["budget-2025-04-category-groceries-near"]
    assert run(9_500) == []
    assert run(10_500) == ["budget-2025-04-category-groceries-over"]
    # over -> near is a downward move: the latch drops, nothing is sent
    assert run(9_100) == []
    assert states.get(scope) == AlertState.near
    assert run(10_100) == ["budget-2025-04-category-groceries-over"]
    assert run(9_100) == []
    assert run(2_000) == []
    assert states.get(scope) == AlertState.none
    assert run(12_000) == ["budget-2025-04-category-groceries-over"]


def test_months_are_tracked_separately() -> None:
    engine = BudgetAlertEngine(InMemoryAlertStateStore())
    april = _summary(0.75)
    may = MonthSummary("2025-05", BUDGET, 75_000, 0, 25_000, 0, 0.75)
    assert len(engine.evaluate_overall(april)) == 1
    assert len(engine.evaluate_overall(may)) == 1


def test_sql_alert_states_survive_new_session() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    scope = AlertScope.overall(MONTH)

    with Session(engine) as session:
        SqlAlertStateStore(session, "ledger-a").set(scope, AlertState.t80)

    with Session(engine) as session:
        states = SqlAlertStateStore(session, "ledger-a")
        assert states.get(scope) == AlertState.t80
        assert SqlAlertStateStore(session, "ledger-b").get(scope) == AlertState.none
        alert_engine = BudgetAlertEngine(states)
        assert alert_engine.evaluate_overall(_summary(0.85)) == []


def test_alert_service_delivers_to_sink() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    groceries = Builtin(BuiltinCategory.groceries)
    store = Store()
    store.set_budget(MONTH, BUDGET)
    store.set_category_budget(groceries, MONTH, 20_000)
    store.add(
        Transaction(amount=85_000, date=datetime(2025, 4, 3, 12), category=groceries)
    )
    sink = LoggingNotificationSink()

    with Session(engine) as session:
        service = AlertService(SqlAlertStateStore(session, "ledger-a"), sink)
        fired = service.evaluate(store, MONTH, today=date(2025, 4, 10))
        again = service.evaluate(store, MONTH, today=date(2025, 4, 10))

    assert [r.identifier for r in fired] == [
        "budget-2025-04-overall-t80",
        "budget-2025-04-category-groceries-over",
    ]
    assert again == []
    assert sink.delivered == fired
