"""Edge-triggered budget alerts.

Each scope is a latch: a notification is produced only when the scope moves
up into a tier it has not been notified for, and the latch is released
silently once the metric falls back below that tier. Re-running the engine
with unchanged numbers therefore produces nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Protocol

from analytics import MonthSummary, format_currency, format_percent
from models import AlertState

logger = logging.getLogger(__name__)

OVERALL = "overall"
OVERALL_OVER_FLAG = "overall:over"
CATEGORY_PREFIX = "category:"

T70 = 0.70
T80 = 0.80
NEAR_CAP = 0.90
OVER = 1.0

_LADDER_RANK = {AlertState.none: 0, AlertState.t70: 1, AlertState.t80: 2}
_CATEGORY_RANK = {AlertState.none: 0, AlertState.near: 1, AlertState.over: 2}


class DeliverAt(str, Enum):
    immediate = "immediate"
    scheduled = "scheduled"


@dataclass(frozen=True)
class AlertScope:
    month: str
    name: str

    @classmethod
    def overall(cls, month: str) -> AlertScope:
        return cls(month, OVERALL)

    @classmethod
    def category(cls, month: str, key: str) -> AlertScope:
        return cls(month, CATEGORY_PREFIX + key)

    def __str__(self) -> str:
        return f"{self.month}/{self.name}"


@dataclass(frozen=True)
class NotificationRequest:
    identifier: str
    title: str
    body: str
    deliver_at: DeliverAt = DeliverAt.immediate


@dataclass(frozen=True)
class CategorySpend:
    key: str
    title: str
    spent: int
    cap: int


class AlertStateStore(Protocol):
    def get(self, scope: AlertScope) -> AlertState: ...

    def set(self, scope: AlertScope, state: AlertState) -> None: ...


class NotificationSink(Protocol):
    def deliver(self, request: NotificationRequest) -> None: ...


class InMemoryAlertStateStore:
    def __init__(self) -> None:
        self.states: dict[AlertScope, AlertState] = {}

    def get(self, scope: AlertScope) -> AlertState:
        return self.states.get(scope, AlertState.none)

    def set(self, scope: AlertScope, state: AlertState) -> None:
        if state == AlertState.none:
            self.states.pop(scope, None)
        else:
            self.states[scope] = state


class LoggingNotificationSink:
    """Stand-in delivery collaborator that only records requests in the log."""

    def __init__(self) -> None:
        self.delivered: list[NotificationRequest] = []

    def deliver(self, request: NotificationRequest) -> None:
        self.delivered.append(request)
        logger.info(
            f"notification_deliver: id={request.identifier} title={request.title!r}"
        )


def _ladder_target(ratio: float) -> AlertState:
    if ratio >= T80:
        return AlertState.t80
    if ratio >= T70:
        return AlertState.t70
    return AlertState.none


def _category_target(ratio: float) -> AlertState:
    if ratio >= OVER:
        return AlertState.over
    if ratio >= NEAR_CAP:
        return AlertState.near
    return AlertState.none


class BudgetAlertEngine:
    def __init__(self, states: AlertStateStore) -> None:
        self.states = states

    def _transition(
        self, scope: AlertScope, current: AlertState, target: AlertState
    ) -> None:
        self.states.set(scope, target)
        logger.info(
            f"alert_transition: scope={scope} from={current.value} to={target.value}"
        )

    def evaluate_overall(self, summary: MonthSummary) -> list[NotificationRequest]:
        if summary.budget <= 0:
            return []
        month = summary.month
        ratio = summary.spent_ratio
        ladder_scope = AlertScope.overall(month)
        flag_scope = AlertScope(month, OVERALL_OVER_FLAG)

        over_notified = self.states.get(flag_scope) == AlertState.over
        if ratio >= OVER:
            if over_notified:
                return []
            self._transition(flag_scope, AlertState.none, AlertState.over)
            return [self._overall_request(summary, AlertState.over)]

        if over_notified:
            self._transition(flag_scope, AlertState.over, AlertState.none)

        current = self.states.get(ladder_scope)
        target = _ladder_target(ratio)
        if target == AlertState.none:
            if current != AlertState.none:
                self._transition(ladder_scope, current, AlertState.none)
            return []
        if _LADDER_RANK[target] <= _LADDER_RANK.get(current, 0):
            return []
        self._transition(ladder_scope, current, target)
        return [self._overall_request(summary, target)]

    def evaluate_category(
        self, month: str, row: CategorySpend
    ) -> list[NotificationRequest]:
        """Notify on upward moves only.

        none->near, none->over and near->over each fire once. Falling back
        (over->near, near->none) just lowers the latch with no notification,
        so a later climb can fire again.
        """
        if row.cap <= 0:
            return []
        scope = AlertScope.category(month, row.key)
        current = self.states.get(scope)
        target = _category_target(row.spent / row.cap)
        if target == current:
            return []
        if _CATEGORY_RANK[target] < _CATEGORY_RANK.get(current, 0):
            self._transition(scope, current, target)
            return []
        self._transition(scope, current, target)
        return [self._category_request(month, row, target)]

    def evaluate(
        self,
        summary: MonthSummary,
        categories: Iterable[CategorySpend] = (),
    ) -> list[NotificationRequest]:
        requests = self.evaluate_overall(summary)
        for row in categories:
            requests.extend(self.evaluate_category(summary.month, row))
        for request in requests:
            logger.info(f"alert_fired: id={request.identifier}")
        return requests

    @staticmethod
    def _overall_request(
        summary: MonthSummary, state: AlertState
    ) -> NotificationRequest:
        spent = format_currency(summary.total_spent)
        budget = format_currency(summary.budget)
        share = format_percent(summary.spent_ratio)
        if state == AlertState.over:
            title = "Monthly budget exceeded"
        else:
            threshold = "70%" if state == AlertState.t70 else "80%"
            title = f"{threshold} of monthly budget used"
        return NotificationRequest(
            identifier=f"budget-{summary.month}-overall-{state.value}",
            title=title,
            body=f"You have spent {spent} of your {budget} budget ({share}).",
        )

    @staticmethod
    def _category_request(
        month: str, row: CategorySpend, state: AlertState
    ) -> NotificationRequest:
        spent = format_currency(row.spent)
        cap = format_currency(row.cap)
        if state == AlertState.over:
            title = f"“{row.title}” is over its cap"
        else:
            title = f"“{row.title}” is near its cap"
        return NotificationRequest(
            identifier=f"budget-{month}-category-{row.key}-{state.value}",
            title=title,
            body=f"{spent} spent of the {cap} cap for {month}.",
        )


def deliver_all(
    sink: Optional[NotificationSink], requests: Iterable[NotificationRequest]
) -> int:
    if sink is None:
        return 0
    count = 0
    for request in requests:
        sink.deliver(request)
        count += 1
    return count
