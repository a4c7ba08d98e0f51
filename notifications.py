import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Iterable

from schemas import (
    CategoryBudgetProgress,
    LimitStatus,
    SavingsGoalOut,
    SpendingSummary,
)
from services import goal_progress

logger = logging.getLogger(__name__)

CATEGORY_WARNING_PERCENT = 90
GOAL_REMINDER_PERCENT = 90


class AlertKind(str, Enum):
    daily_limit = "daily_limit"
    weekly_limit = "weekly_limit"
    category_budget = "category_budget"
    savings_goal = "savings_goal"


class AlertLevel(str, Enum):
    warning = "warning"
    exceeded = "exceeded"
    reminder = "reminder"


@dataclass(frozen=True)
class Alert:
    kind: AlertKind
    level: AlertLevel
    subject: str
    spent: Decimal
    limit: Decimal
    percent: int
    currency: str = "$"

    @property
    def title(self) -> str:
        if self.kind == AlertKind.savings_goal:
            return f"{self.subject} goal almost reached"
        if self.level == AlertLevel.exceeded:
            return f"{self.subject} exceeded"
        return f"{self.subject} warning"

    @property
    def message(self) -> str:
        remaining = self.limit - self.spent
        if self.level == AlertLevel.exceeded:
            return (
                f"Limit {self.currency}{self.limit:.2f}, spent {self.currency}"
                f"{self.spent:.2f}, over by {self.currency}{abs(remaining):.2f}"
            )
        return (
            f"Limit {self.currency}{self.limit:.2f}, spent {self.currency}"
            f"{self.spent:.2f}, remaining {self.currency}{remaining:.2f} "
            f"({self.percent}% used)"
        )


def spending_limit_alerts(summary: SpendingSummary, currency: str) -> list[Alert]:
    alerts: list[Alert] = []
    windows = (
        (AlertKind.daily_limit, "Daily limit", summary.daily),
        (AlertKind.weekly_limit, "Weekly limit", summary.weekly),
    )
    for kind, subject, progress in windows:
        if progress is None or progress.status in (LimitStatus.none, LimitStatus.ok):
            continue
        level = (
            AlertLevel.exceeded
            if progress.status == LimitStatus.over
            else AlertLevel.warning
        )
        alerts.append(
            Alert(
                kind=kind,
                level=level,
                subject=subject,
                spent=progress.spent,
                limit=progress.limit,
                percent=progress.percent,
                currency=currency,
            )
        )
    return alerts


def category_budget_alerts(
    progress: Iterable[CategoryBudgetProgress], currency: str
) -> list[Alert]:
    alerts: list[Alert] = []
    for row in progress:
        if row.budget <= 0:
            continue
        if row.spent >= row.budget:
            level = AlertLevel.exceeded
        elif row.spent * 100 >= row.budget * CATEGORY_WARNING_PERCENT:
            level = AlertLevel.warning
        else:
            continue
        alerts.append(
            Alert(
                kind=AlertKind.category_budget,
                level=level,
                subject=f"{row.category_name} budget",
                spent=row.spent,
                limit=row.budget,
                percent=row.percent,
                currency=currency,
            )
        )
    return alerts


def goal_alerts(goals: Iterable[SavingsGoalOut], currency: str) -> list[Alert]:
    alerts: list[Alert] = []
    for goal in goals:
        progress = goal_progress(goal)
        if progress.percent < GOAL_REMINDER_PERCENT or progress.is_complete:
            continue
        alerts.append(
            Alert(
                kind=AlertKind.savings_goal,
                level=AlertLevel.reminder,
                subject=goal.name,
                spent=goal.current_amount,
                limit=goal.target_amount,
                percent=progress.percent,
                currency=currency,
            )
        )
    return alerts


class Notifier(ABC):
    @abstractmethod
    def deliver(self, alerts: list[Alert]) -> None:
        ...


class LoggingNotifier(Notifier):
    def deliver(self, alerts: list[Alert]) -> None:
        for alert in alerts:
            logger.warning(
                f"budget_alert: kind={alert.kind.value} level={alert.level.value} "
                f"title={alert.title!r} message={alert.message!r}"
            )


class CollectingNotifier(Notifier):
    """Keeps delivered alerts in memory; handy for UIs that poll."""

    def __init__(self) -> None:
        self.delivered: list[Alert] = []

    def deliver(self, alerts: list[Alert]) -> None:
        self.delivered.extend(alerts)
