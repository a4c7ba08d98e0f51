import datetime as dt
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import (
    Category,
    Frequency,
    SavingsGoal,
    Transaction,
    TransactionType,
)
from periods import advance_date

CENT = Decimal("0.01")
UNCATEGORIZED_LABEL = "Other"


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    monthly_budget: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    exclude_from_limits: bool = False


class CategoryBudgetIn(BaseModel):
    monthly_budget: Decimal = Field(..., ge=0, decimal_places=2)


class CategoryExcludeIn(BaseModel):
    exclude_from_limits: bool


class TransactionIn(BaseModel):
    type: TransactionType
    category_id: Optional[int] = None
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    date: dt.date
    tags: Optional[str] = Field(default=None, max_length=500)
    receipt_uri: Optional[str] = Field(default=None, max_length=1000)
    is_recurring: bool = False
    frequency: Optional[Frequency] = None
    next_run_date: Optional[dt.date] = None
    exclude_from_limits: bool = False

    @model_validator(mode="after")
    def _fill_schedule(self) -> "TransactionIn":
        if not self.is_recurring:
            return self
        if self.frequency is None:
            raise ValueError("Recurring transactions need a frequency")
        if self.next_run_date is None:
            self.next_run_date = advance_date(self.date, self.frequency)
        return self


class SavingsGoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    target_amount: Decimal = Field(..., gt=0, decimal_places=2)
    current_amount: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    deadline: Optional[date] = None


class SavingsGoalUpdate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    target_amount: Decimal = Field(..., gt=0, decimal_places=2)
    deadline: Optional[date] = None
    current_amount: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)


class ContributionIn(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)


class CurrencyIn(BaseModel):
    currency: str = Field(..., min_length=1, max_length=8)


class LimitIn(BaseModel):
    limit: Decimal = Field(..., ge=0, decimal_places=2)


class ToggleIn(BaseModel):
    enabled: bool


class AuthUserIn(BaseModel):
    uid: str = Field(..., min_length=1)
    email: Optional[str] = None
    email_verified: bool = False
    display_name: Optional[str] = None
    provider_ids: list[str] = Field(default_factory=list)


class CategoryOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    monthly_budget: Decimal
    exclude_from_limits: bool = False

    @classmethod
    def from_model(cls, category: Category) -> "CategoryOut":
        return cls(
            id=category.id,
            name=category.name,
            monthly_budget=from_cents(category.monthly_budget_cents),
            exclude_from_limits=bool(category.exclude_from_limits),
        )


class TransactionOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    type: TransactionType
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    amount: Decimal
    date: dt.date
    tags: Optional[str] = None
    receipt_uri: Optional[str] = None
    is_recurring: bool = False
    frequency: Optional[Frequency] = None
    next_run_date: Optional[dt.date] = None
    exclude_from_limits: bool = False
    origin_id: Optional[int] = None
    occurrence_date: Optional[dt.date] = None

    @classmethod
    def from_model(
        cls, txn: Transaction, category_name: Optional[str] = None
    ) -> "TransactionOut":
        return cls(
            id=txn.id,
            type=txn.type,
            category_id=txn.category_id,
            category_name=category_name,
            amount=from_cents(txn.amount_cents),
            date=txn.date,
            tags=txn.tags,
            receipt_uri=txn.receipt_uri,
            is_recurring=bool(txn.is_recurring),
            frequency=txn.frequency,
            next_run_date=txn.next_run_date,
            exclude_from_limits=bool(txn.exclude_from_limits),
            origin_id=txn.origin_id,
            occurrence_date=txn.occurrence_date,
        )

    @property
    def tag_list(self) -> list[str]:
        if not self.tags:
            return []
        return [tag.strip() for tag in self.tags.split(",") if tag.strip()]


class SavingsGoalOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    target_amount: Decimal
    current_amount: Decimal
    deadline: Optional[date] = None

    @classmethod
    def from_model(cls, goal: SavingsGoal) -> "SavingsGoalOut":
        return cls(
            id=goal.id,
            name=goal.name,
            target_amount=from_cents(goal.target_amount_cents),
            current_amount=from_cents(goal.current_amount_cents),
            deadline=goal.deadline,
        )

    @property
    def is_complete(self) -> bool:
        return self.current_amount >= self.target_amount


class CategorySpend(BaseModel):
    model_config = ConfigDict(frozen=True)

    category_id: Optional[int]
    category_name: str
    amount: Decimal


class DashboardData(BaseModel):
    model_config = ConfigDict(frozen=True)

    year: int
    month: int
    total_income: Decimal = Decimal("0.00")
    total_expenses: Decimal = Decimal("0.00")
    total_budget: Decimal = Decimal("0.00")
    remaining_budget: Decimal = Decimal("0.00")
    expenses_by_category: list[CategorySpend] = Field(default_factory=list)


class MonthlyTrend(BaseModel):
    model_config = ConfigDict(frozen=True)

    month: str
    expenses: Decimal
    income: Decimal


class TopCategory(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    total: Decimal


class LimitStatus(str, Enum):
    none = "none"
    ok = "ok"
    warning = "warning"
    over = "over"


class LimitProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    spent: Decimal
    limit: Decimal
    percent: int
    width: int
    status: LimitStatus


class SpendingSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    daily_spending: Decimal = Decimal("0.00")
    weekly_spending: Decimal = Decimal("0.00")
    daily: Optional[LimitProgress] = None
    weekly: Optional[LimitProgress] = None


class CategoryBudgetProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    category_id: int
    category_name: str
    budget: Decimal
    spent: Decimal
    percent: int
    width: int


class GoalProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    goal_id: int
    percent: int
    width: int
    remaining: Decimal
    is_complete: bool


# Persisted key names are shared with existing installs; do not rename.
SETTING_DB_OWNER = "db_owner_uid"
SETTING_CURRENCY = "currency"
SETTING_DAILY_LIMIT = "dailyLimit"
SETTING_WEEKLY_LIMIT = "weeklyLimit"
SETTING_IS_PREMIUM = "isPremium"
SETTING_AUTO_SYNC = "autoSyncEnabled"
SETTING_ONBOARDING_COMPLETED = "onboarding_completed"
SETTING_ONBOARDING_USER = "onboarding_user_id"
SETTING_PREMIUM_PURCHASE_DATE = "premium_purchase_date"


def _parse_decimal(raw: Optional[str]) -> Decimal:
    if not raw:
        return Decimal("0")
    try:
        value = Decimal(raw)
    except InvalidOperation:
        return Decimal("0")
    if not value.is_finite() or value < 0:
        return Decimal("0")
    return value


def _format_decimal(value: Decimal) -> str:
    return str(Decimal(value).quantize(CENT))


def _parse_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None


class AppSettings(BaseModel):
    """Typed view over the key/value settings table."""

    model_config = ConfigDict(frozen=True)

    currency: str = "$"
    daily_limit: Decimal = Decimal("0")
    weekly_limit: Decimal = Decimal("0")
    is_premium: bool = False
    auto_sync_enabled: bool = True
    onboarding_completed: bool = False
    onboarding_user_id: Optional[str] = None
    db_owner_uid: Optional[str] = None
    premium_purchase_date: Optional[datetime] = None

    @classmethod
    def from_store(cls, raw: Mapping[str, str]) -> "AppSettings":
        return cls(
            currency=raw.get(SETTING_CURRENCY) or "$",
            daily_limit=_parse_decimal(raw.get(SETTING_DAILY_LIMIT)),
            weekly_limit=_parse_decimal(raw.get(SETTING_WEEKLY_LIMIT)),
            is_premium=raw.get(SETTING_IS_PREMIUM) == "true",
            auto_sync_enabled=raw.get(SETTING_AUTO_SYNC) != "false",
            onboarding_completed=raw.get(SETTING_ONBOARDING_COMPLETED) == "1",
            onboarding_user_id=raw.get(SETTING_ONBOARDING_USER) or None,
            db_owner_uid=raw.get(SETTING_DB_OWNER) or None,
            premium_purchase_date=_parse_datetime(
                raw.get(SETTING_PREMIUM_PURCHASE_DATE)
            ),
        )

    def to_store(self) -> dict[str, str]:
        out = {
            SETTING_CURRENCY: self.currency,
            SETTING_DAILY_LIMIT: _format_decimal(self.daily_limit),
            SETTING_WEEKLY_LIMIT: _format_decimal(self.weekly_limit),
            SETTING_IS_PREMIUM: "true" if self.is_premium else "false",
            SETTING_AUTO_SYNC: "true" if self.auto_sync_enabled else "false",
        }
        if self.onboarding_completed:
            out[SETTING_ONBOARDING_COMPLETED] = "1"
        if self.onboarding_user_id:
            out[SETTING_ONBOARDING_USER] = self.onboarding_user_id
        if self.db_owner_uid:
            out[SETTING_DB_OWNER] = self.db_owner_uid
        if self.premium_purchase_date:
            out[SETTING_PREMIUM_PURCHASE_DATE] = self.premium_purchase_date.isoformat()
        return out


class CloudSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    selected_currency: str = Field(default="$", alias="selectedCurrency")
    daily_limit: Decimal = Field(default=Decimal("0"), alias="dailyLimit")
    weekly_limit: Decimal = Field(default=Decimal("0"), alias="weeklyLimit")
    is_premium: bool = Field(default=False, alias="isPremium")
    auto_sync_enabled: bool = Field(default=True, alias="autoSyncEnabled")

    @classmethod
    def from_app_settings(cls, settings: AppSettings) -> "CloudSettings":
        return cls(
            selected_currency=settings.currency,
            daily_limit=settings.daily_limit,
            weekly_limit=settings.weekly_limit,
            is_premium=settings.is_premium,
            auto_sync_enabled=settings.auto_sync_enabled,
        )


class CloudSnapshot(BaseModel):
    categories: list[CategoryOut] = Field(default_factory=list)
    transactions: list[TransactionOut] = Field(default_factory=list)
    savings_goals: list[SavingsGoalOut] = Field(default_factory=list)
    settings: Optional[CloudSettings] = None


class CloudBackup(BaseModel):
    categories: list[dict] = Field(default_factory=list)
    transactions: list[dict] = Field(default_factory=list)
    savings_goals: list[dict] = Field(default_factory=list)
    settings: Optional[dict] = None


class SyncResult(BaseModel):
    success: bool
    message: str
    timestamp: Optional[datetime] = None


class RestoreResult(BaseModel):
    categories: int = 0
    transactions: int = 0
    savings_goals: int = 0
    settings_restored: bool = False
