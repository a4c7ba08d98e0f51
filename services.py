from __future__ import annotations

import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.orm import Session

from models import AppSetting, Category, SavingsGoal, Transaction, TransactionType
from periods import (
    daily_window,
    month_end,
    month_key,
    month_start,
    trailing_months,
    weekly_window,
)
from schemas import (
    UNCATEGORIZED_LABEL,
    AppSettings,
    CategoryBudgetProgress,
    CategoryIn,
    CategoryOut,
    CategorySpend,
    DashboardData,
    GoalProgress,
    LimitProgress,
    LimitStatus,
    MonthlyTrend,
    SavingsGoalIn,
    SavingsGoalOut,
    SavingsGoalUpdate,
    SETTING_DB_OWNER,
    SpendingSummary,
    TopCategory,
    TransactionIn,
    TransactionOut,
    from_cents,
    to_cents,
)

logger = logging.getLogger(__name__)

WARNING_RATIO = Decimal("80")
OVER_RATIO = Decimal("100")


class NotFound(ValueError):
    pass


class DuplicateCategory(ValueError):
    pass


def _free_id(session: Session, model, wanted: int) -> Optional[int]:
    # None lets the database assign the next id
    return None if session.get(model, wanted) is not None else wanted


def _prefer_id(model, wanted: int):
    return case((model.id == wanted, 0), else_=1), model.id


def _schedulable(data: TransactionOut) -> bool:
    return (
        data.is_recurring
        and data.frequency is not None
        and data.next_run_date is not None
    )


def _percent(value: Decimal, total: Decimal) -> Decimal:
    return Decimal(value) / Decimal(total) * 100


def _round_percent(ratio: Decimal) -> int:
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _clamp_width(percent: int) -> int:
    return max(0, min(100, percent))


def limit_progress(spent: Decimal, limit: Decimal) -> LimitProgress:
    if limit <= 0:
        # zero means no limit configured
        return LimitProgress(
            spent=spent, limit=limit, percent=0, width=0, status=LimitStatus.none
        )
    ratio = _percent(spent, limit)
    percent = _round_percent(ratio)
    if ratio >= OVER_RATIO:
        status = LimitStatus.over
    elif ratio >= WARNING_RATIO:
        status = LimitStatus.warning
    else:
        status = LimitStatus.ok
    return LimitProgress(
        spent=spent,
        limit=limit,
        percent=percent,
        width=_clamp_width(percent),
        status=status,
    )


def goal_progress(goal: SavingsGoalOut) -> GoalProgress:
    ratio = _percent(goal.current_amount, goal.target_amount)
    percent = _round_percent(ratio)
    return GoalProgress(
        goal_id=goal.id,
        percent=percent,
        width=_clamp_width(percent),
        remaining=max(Decimal("0.00"), goal.target_amount - goal.current_amount),
        is_complete=goal.is_complete,
    )


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Category]:
        stmt = select(Category).order_by(Category.name, Category.id)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFound("Category not found")
        return category

    def find_by_name(self, name: str) -> Optional[Category]:
        stmt = (
            select(Category)
            .where(func.lower(func.trim(Category.name)) == name.strip().lower())
            .order_by(Category.id)
            .limit(1)
        )
        return self.session.scalar(stmt)

    def create(self, data: CategoryIn) -> Category:
        clean_name = data.name.strip()
        if not clean_name:
            raise ValueError("Category name cannot be empty")
        if self.find_by_name(clean_name):
            raise DuplicateCategory("Category with this name already exists")
        category = Category(
            name=clean_name,
            monthly_budget_cents=to_cents(data.monthly_budget),
            exclude_from_limits=data.exclude_from_limits,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update_budget(self, category_id: int, monthly_budget: Decimal) -> Category:
        if monthly_budget < 0:
            raise ValueError("Budget cannot be negative")
        category = self.get(category_id)
        category.monthly_budget_cents = to_cents(monthly_budget)
        self.session.commit()
        return category

    def set_exclude_from_limits(self, category_id: int, exclude: bool) -> Category:
        category = self.get(category_id)
        category.exclude_from_limits = exclude
        self.session.commit()
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        self.session.execute(
            update(Transaction)
            .where(Transaction.category_id == category.id)
            .values(category_id=None)
        )
        self.session.delete(category)
        self.session.commit()

    def remove_duplicates(self) -> int:
        """Collapse categories sharing a name, keeping the lowest id."""
        rows = self.session.execute(
            select(Category.id, Category.name).order_by(Category.id)
        ).all()
        kept: dict[str, int] = {}
        duplicates: dict[int, int] = {}
        for row in rows:
            key = row.name.strip().lower()
            if key in kept:
                duplicates[row.id] = kept[key]
            else:
                kept[key] = row.id

        if not duplicates:
            return 0
        for duplicate_id, keep_id in duplicates.items():
            self.session.execute(
                update(Transaction)
                .where(Transaction.category_id == duplicate_id)
                .values(category_id=keep_id)
            )
        self.session.execute(delete(Category).where(Category.id.in_(list(duplicates))))
        self.session.commit()
        logger.info(f"categories_deduplicated: removed={len(duplicates)}")
        return len(duplicates)

    def merge(self, data: CategoryOut) -> int:
        """Fold a restored category into the store and return its local id.

        Names are unique, so a local category with the same name is taken as
        the same category and left as it is. New categories keep their remote
        id when it is free. Nothing is committed here.
        """
        existing = self.find_by_name(data.name)
        if existing is not None:
            return existing.id
        category = Category(
            id=_free_id(self.session, Category, data.id),
            name=data.name.strip(),
            monthly_budget_cents=to_cents(data.monthly_budget),
            exclude_from_limits=data.exclude_from_limits,
        )
        self.session.add(category)
        self.session.flush()
        return category.id


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _check_category(self, category_id: Optional[int]) -> None:
        if category_id is not None and not self.session.get(Category, category_id):
            raise NotFound("Category not found")

    def create(self, data: TransactionIn) -> Transaction:
        self._check_category(data.category_id)
        txn = Transaction(
            type=data.type,
            category_id=data.category_id,
            amount_cents=to_cents(data.amount),
            date=data.date,
            tags=data.tags or None,
            receipt_uri=data.receipt_uri,
            is_recurring=data.is_recurring,
            frequency=data.frequency,
            next_run_date=data.next_run_date if data.is_recurring else None,
            exclude_from_limits=data.exclude_from_limits,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def read(self, transaction_id: int) -> TransactionOut:
        row = self.session.execute(
            self._joined().where(Transaction.id == transaction_id)
        ).first()
        if row is None:
            raise NotFound("Transaction not found")
        return TransactionOut.from_model(row[0], row[1])

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        self._check_category(data.category_id)
        txn.type = data.type
        txn.category_id = data.category_id
        txn.amount_cents = to_cents(data.amount)
        txn.date = data.date
        txn.tags = data.tags or None
        txn.receipt_uri = data.receipt_uri
        txn.is_recurring = data.is_recurring
        txn.frequency = data.frequency
        txn.next_run_date = data.next_run_date if data.is_recurring else None
        txn.exclude_from_limits = data.exclude_from_limits
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.execute(
            update(Transaction)
            .where(Transaction.origin_id == txn.id)
            .values(origin_id=None)
        )
        self.session.delete(txn)
        self.session.commit()

    @staticmethod
    def _joined():
        return (
            select(Transaction, Category.name)
            .outerjoin(Category, Transaction.category_id == Category.id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )

    def _read_many(self, stmt) -> list[TransactionOut]:
        return [
            TransactionOut.from_model(txn, category_name)
            for txn, category_name in self.session.execute(stmt).all()
        ]

    def list_all(self) -> list[TransactionOut]:
        return self._read_many(self._joined())

    def list_between(self, start: date, end: date) -> list[TransactionOut]:
        return self._read_many(
            self._joined().where(Transaction.date.between(start, end))
        )

    def list_for_month(self, year: int, month: int) -> list[TransactionOut]:
        return self.list_between(month_start(year, month), month_end(year, month))

    def list_for_category(self, category_id: int) -> list[TransactionOut]:
        return self._read_many(
            self._joined().where(Transaction.category_id == category_id)
        )

    def search_tag(self, tag: str) -> list[TransactionOut]:
        like = f"%{tag.strip().lower()}%"
        return self._read_many(
            self._joined().where(
                func.lower(func.coalesce(Transaction.tags, "")).like(like)
            )
        )

    def list_recurring(self) -> list[TransactionOut]:
        return self._read_many(self._joined().where(Transaction.is_recurring.is_(True)))

    def due_recurring(self, today: date) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.is_recurring.is_(True),
                Transaction.next_run_date.is_not(None),
                Transaction.next_run_date <= today,
            )
            .order_by(Transaction.next_run_date, Transaction.id)
        )
        return self.session.scalars(stmt).all()

    def _find_same(self, data: TransactionOut, claimed: Iterable[int]) -> Optional[int]:
        if data.origin_id is not None and data.occurrence_date is not None:
            criteria = [
                Transaction.origin_id == data.origin_id,
                Transaction.occurrence_date == data.occurrence_date,
            ]
        else:
            # next_run_date moves on every scan, so it is not part of the identity
            criteria = [
                Transaction.type == data.type,
                Transaction.amount_cents == to_cents(data.amount),
                Transaction.date == data.date,
                Transaction.category_id.is_not_distinct_from(data.category_id),
                Transaction.tags.is_not_distinct_from(data.tags or None),
                Transaction.is_recurring.is_(_schedulable(data)),
                Transaction.frequency.is_not_distinct_from(data.frequency),
                Transaction.exclude_from_limits.is_(data.exclude_from_limits),
                Transaction.origin_id.is_(None),
            ]
        stmt = (
            select(Transaction.id)
            .where(*criteria, Transaction.id.not_in(list(claimed)))
            .order_by(*_prefer_id(Transaction, data.id))
            .limit(1)
        )
        return self.session.scalar(stmt)

    def merge(self, data: TransactionOut, claimed: Iterable[int] = ()) -> int:
        """Fold a restored transaction into the store and return its local id.

        ``data`` must already carry local category and origin ids. A local row
        with the same content, and not in ``claimed``, is the same transaction
        and is left as it is. Anything else is inserted, under the remote id
        when that id is free. Nothing is committed here.
        """
        claimed = list(claimed)
        existing = self._find_same(data, claimed)
        if existing is not None:
            return existing
        category_id = data.category_id
        if category_id is not None and not self.session.get(Category, category_id):
            category_id = None
        origin_id = data.origin_id
        if origin_id is not None and not self.session.get(Transaction, origin_id):
            origin_id = None
        is_recurring = _schedulable(data)
        txn = Transaction(
            id=_free_id(self.session, Transaction, data.id),
            type=data.type,
            category_id=category_id,
            amount_cents=to_cents(data.amount),
            date=data.date,
            tags=data.tags or None,
            receipt_uri=data.receipt_uri,
            is_recurring=is_recurring,
            frequency=data.frequency,
            next_run_date=data.next_run_date if is_recurring else None,
            exclude_from_limits=data.exclude_from_limits,
            origin_id=origin_id,
            occurrence_date=data.occurrence_date if origin_id is not None else None,
        )
        self.session.add(txn)
        self.session.flush()
        return txn.id


class SavingsGoalService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[SavingsGoal]:
        stmt = select(SavingsGoal).order_by(SavingsGoal.id.desc())
        return self.session.scalars(stmt).all()

    def get(self, goal_id: int) -> SavingsGoal:
        goal = self.session.get(SavingsGoal, goal_id)
        if not goal:
            raise NotFound("Savings goal not found")
        return goal

    def create(self, data: SavingsGoalIn) -> SavingsGoal:
        goal = SavingsGoal(
            name=data.name.strip(),
            target_amount_cents=to_cents(data.target_amount),
            current_amount_cents=to_cents(data.current_amount),
            deadline=data.deadline,
        )
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def contribute(self, goal_id: int, amount: Decimal) -> SavingsGoal:
        if amount <= 0:
            raise ValueError("Contribution must be positive")
        goal = self.get(goal_id)
        goal.current_amount_cents = goal.current_amount_cents + to_cents(amount)
        self.session.commit()
        return goal

    def update(self, goal_id: int, data: SavingsGoalUpdate) -> SavingsGoal:
        goal = self.get(goal_id)
        goal.name = data.name.strip()
        goal.target_amount_cents = to_cents(data.target_amount)
        goal.deadline = data.deadline
        if data.current_amount is not None:
            goal.current_amount_cents = to_cents(data.current_amount)
        self.session.commit()
        return goal

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        self.session.delete(goal)
        self.session.commit()

    def merge(self, data: SavingsGoalOut, claimed: Iterable[int] = ()) -> int:
        """Fold a restored goal into the store and return its local id.

        Goals match on name, target and deadline; the saved amount keeps
        moving locally. Nothing is committed here.
        """
        stmt = (
            select(SavingsGoal.id)
            .where(
                SavingsGoal.name == data.name,
                SavingsGoal.target_amount_cents == to_cents(data.target_amount),
                SavingsGoal.deadline.is_not_distinct_from(data.deadline),
                SavingsGoal.id.not_in(list(claimed)),
            )
            .order_by(*_prefer_id(SavingsGoal, data.id))
            .limit(1)
        )
        existing = self.session.scalar(stmt)
        if existing is not None:
            return existing
        goal = SavingsGoal(
            id=_free_id(self.session, SavingsGoal, data.id),
            name=data.name,
            target_amount_cents=to_cents(data.target_amount),
            current_amount_cents=to_cents(data.current_amount),
            deadline=data.deadline,
        )
        self.session.add(goal)
        self.session.flush()
        return goal.id


class SettingsService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, key: str) -> Optional[str]:
        return self.session.scalar(select(AppSetting.value).where(AppSetting.key == key))

    def _put(self, key: str, value: str) -> None:
        setting = self.session.scalar(select(AppSetting).where(AppSetting.key == key))
        if setting is None:
            self.session.add(AppSetting(key=key, value=value))
        else:
            setting.value = value

    def set(self, key: str, value: str) -> None:
        self._put(key, value)
        self.session.commit()

    def all(self) -> dict[str, str]:
        rows = self.session.execute(select(AppSetting.key, AppSetting.value)).all()
        return {row.key: row.value for row in rows}

    def load(self) -> AppSettings:
        return AppSettings.from_store(self.all())

    def save(self, settings: AppSettings) -> AppSettings:
        """Write every key of ``settings``; the caller owns the commit."""
        for key, value in settings.to_store().items():
            self._put(key, value)
        self.session.flush()
        return settings

    def clear(self, preserve: Iterable[str] = (SETTING_DB_OWNER,)) -> None:
        self.session.execute(delete(AppSetting).where(AppSetting.key.not_in(list(preserve))))
        self.session.commit()


def clear_all_data(session: Session) -> None:
    """Wipe the ledger, goals and settings; the database owner marker survives."""
    session.execute(delete(Transaction))
    session.execute(delete(Category))
    session.execute(delete(SavingsGoal))
    SettingsService(session).clear()
    logger.info("local_store_cleared")


class MetricsService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _sum_cents(self, *criteria) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            *criteria
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def dashboard(self, year: int, month: int) -> DashboardData:
        start = month_start(year, month)
        end = month_end(year, month)
        in_month = Transaction.date.between(start, end)

        income = self._sum_cents(Transaction.type == TransactionType.income, in_month)
        expenses = self._sum_cents(
            Transaction.type == TransactionType.expense, in_month
        )
        budget = int(
            self.session.execute(
                select(func.coalesce(func.sum(Category.monthly_budget_cents), 0))
            ).scalar_one()
            or 0
        )

        breakdown_stmt = (
            select(
                Transaction.category_id,
                Category.name,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
            )
            .outerjoin(Category, Transaction.category_id == Category.id)
            .where(Transaction.type == TransactionType.expense, in_month)
            .group_by(Transaction.category_id, Category.name)
        )
        buckets: dict[Optional[int], CategorySpend] = {}
        for row in self.session.execute(breakdown_stmt):
            # dangling references (category row gone) land in the same bucket as nulls
            key = row.category_id if row.name is not None else None
            previous = buckets.get(key)
            amount = from_cents(int(row.total or 0))
            if previous is not None:
                amount += previous.amount
            buckets[key] = CategorySpend(
                category_id=key,
                category_name=row.name if row.name is not None else UNCATEGORIZED_LABEL,
                amount=amount,
            )
        by_category = sorted(
            buckets.values(), key=lambda item: (-item.amount, item.category_name)
        )

        return DashboardData(
            year=year,
            month=month,
            total_income=from_cents(income),
            total_expenses=from_cents(expenses),
            total_budget=from_cents(budget),
            remaining_budget=from_cents(budget - expenses),
            expenses_by_category=by_category,
        )

    def spending_between(self, start: date, end: date) -> Decimal:
        stmt = (
            select(func.coalesce(func.sum(Transaction.amount_cents), 0))
            .select_from(Transaction)
            .outerjoin(Category, Transaction.category_id == Category.id)
            .where(
                Transaction.type == TransactionType.expense,
                Transaction.date.between(start, end),
                Transaction.exclude_from_limits.is_(False),
                or_(
                    Category.exclude_from_limits.is_(None),
                    Category.exclude_from_limits.is_(False),
                ),
            )
        )
        return from_cents(int(self.session.execute(stmt).scalar_one() or 0))

    def spending_summary(
        self, today: date, daily_limit: Decimal, weekly_limit: Decimal
    ) -> SpendingSummary:
        day = daily_window(today)
        week = weekly_window(today)
        daily = self.spending_between(day.start, day.end)
        weekly = self.spending_between(week.start, week.end)
        return SpendingSummary(
            daily_spending=daily,
            weekly_spending=weekly,
            daily=limit_progress(daily, daily_limit),
            weekly=limit_progress(weekly, weekly_limit),
        )

    def category_budget_progress(
        self, year: int, month: int
    ) -> list[CategoryBudgetProgress]:
        start = month_start(year, month)
        end = month_end(year, month)
        stmt = (
            select(
                Category.id,
                Category.name,
                Category.monthly_budget_cents,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("spent"),
            )
            .outerjoin(
                Transaction,
                (Transaction.category_id == Category.id)
                & (Transaction.type == TransactionType.expense)
                & Transaction.date.between(start, end),
            )
            .where(Category.monthly_budget_cents > 0)
            .group_by(Category.id, Category.name, Category.monthly_budget_cents)
            .order_by(Category.name)
        )
        out: list[CategoryBudgetProgress] = []
        for row in self.session.execute(stmt):
            budget = from_cents(row.monthly_budget_cents)
            spent = from_cents(int(row.spent or 0))
            percent = _round_percent(_percent(spent, budget))
            out.append(
                CategoryBudgetProgress(
                    category_id=row.id,
                    category_name=row.name,
                    budget=budget,
                    spent=spent,
                    percent=percent,
                    width=_clamp_width(percent),
                )
            )
        return out


class InsightsService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def monthly_trends(self, today: date, months: int = 6) -> list[MonthlyTrend]:
        if months <= 0:
            return []
        window = trailing_months(today, months)
        start = window[0]
        last = window[-1]
        end = month_end(last.year, last.month)

        label = func.strftime("%Y-%m", Transaction.date).label("month")
        stmt = (
            select(
                label,
                func.coalesce(
                    func.sum(
                        case(
                            (
                                Transaction.type == TransactionType.expense,
                                Transaction.amount_cents,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ).label("expenses"),
                func.coalesce(
                    func.sum(
                        case(
                            (
                                Transaction.type == TransactionType.income,
                                Transaction.amount_cents,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ).label("income"),
            )
            .where(Transaction.date.between(start, end))
            .group_by(label)
        )
        totals = {
            row.month: (int(row.expenses or 0), int(row.income or 0))
            for row in self.session.execute(stmt)
        }
        out: list[MonthlyTrend] = []
        for first_day in window:
            key = month_key(first_day)
            expenses, income = totals.get(key, (0, 0))
            out.append(
                MonthlyTrend(
                    month=key, expenses=from_cents(expenses), income=from_cents(income)
                )
            )
        return out

    def top_categories(self, limit: int = 3) -> list[TopCategory]:
        total = func.sum(Transaction.amount_cents).label("total")
        stmt = (
            select(Category.name, total)
            .join(Category, Transaction.category_id == Category.id)
            .where(Transaction.type == TransactionType.expense)
            .group_by(Category.id, Category.name)
            .order_by(total.desc(), Category.name)
            .limit(limit)
        )
        return [
            TopCategory(name=row.name, total=from_cents(int(row.total or 0)))
            for row in self.session.execute(stmt)
        ]
