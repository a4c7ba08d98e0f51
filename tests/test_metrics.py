from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import Transaction, TransactionType
from schemas import CategoryIn, LimitStatus, TransactionIn
from services import (
    CategoryService,
    InsightsService,
    MetricsService,
    TransactionService,
    limit_progress,
)


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _add(session, txn_type, amount, day, category_id=None, exclude=False):
    return TransactionService(session).create(
        TransactionIn(
            type=txn_type,
            amount=Decimal(amount),
            date=day,
            category_id=category_id,
            exclude_from_limits=exclude,
        )
    )


def test_dashboard_totals_and_breakdown():
    with _session() as session:
        food = CategoryService(session).create(
            CategoryIn(name="Food", monthly_budget=Decimal("300"))
        )
        travel = CategoryService(session).create(
            CategoryIn(name="Travel", monthly_budget=Decimal("200"))
        )
        _add(session, TransactionType.income, "2000.00", date(2024, 3, 1))
        _add(session, TransactionType.expense, "40.00", date(2024, 3, 2), food.id)
        _add(session, TransactionType.expense, "60.00", date(2024, 3, 3), travel.id)
        _add(session, TransactionType.expense, "15.00", date(2024, 3, 4))
        _add(session, TransactionType.expense, "999.00", date(2024, 2, 4), food.id)

        data = MetricsService(session).dashboard(2024, 3)

        assert data.total_income == Decimal("2000.00")
        assert data.total_expenses == Decimal("115.00")
        assert data.total_budget == Decimal("500.00")
        assert data.remaining_budget == Decimal("385.00")
        breakdown = [(row.category_name, row.amount) for row in data.expenses_by_category]
        assert breakdown == [
            ("Travel", Decimal("60.00")),
            ("Food", Decimal("40.00")),
            ("Other", Decimal("15.00")),
        ]


def test_dashboard_for_empty_month_is_zero():
    with _session() as session:
        data = MetricsService(session).dashboard(2024, 3)
        assert data.total_expenses == Decimal("0.00")
        assert data.expenses_by_category == []


def test_dangling_category_reference_counts_as_other():
    with _session() as session:
        session.add(
            Transaction(
                type=TransactionType.expense,
                category_id=42,
                amount_cents=700,
                date=date(2024, 3, 2),
            )
        )
        session.commit()
        data = MetricsService(session).dashboard(2024, 3)
        assert [(r.category_name, r.amount) for r in data.expenses_by_category] == [
            ("Other", Decimal("7.00"))
        ]


def test_spending_excludes_flagged_categories_and_transactions():
    with _session() as session:
        rent = CategoryService(session).create(
            CategoryIn(name="Rent", exclude_from_limits=True)
        )
        food = CategoryService(session).create(CategoryIn(name="Food"))
        today = date(2024, 3, 15)
        _add(session, TransactionType.expense, "1200.00", today, rent.id)
        _add(session, TransactionType.expense, "30.00", today, food.id)
        _add(session, TransactionType.expense, "25.00", today, food.id, exclude=True)
        _add(session, TransactionType.income, "500.00", today)
        _add(session, TransactionType.expense, "10.00", date(2024, 3, 8))
        _add(session, TransactionType.expense, "99.00", date(2024, 3, 7))

        summary = MetricsService(session).spending_summary(
            today, Decimal("50"), Decimal("100")
        )

        assert summary.daily_spending == Decimal("30.00")
        assert summary.weekly_spending == Decimal("40.00")
        assert summary.daily.percent == 60
        assert summary.daily.status == LimitStatus.ok
        assert summary.weekly.status == LimitStatus.ok


def test_limit_progress_thresholds():
    assert limit_progress(Decimal("79"), Decimal("100")).status == LimitStatus.ok
    assert limit_progress(Decimal("80"), Decimal("100")).status == LimitStatus.warning
    over = limit_progress(Decimal("150"), Decimal("100"))
    assert over.status == LimitStatus.over
    assert over.percent == 150
    assert over.width == 100
    assert limit_progress(Decimal("10"), Decimal("0")).status == LimitStatus.none


def test_category_budget_progress_only_budgeted_categories():
    with _session() as session:
        food = CategoryService(session).create(
            CategoryIn(name="Food", monthly_budget=Decimal("100"))
        )
        CategoryService(session).create(CategoryIn(name="Misc"))
        _add(session, TransactionType.expense, "95.00", date(2024, 3, 2), food.id)
        _add(session, TransactionType.expense, "50.00", date(2024, 2, 2), food.id)

        rows = MetricsService(session).category_budget_progress(2024, 3)

        assert len(rows) == 1
        assert rows[0].category_name == "Food"
        assert rows[0].spent == Decimal("95.00")
        assert rows[0].percent == 95


def test_monthly_trends_are_zero_filled_oldest_first():
    with _session() as session:
        _add(session, TransactionType.expense, "10.00", date(2024, 1, 10))
        _add(session, TransactionType.income, "100.00", date(2024, 3, 1))
        _add(session, TransactionType.expense, "5.00", date(2023, 6, 1))

        trends = InsightsService(session).monthly_trends(date(2024, 3, 15), months=6)

        assert [t.month for t in trends] == [
            "2023-10",
            "2023-11",
            "2023-12",
            "2024-01",
            "2024-02",
            "2024-03",
        ]
        assert trends[3].expenses == Decimal("10.00")
        assert trends[5].income == Decimal("100.00")
        assert trends[0].expenses == Decimal("0.00")


def test_top_categories_ranked_by_expense_total():
    with _session() as session:
        names = ["Food", "Travel", "Fun", "Books"]
        categories = {}
        for name in names:
            categories[name] = CategoryService(session).create(CategoryIn(name=name))
        amounts = {"Food": "50.00", "Travel": "300.00", "Fun": "20.00", "Books": "80.00"}
        for name, amount in amounts.items():
            _add(session, TransactionType.expense, amount, date(2024, 3, 1), categories[name].id)

        top = InsightsService(session).top_categories()

        assert [row.name for row in top] == ["Travel", "Books", "Food"]
        assert top[0].total == Decimal("300.00")


def test_excluded_rent_counts_in_month_but_not_in_daily_spend():
    with _session() as session:
        rent = CategoryService(session).create(
            CategoryIn(name="Rent", monthly_budget=Decimal("1000"), exclude_from_limits=True)
        )
        today = date(2024, 3, 15)
        _add(session, TransactionType.expense, "1000.00", today, rent.id)

        data = MetricsService(session).dashboard(2024, 3)
        summary = MetricsService(session).spending_summary(
            today, Decimal("100"), Decimal("0")
        )

        assert data.total_expenses == Decimal("1000.00")
        assert data.remaining_budget == Decimal("0.00")
        assert summary.daily_spending == Decimal("0.00")


def test_expenses_in_one_category_are_grouped():
    with _session() as session:
        food = CategoryService(session).create(
            CategoryIn(name="Food", monthly_budget=Decimal("100"))
        )
        _add(session, TransactionType.expense, "50.00", date(2024, 3, 2), food.id)
        _add(session, TransactionType.expense, "30.00", date(2024, 3, 9), food.id)

        data = MetricsService(session).dashboard(2024, 3)

        assert [(r.category_name, r.amount) for r in data.expenses_by_category] == [
            ("Food", Decimal("80.00"))
        ]
        assert data.remaining_budget == Decimal("20.00")
