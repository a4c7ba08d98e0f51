from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from database import Base
from models import Frequency, Transaction, TransactionType
from periods import add_months, advance_date
from recurrence import RecurringEngine
from schemas import TransactionIn
from services import TransactionService


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _template(session: Session, frequency: Frequency, start: date) -> Transaction:
    return TransactionService(session).create(
        TransactionIn(
            type=TransactionType.expense,
            amount=Decimal("1200.00"),
            date=start,
            tags="rent,home",
            is_recurring=True,
            frequency=frequency,
        )
    )


def test_advance_date_by_frequency():
    assert advance_date(date(2024, 1, 1), Frequency.daily) == date(2024, 1, 2)
    assert advance_date(date(2024, 1, 1), Frequency.weekly) == date(2024, 1, 8)
    assert advance_date(date(2024, 1, 1), Frequency.monthly) == date(2024, 2, 1)


def test_monthly_advance_snaps_to_month_end():
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
    assert add_months(date(2024, 12, 15), 1) == date(2025, 1, 15)


def test_recurring_input_requires_frequency():
    with pytest.raises(ValueError):
        TransactionIn(
            type=TransactionType.expense,
            amount=Decimal("10.00"),
            date=date(2024, 1, 1),
            is_recurring=True,
        )


def test_new_template_is_scheduled_one_period_out():
    with _session() as session:
        template = _template(session, Frequency.monthly, date(2024, 1, 1))
        assert template.next_run_date == date(2024, 2, 1)


def test_monthly_template_posts_only_when_due():
    with _session() as session:
        template = _template(session, Frequency.monthly, date(2024, 1, 1))
        engine = RecurringEngine(session)

        assert engine.post_due(date(2024, 1, 15)) == 0
        assert engine.post_due(date(2024, 2, 1)) == 1

        session.refresh(template)
        assert template.next_run_date == date(2024, 3, 1)
        spawned = session.scalars(
            select(Transaction).where(Transaction.origin_id == template.id)
        ).all()
        assert len(spawned) == 1
        occurrence = spawned[0]
        assert occurrence.date == date(2024, 2, 1)
        assert occurrence.occurrence_date == date(2024, 2, 1)
        assert occurrence.amount_cents == 120000
        assert occurrence.tags == "rent,home"
        assert occurrence.is_recurring is False
        assert occurrence.frequency == Frequency.monthly


def test_second_scan_on_same_day_posts_nothing():
    with _session() as session:
        _template(session, Frequency.monthly, date(2024, 1, 1))
        engine = RecurringEngine(session)

        assert engine.post_due(date(2024, 2, 1)) == 1
        assert engine.post_due(date(2024, 2, 1)) == 0
        total = session.scalars(select(Transaction)).all()
        assert len(total) == 2


def test_overdue_template_posts_once_per_day_across_sessions():
    engine = create_engine("sqlite:///:memory:", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        template_id = _template(session, Frequency.weekly, date(2024, 1, 1)).id

    with Session(engine) as session:
        assert RecurringEngine(session).post_due(date(2024, 1, 31)) == 1
    with Session(engine) as session:
        assert RecurringEngine(session).post_due(date(2024, 1, 31)) == 0
        template = session.get(Transaction, template_id)
        assert template.next_run_date == date(2024, 1, 15)

    with Session(engine) as session:
        assert RecurringEngine(session).post_due(date(2024, 2, 1)) == 1
        template = session.get(Transaction, template_id)
        assert template.next_run_date == date(2024, 1, 22)
        spawned = session.scalars(
            select(Transaction).where(Transaction.origin_id == template_id)
        ).all()
        assert sorted((t.occurrence_date, t.date) for t in spawned) == [
            (date(2024, 1, 8), date(2024, 1, 31)),
            (date(2024, 1, 15), date(2024, 2, 1)),
        ]


def test_spawned_rows_are_not_templates():
    with _session() as session:
        _template(session, Frequency.daily, date(2024, 1, 1))
        engine = RecurringEngine(session)
        engine.post_due(date(2024, 1, 2))
        engine.post_due(date(2024, 1, 3))

        templates = TransactionService(session).list_recurring()
        assert len(templates) == 1


def test_deleting_template_keeps_occurrences():
    with _session() as session:
        template = _template(session, Frequency.daily, date(2024, 1, 1))
        RecurringEngine(session).post_due(date(2024, 1, 2))

        TransactionService(session).delete(template.id)

        remaining = session.scalars(select(Transaction)).all()
        assert len(remaining) == 1
        assert remaining[0].origin_id is None


def test_template_due_mid_month_posts_on_scan_day():
    with _session() as session:
        template = TransactionService(session).create(
            TransactionIn(
                type=TransactionType.expense,
                amount=Decimal("50.00"),
                date=date(2023, 12, 1),
                is_recurring=True,
                frequency=Frequency.monthly,
                next_run_date=date(2024, 1, 1),
            )
        )

        assert RecurringEngine(session).post_due(date(2024, 1, 15)) == 1

        session.refresh(template)
        assert template.next_run_date == date(2024, 2, 1)
        spawned = session.scalars(
            select(Transaction).where(Transaction.origin_id == template.id)
        ).one()
        assert spawned.date == date(2024, 1, 15)
