from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import Category, Transaction, TransactionType
from schemas import (
    AppSettings,
    CategoryIn,
    CategoryOut,
    SavingsGoalIn,
    SavingsGoalOut,
    SavingsGoalUpdate,
    SETTING_DB_OWNER,
    TransactionIn,
    TransactionOut,
    from_cents,
    to_cents,
)
from services import (
    CategoryService,
    DuplicateCategory,
    NotFound,
    SavingsGoalService,
    SettingsService,
    TransactionService,
    clear_all_data,
    goal_progress,
)


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _expense(amount: str, day: date, category_id=None, tags=None) -> TransactionIn:
    return TransactionIn(
        type=TransactionType.expense,
        amount=Decimal(amount),
        date=day,
        category_id=category_id,
        tags=tags,
    )


def test_money_converts_through_integer_cents():
    assert to_cents(Decimal("12.345")) == 1235
    assert to_cents(Decimal("0.10")) + to_cents(Decimal("0.20")) == 30
    assert from_cents(30) == Decimal("0.30")


def test_duplicate_category_names_are_rejected_case_insensitive():
    with _session() as session:
        service = CategoryService(session)
        service.create(CategoryIn(name="Food"))
        with pytest.raises(DuplicateCategory):
            service.create(CategoryIn(name="  food "))
        assert len(service.list_all()) == 1


def test_deleting_category_nulls_transaction_references():
    with _session() as session:
        category = CategoryService(session).create(CategoryIn(name="Food"))
        txn = TransactionService(session).create(
            _expense("12.50", date(2024, 3, 1), category.id)
        )

        CategoryService(session).delete(category.id)

        row = TransactionService(session).read(txn.id)
        assert row.category_id is None
        assert row.category_name is None
        assert row.amount == Decimal("12.50")


def test_remove_duplicates_keeps_lowest_id_and_repoints_transactions():
    with _session() as session:
        first = Category(name="Food")
        second = Category(name="food ")
        other = Category(name="Travel")
        session.add_all([first, second, other])
        session.flush()
        session.add(
            Transaction(
                type=TransactionType.expense,
                category_id=second.id,
                amount_cents=500,
                date=date(2024, 3, 1),
            )
        )
        session.commit()

        removed = CategoryService(session).remove_duplicates()

        assert removed == 1
        names = [c.name for c in CategoryService(session).list_all()]
        assert names == ["Food", "Travel"]
        txn = TransactionService(session).list_all()[0]
        assert txn.category_id == first.id


def test_transaction_with_unknown_category_is_rejected():
    with _session() as session:
        with pytest.raises(NotFound):
            TransactionService(session).create(_expense("5.00", date(2024, 3, 1), 99))


def test_transaction_queries():
    with _session() as session:
        food = CategoryService(session).create(CategoryIn(name="Food"))
        service = TransactionService(session)
        service.create(_expense("5.00", date(2024, 2, 28), food.id, tags="lunch,work"))
        service.create(_expense("7.00", date(2024, 3, 2), food.id, tags="Dinner"))
        service.create(_expense("9.00", date(2024, 3, 5)))

        march = service.list_for_month(2024, 3)
        assert [t.date for t in march] == [date(2024, 3, 5), date(2024, 3, 2)]
        assert len(service.list_for_category(food.id)) == 2
        assert [t.amount for t in service.search_tag("dinner")] == [Decimal("7.00")]
        assert service.search_tag("lunch")[0].tag_list == ["lunch", "work"]


def test_update_transaction_replaces_fields():
    with _session() as session:
        service = TransactionService(session)
        txn = service.create(_expense("5.00", date(2024, 3, 1)))
        service.update(
            txn.id,
            TransactionIn(
                type=TransactionType.income,
                amount=Decimal("50.00"),
                date=date(2024, 3, 2),
            ),
        )
        row = service.read(txn.id)
        assert row.type == TransactionType.income
        assert row.amount == Decimal("50.00")
        assert row.date == date(2024, 3, 2)


def test_goal_contributions_accumulate():
    with _session() as session:
        service = SavingsGoalService(session)
        goal = service.create(SavingsGoalIn(name="Bike", target_amount=Decimal("100")))
        service.contribute(goal.id, Decimal("50"))
        service.contribute(goal.id, Decimal("30"))

        out = SavingsGoalOut.from_model(service.get(goal.id))
        assert out.current_amount == Decimal("80.00")
        progress = goal_progress(out)
        assert progress.percent == 80
        assert progress.remaining == Decimal("20.00")
        assert progress.is_complete is False


def test_goal_contribution_must_be_positive():
    with _session() as session:
        service = SavingsGoalService(session)
        goal = service.create(SavingsGoalIn(name="Bike", target_amount=Decimal("100")))
        with pytest.raises(ValueError):
            service.contribute(goal.id, Decimal("0"))


def test_goal_update_keeps_current_amount_unless_given():
    with _session() as session:
        service = SavingsGoalService(session)
        goal = service.create(
            SavingsGoalIn(name="Bike", target_amount=Decimal("100"), current_amount=Decimal("40"))
        )
        service.update(goal.id, SavingsGoalUpdate(name="E-bike", target_amount=Decimal("900")))
        updated = SavingsGoalOut.from_model(service.get(goal.id))
        assert updated.name == "E-bike"
        assert updated.current_amount == Decimal("40.00")


def test_settings_round_trip_through_typed_record():
    with _session() as session:
        service = SettingsService(session)
        record = AppSettings(
            currency="€",
            daily_limit=Decimal("25.50"),
            weekly_limit=Decimal("150"),
            is_premium=True,
            auto_sync_enabled=False,
        )
        service.save(record)
        session.commit()

        assert service.get("currency") == "€"
        assert service.get("dailyLimit") == "25.50"
        assert service.get("isPremium") == "true"
        loaded = service.load()
        assert loaded.currency == "€"
        assert loaded.daily_limit == Decimal("25.50")
        assert loaded.weekly_limit == Decimal("150.00")
        assert loaded.is_premium is True
        assert loaded.auto_sync_enabled is False


def test_malformed_settings_fall_back_to_defaults():
    with _session() as session:
        service = SettingsService(session)
        service.set("dailyLimit", "abc")
        service.set("weeklyLimit", "-5")
        loaded = service.load()
        assert loaded.daily_limit == Decimal("0")
        assert loaded.weekly_limit == Decimal("0")
        assert loaded.currency == "$"
        assert loaded.auto_sync_enabled is True


def test_clear_all_data_preserves_owner_marker():
    with _session() as session:
        CategoryService(session).create(CategoryIn(name="Food"))
        TransactionService(session).create(_expense("5.00", date(2024, 3, 1)))
        SavingsGoalService(session).create(
            SavingsGoalIn(name="Bike", target_amount=Decimal("100"))
        )
        SettingsService(session).set(SETTING_DB_OWNER, "u1")
        SettingsService(session).set("currency", "€")

        clear_all_data(session)
        session.commit()

        assert CategoryService(session).list_all() == []
        assert TransactionService(session).list_all() == []
        assert SavingsGoalService(session).list_all() == []
        assert SettingsService(session).all() == {SETTING_DB_OWNER: "u1"}


def test_settings_save_keeps_untouched_keys():
    with _session() as session:
        service = SettingsService(session)
        service.set(SETTING_DB_OWNER, "u1")
        service.save(service.load().model_copy(update={"currency": "£"}))
        session.commit()

        loaded = service.load()
        assert loaded.currency == "£"
        assert loaded.db_owner_uid == "u1"
        assert service.get("autoSyncEnabled") == "true"


def test_merge_never_overwrites_a_local_transaction():
    with _session() as session:
        service = TransactionService(session)
        local = service.create(_expense("99.00", date(2024, 3, 1)))
        remote = TransactionOut(
            id=local.id,
            type=TransactionType.income,
            amount=Decimal("10.00"),
            date=date(2024, 2, 1),
        )

        merged_id = service.merge(remote)
        session.commit()

        assert merged_id != local.id
        kept = service.get(local.id)
        assert kept.type == TransactionType.expense
        assert kept.amount_cents == 9900
        assert service.get(merged_id).amount_cents == 1000


def test_merge_matches_existing_rows_one_to_one():
    with _session() as session:
        service = TransactionService(session)
        first = service.create(_expense("4.50", date(2024, 3, 1)))
        remote = TransactionOut.from_model(first, None)

        assert service.merge(remote) == first.id
        second = service.merge(remote, claimed=[first.id])
        session.commit()

        assert second != first.id
        assert len(service.list_all()) == 2


def test_merge_category_by_name_and_free_id():
    with _session() as session:
        service = CategoryService(session)
        travel = service.create(CategoryIn(name="Travel"))
        food = service.create(CategoryIn(name="Food"))

        assert service.merge(
            CategoryOut(id=travel.id, name="food", monthly_budget=Decimal("0"))
        ) == food.id
        new_id = service.merge(
            CategoryOut(id=travel.id, name="Books", monthly_budget=Decimal("0"))
        )
        session.commit()

        assert new_id not in (travel.id, food.id)
        assert service.get(travel.id).name == "Travel"
        assert service.get(new_id).name == "Books"


def test_merge_goal_skips_existing_goal():
    with _session() as session:
        service = SavingsGoalService(session)
        goal = service.create(SavingsGoalIn(name="Bike", target_amount=Decimal("100")))
        service.contribute(goal.id, Decimal("30"))
        remote = SavingsGoalOut(
            id=goal.id,
            name="Bike",
            target_amount=Decimal("100.00"),
            current_amount=Decimal("0.00"),
        )

        assert service.merge(remote) == goal.id
        assert service.get(goal.id).current_amount_cents == 3000
