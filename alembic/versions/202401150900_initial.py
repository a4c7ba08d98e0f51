"""initial

Revision ID: 202401150900
Revises:
Create Date: 2024-01-15 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202401150900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column(
            "monthly_budget_cents",
            sa.Integer(),
            nullable=False,
            server_default="0",
        ),
        sa.CheckConstraint(
            "monthly_budget_cents >= 0", name="ck_categories_budget_non_negative"
        ),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("type", sa.String(length=7), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("tags", sa.Text(), nullable=True),
        sa.Column("receipt_uri", sa.Text(), nullable=True),
        sa.Column(
            "is_recurring",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("frequency", sa.String(length=7), nullable=True),
        sa.Column("next_run_date", sa.Date(), nullable=True),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "is_recurring = 0 OR (frequency IS NOT NULL AND next_run_date IS NOT NULL)",
            name="ck_transactions_recurring_schedule",
        ),
    )
    op.create_index("ix_transactions_date", "transactions", ["date"])
    op.create_index(
        "ix_transactions_category_date", "transactions", ["category_id", "date"]
    )

    op.create_table(
        "savings_goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("target_amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "current_amount_cents",
            sa.Integer(),
            nullable=False,
            server_default="0",
        ),
        sa.Column("deadline", sa.Date(), nullable=True),
        sa.CheckConstraint("target_amount_cents > 0", name="ck_goals_target_positive"),
        sa.CheckConstraint(
            "current_amount_cents >= 0", name="ck_goals_current_non_negative"
        ),
    )

    op.create_table(
        "app_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(length=64), nullable=False, unique=True),
        sa.Column("value", sa.Text(), nullable=False),
    )


def downgrade():
    op.drop_table("app_settings")
    op.drop_table("savings_goals")
    op.drop_index("ix_transactions_category_date", table_name="transactions")
    op.drop_index("ix_transactions_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
