"""add exclude_from_limits to categories and transactions

Revision ID: 202403020800
Revises: 202401150900
Create Date: 2024-03-02 08:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202403020800"
down_revision = "202401150900"
branch_labels = None
depends_on = None

FIXED_EXPENSE_CATEGORIES = ("Rent", "Mortgage", "Insurance", "Utilities", "Loan Payment")


def upgrade() -> None:
    with op.batch_alter_table("categories") as batch_op:
        batch_op.add_column(
            sa.Column(
                "exclude_from_limits",
                sa.Boolean(),
                nullable=False,
                server_default=sa.false(),
            )
        )

    with op.batch_alter_table("transactions") as batch_op:
        batch_op.add_column(
            sa.Column(
                "exclude_from_limits",
                sa.Boolean(),
                nullable=False,
                server_default=sa.false(),
            )
        )

    categories = sa.table(
        "categories",
        sa.column("name", sa.Text()),
        sa.column("exclude_from_limits", sa.Boolean()),
    )
    op.execute(
        categories.update()
        .where(
            sa.func.lower(sa.func.trim(categories.c.name)).in_(
                [name.lower() for name in FIXED_EXPENSE_CATEGORIES]
            )
        )
        .values(exclude_from_limits=True)
    )


def downgrade() -> None:
    with op.batch_alter_table("transactions") as batch_op:
        batch_op.drop_column("exclude_from_limits")

    with op.batch_alter_table("categories") as batch_op:
        batch_op.drop_column("exclude_from_limits")
