"""add recurring origin linkage to transactions

Revision ID: 202405110930
Revises: 202403020800
Create Date: 2024-05-11 09:30:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202405110930"
down_revision = "202403020800"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("transactions") as batch_op:
        batch_op.add_column(sa.Column("origin_id", sa.Integer()))
        batch_op.add_column(sa.Column("occurrence_date", sa.Date()))

    op.create_index(
        "uq_transactions_origin_occurrence",
        "transactions",
        ["origin_id", "occurrence_date"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index("uq_transactions_origin_occurrence", table_name="transactions")
    with op.batch_alter_table("transactions") as batch_op:
        batch_op.drop_column("occurrence_date")
        batch_op.drop_column("origin_id")
