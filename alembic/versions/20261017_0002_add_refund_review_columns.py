"""add refund review columns

Revision ID: 20261017_0002
Revises: 20261017_0001
Create Date: 2026-10-17 15:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261017_0002"
down_revision: Union[str, None] = "20261017_0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


REVIEW_COLUMNS = (
    ("review_note", sa.String(length=1000)),
    ("reviewed_at", sa.DateTime(timezone=True)),
)


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if "payment_refunds" not in inspector.get_table_names():
        return

    existing_columns = {col["name"] for col in inspector.get_columns("payment_refunds")}
    for name, column_type in REVIEW_COLUMNS:
        if name not in existing_columns:
            op.add_column("payment_refunds", sa.Column(name, column_type, nullable=True))

    existing_indexes = {index["name"] for index in inspector.get_indexes("payment_refunds")}
    if "ix_payment_refunds_tenant_status" not in existing_indexes:
        op.create_index("ix_payment_refunds_tenant_status", "payment_refunds", ["tenant_id", "status"])


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if "payment_refunds" not in inspector.get_table_names():
        return

    existing_indexes = {index["name"] for index in inspector.get_indexes("payment_refunds")}
    if "ix_payment_refunds_tenant_status" in existing_indexes:
        op.drop_index("ix_payment_refunds_tenant_status", table_name="payment_refunds")

    existing_columns = {col["name"] for col in inspector.get_columns("payment_refunds")}
    for name, _ in reversed(REVIEW_COLUMNS):
        if name in existing_columns:
            op.drop_column("payment_refunds", name)
