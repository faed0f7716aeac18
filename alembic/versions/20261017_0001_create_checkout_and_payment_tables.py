"""create checkout and payment tables

Revision ID: 20261017_0001
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261017_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _index_exists(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    return index_name in {index["name"] for index in inspector.get_indexes(table_name)}


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


_INDEXES: dict[str, list[tuple[str, list[str]]]] = {
    "checkout_sessions": [
        ("ix_checkout_sessions_tenant_id", ["tenant_id"]),
        ("ix_checkout_sessions_cart_id", ["cart_id"]),
        ("ix_checkout_sessions_user_id", ["user_id"]),
        ("ix_checkout_sessions_payment_transaction_id", ["payment_transaction_id"]),
        ("ix_checkout_sessions_order_id", ["order_id"]),
        ("ix_checkout_sessions_tenant_status_created_at", ["tenant_id", "status", "created_at"]),
        ("ix_checkout_sessions_status_expires_at", ["status", "expires_at"]),
    ],
    "payment_gateway_configs": [
        ("ix_payment_gateway_configs_tenant_id", ["tenant_id"]),
        ("ix_payment_gateway_configs_tenant_active_sort", ["tenant_id", "is_active", "sort_order"]),
    ],
    "payment_transactions": [
        ("ix_payment_transactions_tenant_id", ["tenant_id"]),
        ("ix_payment_transactions_gateway_config_id", ["gateway_config_id"]),
        ("ix_payment_transactions_checkout_session_id", ["checkout_session_id"]),
        ("ix_payment_transactions_reference_code", ["reference_code"]),
        ("ix_payment_transactions_provider_gateway_txn", ["provider", "gateway_transaction_id"]),
        ("ix_payment_transactions_tenant_status_created", ["tenant_id", "status", "created_at"]),
    ],
    "payment_webhook_events": [
        ("ix_payment_webhook_events_tenant_id", ["tenant_id"]),
        ("ix_payment_webhook_events_payment_transaction_id", ["payment_transaction_id"]),
        ("ix_payment_webhook_events_status_created_at", ["processing_status", "created_at"]),
    ],
    "payment_refunds": [
        ("ix_payment_refunds_tenant_id", ["tenant_id"]),
        ("ix_payment_refunds_payment_transaction_id", ["payment_transaction_id"]),
    ],
}


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _table_exists(inspector, "checkout_sessions"):
        op.create_table(
            "checkout_sessions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.String(length=64), nullable=False),
            sa.Column("cart_id", sa.String(length=64), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="started"),
            sa.Column("customer_email", sa.String(length=255), nullable=False),
            sa.Column("customer_name", sa.String(length=200), nullable=True),
            sa.Column("customer_phone", sa.String(length=40), nullable=True),
            sa.Column("customer_notes", sa.String(length=1000), nullable=True),
            sa.Column("currency", sa.String(length=3), nullable=False, server_default="VND"),
            sa.Column("sub_total", sa.Numeric(18, 2), nullable=False),
            sa.Column("discount_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
            sa.Column("tax_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
            sa.Column("coupon_code", sa.String(length=60), nullable=True),
            sa.Column("shipping_address", sa.JSON(), nullable=True),
            sa.Column("billing_address", sa.JSON(), nullable=True),
            sa.Column(
                "billing_same_as_shipping",
                sa.Boolean(),
                nullable=False,
                server_default=sa.true(),
            ),
            sa.Column("shipping_method", sa.String(length=120), nullable=True),
            sa.Column("shipping_cost", sa.Numeric(18, 2), nullable=True),
            sa.Column("estimated_delivery_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("payment_method", sa.String(length=30), nullable=True),
            sa.Column("payment_gateway_id", sa.String(length=36), nullable=True),
            sa.Column("payment_transaction_id", sa.String(length=36), nullable=True),
            sa.Column("order_id", sa.String(length=64), nullable=True),
            sa.Column("order_number", sa.String(length=60), nullable=True),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
            *_timestamps(),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    inspector = sa.inspect(bind)
    if not _table_exists(inspector, "payment_gateway_configs"):
        op.create_table(
            "payment_gateway_configs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.String(length=64), nullable=False),
            sa.Column("provider", sa.String(length=40), nullable=False),
            sa.Column("display_name", sa.String(length=200), nullable=False),
            sa.Column("environment", sa.String(length=20), nullable=False, server_default="sandbox"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("encrypted_credentials", sa.Text(), nullable=True),
            sa.Column("webhook_secret", sa.Text(), nullable=True),
            sa.Column("supported_methods", sa.JSON(), nullable=False),
            sa.Column("supported_currencies", sa.JSON(), nullable=False),
            sa.Column("min_amount", sa.Numeric(18, 2), nullable=True),
            sa.Column("max_amount", sa.Numeric(18, 2), nullable=True),
            sa.Column("health_status", sa.String(length=20), nullable=False, server_default="unknown"),
            sa.Column("last_health_check_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "provider", name="uq_payment_gateway_configs_tenant_provider"),
        )

    inspector = sa.inspect(bind)
    if not _table_exists(inspector, "payment_transactions"):
        op.create_table(
            "payment_transactions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.String(length=64), nullable=False),
            sa.Column("transaction_number", sa.String(length=50), nullable=False),
            sa.Column("gateway_config_id", sa.String(length=36), nullable=False),
            sa.Column("provider", sa.String(length=40), nullable=False),
            sa.Column("checkout_session_id", sa.String(length=36), nullable=True),
            sa.Column("gateway_transaction_id", sa.String(length=200), nullable=True),
            sa.Column("reference_code", sa.String(length=32), nullable=True),
            sa.Column("amount", sa.Numeric(18, 2), nullable=False),
            sa.Column("currency", sa.String(length=3), nullable=False),
            sa.Column("payment_method", sa.String(length=30), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="pending"),
            sa.Column("failure_reason", sa.String(length=1000), nullable=True),
            sa.Column("payment_url", sa.String(length=2000), nullable=True),
            sa.Column("gateway_response_json", sa.JSON(), nullable=True),
            sa.Column("refunded_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
            sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("cod_collected_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("cod_collector_name", sa.String(length=200), nullable=True),
            *_timestamps(),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["gateway_config_id"], ["payment_gateway_configs.id"]),
            sa.ForeignKeyConstraint(["checkout_session_id"], ["checkout_sessions.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("transaction_number"),
        )

    inspector = sa.inspect(bind)
    if not _table_exists(inspector, "payment_webhook_events"):
        op.create_table(
            "payment_webhook_events",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.String(length=64), nullable=False),
            sa.Column("provider", sa.String(length=40), nullable=False),
            sa.Column("gateway_event_id", sa.String(length=200), nullable=False),
            sa.Column("event_type", sa.String(length=100), nullable=True),
            sa.Column("processing_status", sa.String(length=20), nullable=False, server_default="received"),
            sa.Column("processing_note", sa.String(length=1000), nullable=True),
            sa.Column("payment_transaction_id", sa.String(length=36), nullable=True),
            sa.Column(
                "created_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.func.now(),
            ),
            sa.ForeignKeyConstraint(["payment_transaction_id"], ["payment_transactions.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("provider", "gateway_event_id", name="uq_payment_webhook_events_provider_event"),
        )

    inspector = sa.inspect(bind)
    if not _table_exists(inspector, "payment_refunds"):
        op.create_table(
            "payment_refunds",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.String(length=64), nullable=False),
            sa.Column("payment_transaction_id", sa.String(length=36), nullable=False),
            sa.Column("gateway_refund_id", sa.String(length=200), nullable=True),
            sa.Column("amount", sa.Numeric(18, 2), nullable=False),
            sa.Column("currency", sa.String(length=3), nullable=False),
            sa.Column("reason", sa.String(length=255), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("failure_reason", sa.String(length=1000), nullable=True),
            sa.Column(
                "created_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.func.now(),
            ),
            sa.ForeignKeyConstraint(["payment_transaction_id"], ["payment_transactions.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    inspector = sa.inspect(bind)
    for table_name, indexes in _INDEXES.items():
        if not _table_exists(inspector, table_name):
            continue
        for index_name, columns in indexes:
            if not _index_exists(inspector, table_name, index_name):
                op.create_index(index_name, table_name, columns, unique=False)


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    for table_name in (
        "payment_refunds",
        "payment_webhook_events",
        "payment_transactions",
        "payment_gateway_configs",
        "checkout_sessions",
    ):
        if not _table_exists(inspector, table_name):
            continue
        for index_name, _ in reversed(_INDEXES[table_name]):
            if _index_exists(inspector, table_name, index_name):
                op.drop_index(index_name, table_name=table_name)
        op.drop_table(table_name)
        inspector = sa.inspect(bind)
