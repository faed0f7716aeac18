from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from payflow.core.money import ZERO_MONEY
from payflow.db.base import Base

TX_PENDING = "pending"
TX_PROCESSING = "processing"
TX_REQUIRES_ACTION = "requires_action"
TX_AUTHORIZED = "authorized"
TX_PAID = "paid"
TX_FAILED = "failed"
TX_CANCELLED = "cancelled"
TX_EXPIRED = "expired"
TX_REFUNDED = "refunded"
TX_PARTIAL_REFUND = "partial_refund"
TX_COD_PENDING = "cod_pending"
TX_COD_COLLECTED = "cod_collected"

HEALTH_UNKNOWN = "unknown"
HEALTH_HEALTHY = "healthy"
HEALTH_DEGRADED = "degraded"
HEALTH_UNHEALTHY = "unhealthy"

ENV_SANDBOX = "sandbox"

WEBHOOK_RECEIVED = "received"
WEBHOOK_PROCESSED = "processed"
WEBHOOK_IGNORED = "ignored"
WEBHOOK_UNMATCHED = "unmatched"
WEBHOOK_AMOUNT_MISMATCH = "amount_mismatch"
WEBHOOK_DEFERRED = "deferred"
WEBHOOK_RESOLVED = "resolved"

MANUAL_REVIEW_WEBHOOK_STATUSES = frozenset({WEBHOOK_UNMATCHED, WEBHOOK_AMOUNT_MISMATCH, WEBHOOK_DEFERRED})

REFUND_PENDING_APPROVAL = "pending_approval"
REFUND_SUCCEEDED = "succeeded"
REFUND_FAILED = "failed"
REFUND_REJECTED = "rejected"


class PaymentGatewayConfig(Base):
    __tablename__ = "payment_gateway_configs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    environment: Mapped[str] = mapped_column(String(20), nullable=False, default=ENV_SANDBOX)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    encrypted_credentials: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    webhook_secret: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    supported_methods: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    supported_currencies: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    min_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    max_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    health_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=HEALTH_UNKNOWN,
        server_default=HEALTH_UNKNOWN,
    )
    last_health_check_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", name="uq_payment_gateway_configs_tenant_provider"),
        Index("ix_payment_gateway_configs_tenant_active_sort", "tenant_id", "is_active", "sort_order"),
    )


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    transaction_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    gateway_config_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("payment_gateway_configs.id"),
        nullable=False,
        index=True,
    )
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    checkout_session_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("checkout_sessions.id"),
        nullable=True,
        index=True,
    )
    gateway_transaction_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    reference_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default=TX_PENDING, server_default=TX_PENDING)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    payment_url: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    gateway_response_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    refunded_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=ZERO_MONEY)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cod_collected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cod_collector_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_payment_transactions_provider_gateway_txn", "provider", "gateway_transaction_id"),
        Index("ix_payment_transactions_tenant_status_created", "tenant_id", "status", "created_at"),
    )


class PaymentWebhookEvent(Base):
    __tablename__ = "payment_webhook_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    gateway_event_id: Mapped[str] = mapped_column(String(200), nullable=False)
    event_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    processing_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=WEBHOOK_RECEIVED,
        server_default=WEBHOOK_RECEIVED,
    )
    processing_note: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    payment_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("payment_transactions.id"),
        nullable=True,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("provider", "gateway_event_id", name="uq_payment_webhook_events_provider_event"),
        Index("ix_payment_webhook_events_status_created_at", "processing_status", "created_at"),
    )


class PaymentRefund(Base):
    __tablename__ = "payment_refunds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payment_transaction_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("payment_transactions.id"),
        nullable=False,
        index=True,
    )
    gateway_refund_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    review_note: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_payment_refunds_tenant_status", "tenant_id", "status"),)
