from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, JSON, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from payflow.core.money import ZERO_MONEY, to_money
from payflow.db.base import Base

STATUS_STARTED = "started"
STATUS_ADDRESS_COMPLETE = "address_complete"
STATUS_SHIPPING_SELECTED = "shipping_selected"
STATUS_PAYMENT_PENDING = "payment_pending"
STATUS_PAYMENT_PROCESSING = "payment_processing"
STATUS_COMPLETED = "completed"
STATUS_EXPIRED = "expired"
STATUS_ABANDONED = "abandoned"

TERMINAL_SESSION_STATUSES = frozenset({STATUS_COMPLETED, STATUS_EXPIRED, STATUS_ABANDONED})


class CheckoutSession(Base):
    __tablename__ = "checkout_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    cart_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default=STATUS_STARTED,
        server_default=STATUS_STARTED,
    )

    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    customer_notes: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="VND", server_default="VND")
    sub_total: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=ZERO_MONEY)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=ZERO_MONEY)
    coupon_code: Mapped[Optional[str]] = mapped_column(String(60), nullable=True)

    shipping_address: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    billing_address: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    billing_same_as_shipping: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    shipping_method: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    shipping_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    estimated_delivery_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    payment_method: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    payment_gateway_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    payment_transaction_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)

    order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    order_number: Mapped[Optional[str]] = mapped_column(String(60), nullable=True)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_checkout_sessions_tenant_status_created_at", "tenant_id", "status", "created_at"),
        Index("ix_checkout_sessions_status_expires_at", "status", "expires_at"),
    )

    @property
    def grand_total(self) -> Decimal:
        return to_money(
            to_money(self.sub_total)
            - to_money(self.discount_amount or ZERO_MONEY)
            + to_money(self.shipping_cost or ZERO_MONEY)
            + to_money(self.tax_amount or ZERO_MONEY)
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES
