from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from payflow.schemas.common import PaginationMeta


class PaymentTransactionOut(BaseModel):
    id: str
    transaction_number: str
    provider: str
    checkout_session_id: str | None = None
    gateway_transaction_id: str | None = None
    reference_code: str | None = None
    amount: float
    refunded_amount: float
    currency: str
    payment_method: str
    status: str
    failure_reason: str | None = None
    payment_url: str | None = None
    paid_at: datetime | None = None
    cod_collected_at: datetime | None = None
    cod_collector_name: str | None = None
    created_at: datetime
    updated_at: datetime


class PaymentSyncOut(BaseModel):
    transaction: PaymentTransactionOut
    changed: bool
    settlement: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class PaymentRefundIn(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=255)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "amount": 50000,
                "reason": "requested_by_customer",
            }
        }
    )


class PaymentRefundOut(BaseModel):
    success: bool
    transaction: PaymentTransactionOut
    refund_id: str | None = None
    gateway_refund_id: str | None = None
    refund_status: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class CodCollectionIn(BaseModel):
    collector_name: Optional[str] = Field(default=None, max_length=200)


class PaymentCancelIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class CodPendingListOut(BaseModel):
    items: list[PaymentTransactionOut]
    pagination: PaginationMeta


class ManualPaymentIn(BaseModel):
    amount: Decimal = Field(gt=0)
    reference_number: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=1000)
    paid_at: Optional[datetime] = None
    webhook_event_id: Optional[str] = Field(default=None, max_length=36)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "amount": 230000,
                "reference_number": "FT26290123456",
                "notes": "Transfer memo missing the reference code",
                "webhook_event_id": "6f1c2d7e-3a41-4c55-9b8e-2f0d6a9e1b33",
            }
        }
    )


class ManualPaymentOut(BaseModel):
    transaction: PaymentTransactionOut
    settlement: str
    webhook_event_id: str | None = None


class RefundOut(BaseModel):
    id: str
    payment_transaction_id: str
    gateway_refund_id: str | None = None
    amount: float
    currency: str
    reason: str | None = None
    status: str
    failure_reason: str | None = None
    review_note: str | None = None
    reviewed_at: datetime | None = None
    created_at: datetime


class RefundListOut(BaseModel):
    items: list[RefundOut]


class RefundApproveIn(BaseModel):
    note: Optional[str] = Field(default=None, max_length=1000)


class RefundRejectIn(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)


class CredentialFieldOut(BaseModel):
    key: str
    label: str
    required: bool
    secret: bool


class GatewaySchemaOut(BaseModel):
    provider: str
    display_name: str
    supports_cod: bool
    supports_refunds: bool
    credential_fields: list[CredentialFieldOut]


class GatewaySchemaListOut(BaseModel):
    items: list[GatewaySchemaOut]


class GatewayHealthOut(BaseModel):
    provider: str
    environment: str
    is_active: bool
    health_status: str
    last_health_check_at: datetime | None = None


class WebhookEventOut(BaseModel):
    id: str
    provider: str
    gateway_event_id: str
    event_type: str | None = None
    processing_status: str
    processing_note: str | None = None
    payment_transaction_id: str | None = None
    created_at: datetime


class WebhookEventListOut(BaseModel):
    items: list[WebhookEventOut]
    pagination: PaginationMeta
    processing_status: str | None = None


class PaymentWebhookOut(BaseModel):
    ok: bool
    provider: str
    gateway_event_id: str
    processing_status: str
    duplicate: bool = False
    payment_transaction_id: str | None = None
    transaction_status: str | None = None
    checkout_session_id: str | None = None
    checkout_session_status: str | None = None
