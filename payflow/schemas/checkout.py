from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

CheckoutPaymentMethod = Literal["card", "bank_transfer", "cod"]


class AddressIn(BaseModel):
    full_name: str = Field(min_length=1, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=40)
    line1: str = Field(min_length=1, max_length=255)
    line2: Optional[str] = Field(default=None, max_length=255)
    ward: Optional[str] = Field(default=None, max_length=120)
    district: Optional[str] = Field(default=None, max_length=120)
    city: str = Field(min_length=1, max_length=120)
    province: Optional[str] = Field(default=None, max_length=120)
    postal_code: Optional[str] = Field(default=None, max_length=20)
    country: str = Field(min_length=2, max_length=2)


class CheckoutSessionCreateIn(BaseModel):
    cart_id: str = Field(min_length=1, max_length=64)
    customer_email: EmailStr
    sub_total: Decimal = Field(ge=0)
    currency: str = Field(default="VND", min_length=3, max_length=3)
    user_id: Optional[str] = Field(default=None, max_length=64)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "cart_id": "cart-7f1c2d3e",
                "customer_email": "buyer@example.com",
                "sub_total": 200000,
                "currency": "VND",
            }
        }
    )


class CheckoutCustomerIn(BaseModel):
    name: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=40)
    email: Optional[EmailStr] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class CheckoutShippingAddressIn(BaseModel):
    address: AddressIn

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "address": {
                    "full_name": "Nguyen Van A",
                    "phone": "0901234567",
                    "line1": "12 Le Loi",
                    "district": "District 1",
                    "city": "Ho Chi Minh City",
                    "country": "VN",
                }
            }
        }
    )


class CheckoutBillingAddressIn(BaseModel):
    same_as_shipping: bool = True
    address: Optional[AddressIn] = None


class CheckoutShippingMethodIn(BaseModel):
    method: str = Field(min_length=1, max_length=120)
    cost: Decimal = Field(ge=0)
    estimated_delivery_at: Optional[datetime] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "method": "GHN Standard",
                "cost": 30000,
                "estimated_delivery_at": "2026-10-20T10:00:00Z",
            }
        }
    )


class CheckoutCouponIn(BaseModel):
    code: str = Field(min_length=1, max_length=60)
    discount: Decimal = Field(ge=0)


class CheckoutPaymentMethodIn(BaseModel):
    payment_method: CheckoutPaymentMethod
    gateway: Optional[str] = Field(default=None, max_length=40)
    return_url: Optional[str] = Field(default=None, max_length=2000)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "payment_method": "bank_transfer",
                "gateway": "sepay",
            }
        }
    )


class CheckoutExtendIn(BaseModel):
    minutes: Optional[int] = Field(default=None, ge=1, le=1440)


class CheckoutCompleteIn(BaseModel):
    order_id: Optional[str] = Field(default=None, max_length=64)
    order_number: Optional[str] = Field(default=None, max_length=60)


class CheckoutSessionOut(BaseModel):
    id: str
    tenant_id: str
    cart_id: str
    user_id: str | None = None
    status: str
    customer_email: str
    customer_name: str | None = None
    customer_phone: str | None = None
    customer_notes: str | None = None
    currency: str
    sub_total: float
    discount_amount: float
    coupon_code: str | None = None
    tax_amount: float
    shipping_cost: float | None = None
    grand_total: float
    shipping_address: dict[str, object] | None = None
    billing_address: dict[str, object] | None = None
    billing_same_as_shipping: bool
    shipping_method: str | None = None
    estimated_delivery_at: datetime | None = None
    payment_method: str | None = None
    payment_transaction_id: str | None = None
    order_id: str | None = None
    order_number: str | None = None
    expires_at: datetime
    last_activity_at: datetime
    version: int


class CheckoutPaymentOut(BaseModel):
    transaction_id: str
    transaction_number: str
    provider: str
    status: str
    amount: float
    currency: str
    gateway_transaction_id: str | None = None
    reference_code: str | None = None
    payment_url: str | None = None
    qr_url: str | None = None
    client_secret: str | None = None
    requires_action: bool = False
    additional_data: dict[str, str] = Field(default_factory=dict)


class CheckoutPaymentSelectionOut(BaseModel):
    session: CheckoutSessionOut
    payment: CheckoutPaymentOut


class CheckoutExpireDueOut(BaseModel):
    expired_count: int
    expired_session_ids: list[str]
