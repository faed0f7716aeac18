"""Uniform contract over heterogeneous payment networks.

Providers never raise across this contract: SDK and network failures come
back as ``success=False`` results with an ``error_code`` so the session
manager and the webhook reconciler can decide between retrying, surfacing
and ignoring.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Mapping, Protocol

ERROR_GATEWAY_UNAVAILABLE = "gateway_unavailable"
ERROR_UNSUPPORTED_OPERATION = "unsupported_operation"
ERROR_NOT_CONFIGURED = "not_configured"
ERROR_DECLINED = "declined"
ERROR_INVALID_REQUEST = "invalid_request"


@dataclass(frozen=True)
class CredentialField:
    key: str
    label: str
    required: bool = True
    secret: bool = False


@dataclass(frozen=True)
class PaymentInitRequest:
    tenant_id: str
    transaction_number: str
    amount: Decimal
    currency: str
    payment_method: str
    customer_email: str | None = None
    return_url: str | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentInitResult:
    success: bool
    status: str | None = None
    gateway_transaction_id: str | None = None
    payment_url: str | None = None
    client_secret: str | None = None
    qr_url: str | None = None
    reference_code: str | None = None
    requires_action: bool = False
    additional_data: dict[str, str] = field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class PaymentStatusResult:
    success: bool
    status: str | None = None
    gateway_transaction_id: str | None = None
    amount: Decimal | None = None
    additional_data: dict[str, str] = field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class RefundRequest:
    gateway_transaction_id: str
    amount: Decimal
    currency: str
    reason: str | None = None


@dataclass(frozen=True)
class RefundResult:
    success: bool
    gateway_refund_id: str | None = None
    status: str | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class WebhookValidationResult:
    is_valid: bool
    gateway_event_id: str | None = None
    event_type: str | None = None
    # None means "valid delivery, but not a payment we act on".
    payment_status: str | None = None
    gateway_transaction_id: str | None = None
    reference_code: str | None = None
    amount: Decimal | None = None
    error_message: str | None = None


class GatewayProvider(Protocol):
    code: str
    display_name: str
    supports_cod: bool
    supports_refunds: bool
    matches_by_reference: bool
    credential_fields: tuple[CredentialField, ...]

    def initialize(self, credentials: Mapping[str, str], environment: str) -> None:
        ...

    def initiate_payment(self, request: PaymentInitRequest) -> PaymentInitResult:
        ...

    def get_payment_status(self, gateway_transaction_id: str) -> PaymentStatusResult:
        ...

    def refund(self, request: RefundRequest) -> RefundResult:
        ...

    def validate_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookValidationResult:
        ...

    def health_check(self) -> str:
        ...


def header_value(headers: Mapping[str, str], name: str) -> str:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value or ""
    return ""
