from typing import Mapping

from payflow.models.payment import HEALTH_HEALTHY, TX_COD_PENDING
from payflow.services.gateways.base import (
    ERROR_UNSUPPORTED_OPERATION,
    CredentialField,
    PaymentInitRequest,
    PaymentInitResult,
    PaymentStatusResult,
    RefundRequest,
    RefundResult,
    WebhookValidationResult,
)


class CodGatewayProvider:
    """Cash on delivery: nothing to call, money is collected by the courier."""

    code = "cod"
    display_name = "Cash on delivery"
    supports_cod = True
    supports_refunds = False
    matches_by_reference = False
    credential_fields: tuple[CredentialField, ...] = ()

    def initialize(self, credentials: Mapping[str, str], environment: str) -> None:
        return None

    def initiate_payment(self, request: PaymentInitRequest) -> PaymentInitResult:
        return PaymentInitResult(
            success=True,
            status=TX_COD_PENDING,
            gateway_transaction_id=f"cod-{request.transaction_number}",
            additional_data={"payment_type": "cod"},
        )

    def get_payment_status(self, gateway_transaction_id: str) -> PaymentStatusResult:
        return PaymentStatusResult(
            success=True,
            status=TX_COD_PENDING,
            gateway_transaction_id=gateway_transaction_id,
        )

    def refund(self, request: RefundRequest) -> RefundResult:
        return RefundResult(
            success=False,
            error_code=ERROR_UNSUPPORTED_OPERATION,
            error_message="Cash on delivery payments are refunded manually.",
        )

    def validate_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookValidationResult:
        return WebhookValidationResult(is_valid=False, error_message="Cash on delivery has no webhooks")

    def health_check(self) -> str:
        return HEALTH_HEALTHY
