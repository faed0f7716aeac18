"""
SePay gateway - VietQR bank transfers matched by memo content.

SePay never reports a live status for a payment we start. We render a
VietQR image whose transfer description carries a reference code, and the
payer's bank transfer later shows up as a SePay webhook (or in the
transaction list used for polling). Correlation is done by scanning the
free-text transfer content for that code. SePay has no refund API.
"""

import hmac
import json
import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Mapping
from urllib.parse import quote, urlencode

import requests

from payflow.core.clock import utcnow
from payflow.core.config import settings
from payflow.core.money import to_money
from payflow.core.observability import log_event
from payflow.models.payment import (
    HEALTH_DEGRADED,
    HEALTH_HEALTHY,
    HEALTH_UNHEALTHY,
    TX_PAID,
    TX_PENDING,
)
from payflow.services.gateways.base import (
    ERROR_GATEWAY_UNAVAILABLE,
    ERROR_INVALID_REQUEST,
    ERROR_NOT_CONFIGURED,
    ERROR_UNSUPPORTED_OPERATION,
    CredentialField,
    PaymentInitRequest,
    PaymentInitResult,
    PaymentStatusResult,
    RefundRequest,
    RefundResult,
    WebhookValidationResult,
    header_value,
)
from payflow.services.reference_code import extract_reference_code, generate_reference_code

logger = logging.getLogger("payflow.gateways.sepay")

EVENT_INCOMING_TRANSFER = "transfer_in"
EVENT_NON_PAYMENT = "transfer_ignored"


def _field(payload: Mapping[str, Any], camel: str, snake: str) -> Any:
    if camel in payload:
        return payload[camel]
    return payload.get(snake)


def _decimal_or_zero(value: Any) -> Decimal:
    try:
        return Decimal(str(value)) if value not in (None, "") else Decimal("0")
    except InvalidOperation:
        return Decimal("0")


class SePayGatewayProvider:
    code = "sepay"
    display_name = "SePay (VietQR bank transfer)"
    supports_cod = False
    supports_refunds = False
    matches_by_reference = True
    credential_fields = (
        CredentialField("api_token", "API token", secret=True),
        CredentialField("bank_account_number", "Bank account number"),
        CredentialField("bank_code", "Bank code"),
        CredentialField("webhook_api_key", "Webhook API key", secret=True),
        CredentialField("qr_template", "QR template", required=False),
    )

    def __init__(self, http: Any = None) -> None:
        self._http = http or requests.Session()
        self._api_token = ""
        self._bank_account_number = ""
        self._bank_code = ""
        self._webhook_api_key = ""
        self._qr_template = settings.sepay_qr_template
        self._api_base_url = settings.sepay_api_base_url
        self._qr_base_url = settings.sepay_qr_base_url
        self._environment = "sandbox"

    def initialize(self, credentials: Mapping[str, str], environment: str) -> None:
        # SePay uses the same endpoints for sandbox and live accounts.
        self._environment = environment
        self._api_token = (credentials.get("api_token") or "").strip()
        self._bank_account_number = (credentials.get("bank_account_number") or "").strip()
        self._bank_code = (credentials.get("bank_code") or "").strip()
        self._webhook_api_key = (
            credentials.get("webhook_api_key") or credentials.get("webhook_secret") or ""
        ).strip()
        self._qr_template = credentials.get("qr_template") or settings.sepay_qr_template
        self._api_base_url = (credentials.get("api_base_url") or settings.sepay_api_base_url).rstrip("/")
        self._qr_base_url = (credentials.get("qr_base_url") or settings.sepay_qr_base_url).rstrip("/")

    def _build_qr_url(self, amount: int, description: str) -> str:
        query = urlencode(
            {
                "acc": self._bank_account_number,
                "bank": self._bank_code,
                "amount": amount,
                "des": description,
                "template": self._qr_template,
            },
            quote_via=quote,
        )
        return f"{self._qr_base_url}?{query}"

    def initiate_payment(self, request: PaymentInitRequest) -> PaymentInitResult:
        if not self._bank_account_number or not self._bank_code:
            return PaymentInitResult(
                success=False,
                error_code=ERROR_NOT_CONFIGURED,
                error_message="SePay bank account not configured",
            )
        if request.currency.upper() != "VND":
            return PaymentInitResult(
                success=False,
                error_code=ERROR_INVALID_REQUEST,
                error_message=f"SePay only accepts VND transfers, got {request.currency}",
            )

        reference_code = generate_reference_code(
            request.transaction_number,
            prefix=settings.reference_code_prefix,
            now=utcnow(),
        )
        amount = int(to_money(request.amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        description = f"TT {reference_code}"
        qr_url = self._build_qr_url(amount, description)

        log_event(
            logger,
            "gateway.sepay.initiated",
            transaction_number=request.transaction_number,
            amount=amount,
            reference_code=reference_code,
        )
        return PaymentInitResult(
            success=True,
            status=TX_PENDING,
            gateway_transaction_id=reference_code,
            payment_url=qr_url,
            qr_url=qr_url,
            reference_code=reference_code,
            requires_action=False,
            additional_data={
                "reference_code": reference_code,
                "qr_url": qr_url,
                "bank_code": self._bank_code,
                "bank_account": self._bank_account_number,
                "amount": str(amount),
                "description": description,
                "payment_type": "vietqr",
            },
        )

    def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        response = self._http.get(
            f"{self._api_base_url}{path}",
            params=params,
            headers={"Authorization": f"Bearer {self._api_token}", "Content-Type": "application/json"},
            timeout=settings.gateway_http_timeout_seconds,
        )
        response.raise_for_status()
        return response.json()

    def get_payment_status(self, gateway_transaction_id: str) -> PaymentStatusResult:
        if not self._api_token or not self._bank_account_number:
            return PaymentStatusResult(
                success=False,
                status=TX_PENDING,
                gateway_transaction_id=gateway_transaction_id,
                error_code=ERROR_NOT_CONFIGURED,
                error_message="SePay API token not configured",
            )
        try:
            body = self._get(
                "/transactions/list",
                params={
                    "account_number": self._bank_account_number,
                    "limit": settings.sepay_status_lookup_limit,
                },
            )
        except (requests.RequestException, ValueError) as exc:
            log_event(
                logger,
                "gateway.sepay.status_lookup_failed",
                level=logging.WARNING,
                reference_code=gateway_transaction_id,
                error=str(exc),
            )
            return PaymentStatusResult(
                success=False,
                status=TX_PENDING,
                gateway_transaction_id=gateway_transaction_id,
                error_code=ERROR_GATEWAY_UNAVAILABLE,
                error_message=str(exc),
            )
        if body.get("status") != 200:
            return PaymentStatusResult(
                success=False,
                status=TX_PENDING,
                gateway_transaction_id=gateway_transaction_id,
                error_code=ERROR_GATEWAY_UNAVAILABLE,
                error_message="Failed to query SePay transactions",
            )

        wanted = gateway_transaction_id.upper()
        for item in body.get("transactions") or []:
            content = str(item.get("transaction_content") or "")
            found = extract_reference_code(content, prefix=settings.reference_code_prefix)
            amount_in = _decimal_or_zero(item.get("amount_in"))
            if found == wanted and amount_in > 0:
                return PaymentStatusResult(
                    success=True,
                    status=TX_PAID,
                    gateway_transaction_id=gateway_transaction_id,
                    amount=to_money(amount_in),
                    additional_data={
                        "sepay_id": str(item.get("id")),
                        "transaction_date": str(item.get("transaction_date") or ""),
                        "reference_number": str(item.get("reference_number") or ""),
                    },
                )
        return PaymentStatusResult(
            success=True,
            status=TX_PENDING,
            gateway_transaction_id=gateway_transaction_id,
            additional_data={"message": "No matching bank transfer found"},
        )

    def refund(self, request: RefundRequest) -> RefundResult:
        log_event(
            logger,
            "gateway.sepay.refund_unsupported",
            level=logging.WARNING,
            gateway_transaction_id=request.gateway_transaction_id,
        )
        return RefundResult(
            success=False,
            error_code=ERROR_UNSUPPORTED_OPERATION,
            error_message="SePay does not support automatic refunds. Process the refund manually via bank transfer.",
        )

    def _is_authenticated(self, headers: Mapping[str, str]) -> bool:
        if not self._webhook_api_key:
            return False
        authorization = header_value(headers, "Authorization").strip()
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() in {"apikey", "bearer"} and hmac.compare_digest(token.strip(), self._webhook_api_key):
            return True
        api_key = header_value(headers, "X-API-Key").strip()
        return bool(api_key) and hmac.compare_digest(api_key, self._webhook_api_key)

    def validate_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookValidationResult:
        if not self._is_authenticated(headers):
            log_event(logger, "gateway.sepay.invalid_webhook_auth", level=logging.WARNING)
            return WebhookValidationResult(is_valid=False, error_message="Invalid webhook authentication")
        try:
            payload = json.loads(raw_body)
        except ValueError:
            return WebhookValidationResult(is_valid=False, error_message="Invalid webhook payload format")
        if not isinstance(payload, dict) or payload.get("id") in (None, ""):
            return WebhookValidationResult(is_valid=False, error_message="Invalid webhook payload format")

        event_id = str(payload["id"])
        transfer_type = str(_field(payload, "transferType", "transfer_type") or "").strip().lower()
        amount = _decimal_or_zero(_field(payload, "transferAmount", "transfer_amount"))
        if transfer_type != "in" or amount <= 0:
            log_event(
                logger,
                "gateway.sepay.non_payment_transfer",
                sepay_id=event_id,
                transfer_type=transfer_type,
                amount=str(amount),
            )
            return WebhookValidationResult(
                is_valid=True,
                gateway_event_id=event_id,
                event_type=EVENT_NON_PAYMENT,
                gateway_transaction_id=event_id,
            )

        content = payload.get("content") or payload.get("description")
        reference_code = extract_reference_code(content, prefix=settings.reference_code_prefix)
        log_event(
            logger,
            "gateway.sepay.webhook_validated",
            sepay_id=event_id,
            amount=str(amount),
            reference_code=reference_code,
        )
        return WebhookValidationResult(
            is_valid=True,
            gateway_event_id=event_id,
            event_type=EVENT_INCOMING_TRANSFER,
            payment_status=TX_PAID,
            gateway_transaction_id=event_id,
            reference_code=reference_code,
            amount=to_money(amount),
        )

    def health_check(self) -> str:
        if not self._api_token or not self._bank_account_number or not self._bank_code:
            return HEALTH_UNHEALTHY
        try:
            body = self._get("/bankaccounts/list")
        except (requests.RequestException, ValueError) as exc:
            log_event(logger, "gateway.sepay.health_check_failed", level=logging.WARNING, error=str(exc))
            return HEALTH_UNHEALTHY
        if body.get("status") != 200:
            return HEALTH_DEGRADED
        accounts = body.get("bankaccounts") or []
        if not any(str(item.get("account_number")) == self._bank_account_number for item in accounts):
            log_event(
                logger,
                "gateway.sepay.account_missing",
                level=logging.WARNING,
                bank_account=self._bank_account_number,
            )
            return HEALTH_DEGRADED
        return HEALTH_HEALTHY
