"""
Stripe gateway - intent-confirmed card payments.

Handles:
- PaymentIntent creation and status lookups
- Refunds
- Stripe-Signature webhook verification

Every instance owns its own ``stripe.StripeClient`` built from the tenant's
credentials; the module-level ``stripe.api_key`` is never touched because
requests for different tenants run concurrently in one process.
"""

import json
import logging
from typing import Any, Callable, Mapping

import stripe

from payflow.core.config import settings
from payflow.core.money import from_minor_units, to_minor_units
from payflow.core.observability import log_event
from payflow.models.payment import (
    HEALTH_DEGRADED,
    HEALTH_HEALTHY,
    HEALTH_UNHEALTHY,
    TX_AUTHORIZED,
    TX_CANCELLED,
    TX_FAILED,
    TX_PAID,
    TX_PARTIAL_REFUND,
    TX_PROCESSING,
    TX_REFUNDED,
    TX_REQUIRES_ACTION,
)
from payflow.services.gateways.base import (
    ERROR_DECLINED,
    ERROR_GATEWAY_UNAVAILABLE,
    ERROR_INVALID_REQUEST,
    ERROR_NOT_CONFIGURED,
    CredentialField,
    PaymentInitRequest,
    PaymentInitResult,
    PaymentStatusResult,
    RefundRequest,
    RefundResult,
    WebhookValidationResult,
    header_value,
)

logger = logging.getLogger("payflow.gateways.stripe")

_INTENT_STATUS_MAP = {
    "succeeded": TX_PAID,
    "requires_capture": TX_AUTHORIZED,
    "processing": TX_PROCESSING,
    "requires_action": TX_REQUIRES_ACTION,
    "requires_confirmation": TX_REQUIRES_ACTION,
    "requires_payment_method": TX_REQUIRES_ACTION,
    "canceled": TX_CANCELLED,
}

_EVENT_STATUS_MAP = {
    "payment_intent.succeeded": TX_PAID,
    "payment_intent.payment_failed": TX_FAILED,
    "payment_intent.canceled": TX_CANCELLED,
    "payment_intent.processing": TX_PROCESSING,
    "payment_intent.requires_action": TX_REQUIRES_ACTION,
    "payment_intent.amount_capturable_updated": TX_AUTHORIZED,
}

_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


def map_intent_status(value: str | None) -> str | None:
    return _INTENT_STATUS_MAP.get((value or "").strip().lower())


def _failure(exc: stripe.StripeError) -> tuple[str, str]:
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return ERROR_GATEWAY_UNAVAILABLE, str(exc)
    if isinstance(exc, stripe.CardError):
        return ERROR_DECLINED, exc.user_message or str(exc)
    if isinstance(exc, stripe.InvalidRequestError):
        return ERROR_INVALID_REQUEST, str(exc)
    if getattr(exc, "http_status", None) and exc.http_status >= 500:
        return ERROR_GATEWAY_UNAVAILABLE, str(exc)
    return ERROR_INVALID_REQUEST, str(exc)


class StripeGatewayProvider:
    code = "stripe"
    display_name = "Stripe"
    supports_cod = False
    supports_refunds = True
    matches_by_reference = False
    credential_fields = (
        CredentialField("secret_key", "Secret key", secret=True),
        CredentialField("publishable_key", "Publishable key", required=False),
        CredentialField("webhook_secret", "Webhook signing secret", secret=True),
    )

    def __init__(self, client_factory: Callable[..., Any] | None = None) -> None:
        self._client_factory = client_factory or stripe.StripeClient
        self._client: Any = None
        self._webhook_secret = ""
        self._publishable_key: str | None = None
        self._environment = "sandbox"

    def initialize(self, credentials: Mapping[str, str], environment: str) -> None:
        self._environment = environment
        secret_key = (credentials.get("secret_key") or "").strip()
        self._webhook_secret = (credentials.get("webhook_secret") or "").strip()
        self._publishable_key = credentials.get("publishable_key")
        self._client = self._client_factory(secret_key) if secret_key else None

    def initiate_payment(self, request: PaymentInitRequest) -> PaymentInitResult:
        if self._client is None:
            return PaymentInitResult(
                success=False,
                error_code=ERROR_NOT_CONFIGURED,
                error_message="Stripe secret key not configured",
            )
        params: dict[str, Any] = {
            "amount": to_minor_units(request.amount, request.currency),
            "currency": request.currency.lower(),
            "metadata": {"transaction_number": request.transaction_number, **dict(request.metadata)},
            "automatic_payment_methods": {"enabled": True},
        }
        if request.customer_email:
            params["receipt_email"] = request.customer_email
        try:
            intent = self._client.v1.payment_intents.create(
                params=params,
                options={"idempotency_key": request.transaction_number},
            )
        except stripe.StripeError as exc:
            error_code, message = _failure(exc)
            log_event(
                logger,
                "gateway.stripe.initiate_failed",
                level=logging.WARNING,
                transaction_number=request.transaction_number,
                error_code=error_code,
                error=message,
            )
            return PaymentInitResult(success=False, error_code=error_code, error_message=message)

        status = map_intent_status(intent.status) or TX_PROCESSING
        log_event(
            logger,
            "gateway.stripe.initiated",
            transaction_number=request.transaction_number,
            gateway_transaction_id=intent.id,
            intent_status=intent.status,
        )
        additional_data = {"intent_status": str(intent.status)}
        if self._publishable_key:
            additional_data["publishable_key"] = self._publishable_key
        return PaymentInitResult(
            success=True,
            status=status,
            gateway_transaction_id=intent.id,
            client_secret=intent.client_secret,
            requires_action=status in {TX_REQUIRES_ACTION, TX_PROCESSING},
            additional_data=additional_data,
        )

    def get_payment_status(self, gateway_transaction_id: str) -> PaymentStatusResult:
        if self._client is None:
            return PaymentStatusResult(
                success=False,
                gateway_transaction_id=gateway_transaction_id,
                error_code=ERROR_NOT_CONFIGURED,
                error_message="Stripe secret key not configured",
            )
        try:
            intent = self._client.v1.payment_intents.retrieve(gateway_transaction_id)
        except stripe.StripeError as exc:
            error_code, message = _failure(exc)
            return PaymentStatusResult(
                success=False,
                gateway_transaction_id=gateway_transaction_id,
                error_code=error_code,
                error_message=message,
            )
        return PaymentStatusResult(
            success=True,
            status=map_intent_status(intent.status),
            gateway_transaction_id=intent.id,
            amount=from_minor_units(intent.amount, intent.currency),
            additional_data={"intent_status": str(intent.status)},
        )

    def refund(self, request: RefundRequest) -> RefundResult:
        if self._client is None:
            return RefundResult(
                success=False,
                error_code=ERROR_NOT_CONFIGURED,
                error_message="Stripe secret key not configured",
            )
        params: dict[str, Any] = {
            "payment_intent": request.gateway_transaction_id,
            "amount": to_minor_units(request.amount, request.currency),
        }
        reason = (request.reason or "").strip()
        if reason in _REFUND_REASONS:
            params["reason"] = reason
        elif reason:
            params["reason"] = "requested_by_customer"
            params["metadata"] = {"reason_detail": reason[:500]}
        try:
            refund = self._client.v1.refunds.create(params=params)
        except stripe.StripeError as exc:
            error_code, message = _failure(exc)
            log_event(
                logger,
                "gateway.stripe.refund_failed",
                level=logging.WARNING,
                gateway_transaction_id=request.gateway_transaction_id,
                error_code=error_code,
                error=message,
            )
            return RefundResult(success=False, error_code=error_code, error_message=message)
        succeeded = refund.status in {"succeeded", "pending"}
        return RefundResult(
            success=succeeded,
            gateway_refund_id=refund.id,
            status=refund.status,
            error_code=None if succeeded else ERROR_DECLINED,
            error_message=None if succeeded else f"Stripe refund status {refund.status}",
        )

    def validate_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookValidationResult:
        signature = header_value(headers, "Stripe-Signature")
        if not signature:
            return WebhookValidationResult(is_valid=False, error_message="Missing Stripe-Signature header")
        if not self._webhook_secret:
            return WebhookValidationResult(is_valid=False, error_message="Stripe webhook secret not configured")
        # Verify against the exact bytes received, then read the event as plain JSON.
        try:
            payload = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload,
                signature,
                self._webhook_secret,
                tolerance=settings.stripe_webhook_tolerance_seconds,
            )
            event = json.loads(payload)
        except stripe.SignatureVerificationError:
            log_event(logger, "gateway.stripe.invalid_signature", level=logging.WARNING)
            return WebhookValidationResult(is_valid=False, error_message="Invalid Stripe webhook signature")
        except ValueError as exc:
            return WebhookValidationResult(is_valid=False, error_message=f"Invalid webhook payload: {exc}")
        if not isinstance(event, dict) or not event.get("id"):
            return WebhookValidationResult(is_valid=False, error_message="Invalid webhook payload format")

        event_type = str(event.get("type") or "")
        data_object = (event.get("data") or {}).get("object") or {}
        payment_status = _EVENT_STATUS_MAP.get(event_type)
        gateway_transaction_id = data_object.get("id")
        amount = None

        if event_type == "charge.refunded":
            gateway_transaction_id = data_object.get("payment_intent")
            refunded = data_object.get("amount_refunded") or 0
            payment_status = TX_REFUNDED if refunded >= (data_object.get("amount") or 0) else TX_PARTIAL_REFUND
            amount = from_minor_units(refunded, data_object.get("currency") or "usd")
        elif payment_status is not None and data_object.get("amount") is not None:
            amount = from_minor_units(data_object["amount"], data_object.get("currency") or "usd")

        return WebhookValidationResult(
            is_valid=True,
            gateway_event_id=event["id"],
            event_type=event_type,
            payment_status=payment_status,
            gateway_transaction_id=gateway_transaction_id,
            amount=amount,
        )

    def health_check(self) -> str:
        if self._client is None:
            return HEALTH_UNHEALTHY
        try:
            self._client.v1.balance.retrieve()
        except stripe.AuthenticationError:
            return HEALTH_UNHEALTHY
        except stripe.APIConnectionError:
            return HEALTH_UNHEALTHY
        except stripe.StripeError:
            return HEALTH_DEGRADED
        return HEALTH_HEALTHY
