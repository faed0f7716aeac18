"""
Turn an authenticated gateway notification into at most one state change.

A delivery is processed in one database transaction:

1. resolve the tenant's gateway config and let the provider authenticate
   and parse the raw body;
2. claim ``(provider, gateway_event_id)`` in ``payment_webhook_events``;
   a row that already exists means the gateway is retrying;
3. find the payment transaction (reference code for description-matched
   providers, gateway transaction id otherwise) and check the amount;
4. apply the status and, once the payment settles, complete the checkout
   session through the order hand-off.

Any lost optimistic-lock race rolls the whole unit back, dedup row
included, so the gateway's retry runs the pipeline again from scratch.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payflow.core.clock import as_utc, utcnow
from payflow.core.errors import WebhookAuthenticationFailed
from payflow.core.money import to_money
from payflow.core.observability import log_event
from payflow.db.guards import commit_or_conflict
from payflow.models.checkout import CheckoutSession
from payflow.models.payment import (
    MANUAL_REVIEW_WEBHOOK_STATUSES,
    TX_PAID,
    WEBHOOK_AMOUNT_MISMATCH,
    WEBHOOK_DEFERRED,
    WEBHOOK_IGNORED,
    WEBHOOK_PROCESSED,
    WEBHOOK_RECEIVED,
    WEBHOOK_UNMATCHED,
    PaymentTransaction,
    PaymentWebhookEvent,
)
from payflow.services import checkout_service, payment_service
from payflow.services.gateway_registry import normalize_provider_code, resolve_provider
from payflow.services.gateways.base import GatewayProvider, WebhookValidationResult
from payflow.services.order_handoff import OrderService

logger = logging.getLogger("payflow.webhooks")


@dataclass(frozen=True)
class WebhookOutcome:
    provider: str
    gateway_event_id: str
    processing_status: str
    duplicate: bool = False
    payment_transaction_id: str | None = None
    transaction_status: str | None = None
    checkout_session_id: str | None = None
    session_status: str | None = None
    note: str | None = None


def _claim_event(
    db: Session,
    *,
    tenant_id: str,
    provider: str,
    validation: WebhookValidationResult,
) -> tuple[PaymentWebhookEvent | None, str]:
    """Insert the dedup row, or report the status of the delivery that already did."""
    existing = db.execute(
        select(PaymentWebhookEvent).where(
            PaymentWebhookEvent.provider == provider,
            PaymentWebhookEvent.gateway_event_id == validation.gateway_event_id,
        )
    ).scalar_one_or_none()
    if existing:
        return None, existing.processing_status

    event = PaymentWebhookEvent(
        id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        provider=provider,
        gateway_event_id=validation.gateway_event_id,
        event_type=(validation.event_type or "")[:100] or None,
        processing_status=WEBHOOK_RECEIVED,
    )
    db.add(event)
    try:
        db.flush()
    except IntegrityError:
        # A concurrent delivery of the same event won the insert. This is the
        # first write of the unit, so rolling back loses nothing else.
        db.rollback()
        return None, WEBHOOK_RECEIVED
    return event, WEBHOOK_RECEIVED


def _find_transaction(
    db: Session,
    *,
    tenant_id: str,
    provider: GatewayProvider,
    validation: WebhookValidationResult,
) -> PaymentTransaction | None:
    if provider.matches_by_reference:
        if not validation.reference_code:
            return None
        return payment_service.find_by_reference_code(
            db,
            tenant_id=tenant_id,
            provider=provider.code,
            reference_code=validation.reference_code,
        )
    if not validation.gateway_transaction_id:
        return None
    return payment_service.find_by_gateway_transaction_id(
        db,
        tenant_id=tenant_id,
        provider=provider.code,
        gateway_transaction_id=validation.gateway_transaction_id,
    )


def _finish(
    db: Session,
    event: PaymentWebhookEvent,
    *,
    status: str,
    note: str | None = None,
    transaction: PaymentTransaction | None = None,
) -> WebhookOutcome:
    event.processing_status = status
    event.processing_note = note[:1000] if note else None
    if transaction is not None:
        event.payment_transaction_id = transaction.id
    commit_or_conflict(db, entity="Payment transaction")

    checkout = None
    if transaction is not None:
        db.refresh(transaction)
        if transaction.checkout_session_id:
            checkout = db.get(CheckoutSession, transaction.checkout_session_id)
    log_event(
        logger,
        "webhook.processed",
        level=logging.WARNING if status in MANUAL_REVIEW_WEBHOOK_STATUSES else logging.INFO,
        tenant_id=event.tenant_id,
        provider=event.provider,
        gateway_event_id=event.gateway_event_id,
        processing_status=status,
        payment_transaction_id=transaction.id if transaction is not None else None,
        note=note,
    )
    return WebhookOutcome(
        provider=event.provider,
        gateway_event_id=event.gateway_event_id,
        processing_status=status,
        payment_transaction_id=transaction.id if transaction is not None else None,
        transaction_status=transaction.status if transaction is not None else None,
        checkout_session_id=checkout.id if checkout is not None else None,
        session_status=checkout.status if checkout is not None else None,
        note=note,
    )


def process_webhook(
    db: Session,
    *,
    tenant_id: str,
    provider: str,
    raw_body: bytes,
    headers: Mapping[str, str],
    order_service: OrderService | None = None,
    now: datetime | None = None,
) -> WebhookOutcome:
    current = as_utc(now) if now is not None else utcnow()
    provider_code = normalize_provider_code(provider)
    resolved = resolve_provider(db, tenant_id=tenant_id, provider=provider_code)

    validation = resolved.provider.validate_webhook(raw_body, headers)
    if not validation.is_valid or not validation.gateway_event_id:
        log_event(
            logger,
            "webhook.rejected",
            level=logging.WARNING,
            tenant_id=tenant_id,
            provider=provider_code,
            reason=validation.error_message,
        )
        raise WebhookAuthenticationFailed(validation.error_message or "Webhook could not be authenticated")

    event, prior_status = _claim_event(db, tenant_id=tenant_id, provider=provider_code, validation=validation)
    if event is None:
        db.rollback()
        log_event(
            logger,
            "webhook.duplicate",
            tenant_id=tenant_id,
            provider=provider_code,
            gateway_event_id=validation.gateway_event_id,
        )
        return WebhookOutcome(
            provider=provider_code,
            gateway_event_id=validation.gateway_event_id,
            processing_status=prior_status,
            duplicate=True,
        )

    if validation.payment_status is None:
        return _finish(db, event, status=WEBHOOK_IGNORED, note=f"Event type {validation.event_type} is not a payment")

    transaction = _find_transaction(db, tenant_id=tenant_id, provider=resolved.provider, validation=validation)
    if transaction is None:
        lookup = validation.reference_code or validation.gateway_transaction_id
        return _finish(db, event, status=WEBHOOK_UNMATCHED, note=f"No payment transaction matches {lookup!r}")

    if (
        validation.payment_status == TX_PAID
        and validation.amount is not None
        and to_money(validation.amount) < to_money(transaction.amount)
    ):
        return _finish(
            db,
            event,
            status=WEBHOOK_AMOUNT_MISMATCH,
            note=f"Received {to_money(validation.amount)}, expected {to_money(transaction.amount)}",
            transaction=transaction,
        )

    payment_service.apply_transaction_status(
        transaction,
        validation.payment_status,
        amount=validation.amount,
        gateway_data={"last_webhook_event": validation.event_type or ""},
        now=current,
    )
    if validation.payment_status == TX_PAID and transaction.status in payment_service.FINAL_TRANSACTION_STATUSES:
        return _finish(
            db,
            event,
            status=WEBHOOK_DEFERRED,
            note=f"Payment received for a {transaction.status} transaction; return or record it manually",
            transaction=transaction,
        )
    settlement = checkout_service.settle_session_for_transaction(
        db,
        transaction,
        order_service=order_service,
        now=current,
    )
    if settlement == checkout_service.SETTLEMENT_DEFERRED:
        return _finish(
            db,
            event,
            status=WEBHOOK_DEFERRED,
            note="Payment recorded; checkout session can no longer complete, create the order manually",
            transaction=transaction,
        )
    return _finish(db, event, status=WEBHOOK_PROCESSED, transaction=transaction)
