"""
Payment transaction lifecycle outside of initiation.

Status moves only forward toward a settled outcome:

    pending -> processing / requires_action -> authorized -> paid
    paid -> partial_refund -> refunded
    pending -> cod_pending -> cod_collected

``failed``, ``cancelled``, ``expired`` and ``refunded`` are final. An update
that would move a transaction backwards is logged and dropped, which is
what keeps late or replayed gateway notifications harmless.

Refunds above ``settings.refund_approval_threshold`` are held as
``pending_approval`` until an operator approves or rejects them; held
amounts count against the refundable balance.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from payflow.core.clock import as_utc, utcnow
from payflow.core.config import settings
from payflow.core.errors import (
    GatewayUnavailable,
    InvalidCheckoutInput,
    InvalidStateTransition,
    NoMatchingTransaction,
    RefundNotFound,
    UnsupportedOperation,
    WebhookEventNotFound,
)
from payflow.core.money import ZERO_MONEY, to_money
from payflow.core.observability import log_event
from payflow.db.guards import commit_or_conflict
from payflow.models.payment import (
    MANUAL_REVIEW_WEBHOOK_STATUSES,
    REFUND_FAILED,
    REFUND_PENDING_APPROVAL,
    REFUND_REJECTED,
    REFUND_SUCCEEDED,
    TX_AUTHORIZED,
    TX_CANCELLED,
    TX_COD_COLLECTED,
    TX_COD_PENDING,
    TX_EXPIRED,
    TX_FAILED,
    TX_PAID,
    TX_PARTIAL_REFUND,
    TX_PENDING,
    TX_PROCESSING,
    TX_REFUNDED,
    TX_REQUIRES_ACTION,
    WEBHOOK_RESOLVED,
    PaymentRefund,
    PaymentTransaction,
    PaymentWebhookEvent,
)
from payflow.services import checkout_service
from payflow.services.gateway_registry import (
    available_providers,
    build_provider,
    get_gateway_config,
    get_gateway_config_by_id,
    provider_for_config,
)
from payflow.services.gateways.base import (
    ERROR_GATEWAY_UNAVAILABLE,
    ERROR_UNSUPPORTED_OPERATION,
    GatewayProvider,
    RefundRequest,
)

logger = logging.getLogger("payflow.payments")

FINAL_TRANSACTION_STATUSES = frozenset({TX_FAILED, TX_CANCELLED, TX_EXPIRED, TX_REFUNDED})
REFUNDABLE_TRANSACTION_STATUSES = frozenset({TX_PAID, TX_PARTIAL_REFUND, TX_COD_COLLECTED})
CANCELLABLE_TRANSACTION_STATUSES = frozenset({TX_PENDING, TX_PROCESSING, TX_REQUIRES_ACTION, TX_COD_PENDING})
MANUAL_PAYABLE_TRANSACTION_STATUSES = frozenset({TX_PENDING, TX_PROCESSING, TX_REQUIRES_ACTION, TX_AUTHORIZED})

_IN_FLIGHT_EXITS = frozenset(
    {TX_PROCESSING, TX_REQUIRES_ACTION, TX_AUTHORIZED, TX_PAID, TX_FAILED, TX_CANCELLED, TX_EXPIRED}
)

ALLOWED_TRANSACTION_TRANSITIONS: dict[str, frozenset[str]] = {
    TX_PENDING: _IN_FLIGHT_EXITS | {TX_COD_PENDING},
    TX_PROCESSING: _IN_FLIGHT_EXITS - {TX_PROCESSING},
    TX_REQUIRES_ACTION: _IN_FLIGHT_EXITS - {TX_REQUIRES_ACTION},
    TX_AUTHORIZED: frozenset({TX_PAID, TX_CANCELLED, TX_FAILED, TX_EXPIRED}),
    TX_PAID: frozenset({TX_REFUNDED, TX_PARTIAL_REFUND}),
    TX_PARTIAL_REFUND: frozenset({TX_PARTIAL_REFUND, TX_REFUNDED}),
    TX_COD_PENDING: frozenset({TX_COD_COLLECTED, TX_CANCELLED}),
    TX_COD_COLLECTED: frozenset({TX_REFUNDED, TX_PARTIAL_REFUND}),
    TX_FAILED: frozenset(),
    TX_CANCELLED: frozenset(),
    TX_EXPIRED: frozenset(),
    TX_REFUNDED: frozenset(),
}


@dataclass(frozen=True)
class SyncOutcome:
    transaction: PaymentTransaction
    changed: bool
    settlement: str | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class RefundOutcome:
    success: bool
    transaction: PaymentTransaction
    refund: PaymentRefund | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class ManualPaymentOutcome:
    transaction: PaymentTransaction
    settlement: str
    webhook_event_id: str | None = None


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSACTION_TRANSITIONS.get(current, frozenset())


def apply_transaction_status(
    transaction: PaymentTransaction,
    target: str,
    *,
    amount: Decimal | None = None,
    failure_reason: str | None = None,
    gateway_data: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> bool:
    """Move ``transaction`` to ``target`` when the lifecycle allows it.

    Returns whether anything changed. Does not commit. For refund
    statuses ``amount`` is the gateway's cumulative refunded amount.
    """
    current = as_utc(now) if now is not None else utcnow()
    if not can_transition(transaction.status, target):
        if transaction.status != target:
            log_event(
                logger,
                "payment.transaction.transition_ignored",
                level=logging.WARNING,
                payment_transaction_id=transaction.id,
                current_status=transaction.status,
                requested_status=target,
            )
        return False

    previous = transaction.status
    if target in {TX_REFUNDED, TX_PARTIAL_REFUND}:
        refunded = to_money(amount) if amount is not None else to_money(transaction.amount)
        if target == TX_REFUNDED:
            refunded = max(refunded, to_money(transaction.amount))
        if target == previous and refunded <= to_money(transaction.refunded_amount):
            return False
        transaction.refunded_amount = max(to_money(transaction.refunded_amount), refunded)

    transaction.status = target
    if target == TX_PAID and transaction.paid_at is None:
        transaction.paid_at = current
    if target == TX_COD_COLLECTED:
        transaction.cod_collected_at = current
    if target in {TX_FAILED, TX_CANCELLED, TX_EXPIRED} and failure_reason:
        transaction.failure_reason = failure_reason[:1000]
    if gateway_data:
        merged = dict(transaction.gateway_response_json or {})
        merged.update(gateway_data)
        transaction.gateway_response_json = merged

    log_event(
        logger,
        "payment.transaction.status_changed",
        tenant_id=transaction.tenant_id,
        payment_transaction_id=transaction.id,
        from_status=previous,
        to_status=target,
    )
    return True


def get_transaction(db: Session, *, tenant_id: str, transaction_id: str) -> PaymentTransaction:
    transaction = db.execute(
        select(PaymentTransaction).where(
            PaymentTransaction.id == transaction_id,
            PaymentTransaction.tenant_id == tenant_id,
        )
    ).scalar_one_or_none()
    if not transaction:
        raise NoMatchingTransaction("Payment transaction not found")
    return transaction


def find_by_reference_code(
    db: Session,
    *,
    tenant_id: str,
    provider: str,
    reference_code: str,
) -> PaymentTransaction | None:
    return db.execute(
        select(PaymentTransaction)
        .where(
            PaymentTransaction.tenant_id == tenant_id,
            PaymentTransaction.provider == provider,
            PaymentTransaction.reference_code == reference_code.upper(),
        )
        .order_by(PaymentTransaction.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def find_by_gateway_transaction_id(
    db: Session,
    *,
    tenant_id: str,
    provider: str,
    gateway_transaction_id: str,
) -> PaymentTransaction | None:
    return db.execute(
        select(PaymentTransaction)
        .where(
            PaymentTransaction.tenant_id == tenant_id,
            PaymentTransaction.provider == provider,
            PaymentTransaction.gateway_transaction_id == gateway_transaction_id,
        )
        .order_by(PaymentTransaction.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def sync_transaction_status(
    db: Session,
    *,
    tenant_id: str,
    transaction_id: str,
    now: datetime | None = None,
) -> SyncOutcome:
    current = as_utc(now) if now is not None else utcnow()
    transaction = get_transaction(db, tenant_id=tenant_id, transaction_id=transaction_id)
    if transaction.status in FINAL_TRANSACTION_STATUSES or not transaction.gateway_transaction_id:
        return SyncOutcome(transaction=transaction, changed=False)

    config = get_gateway_config_by_id(db, tenant_id=tenant_id, config_id=transaction.gateway_config_id)
    provider = provider_for_config(config)
    result = provider.get_payment_status(transaction.gateway_transaction_id)
    if not result.success:
        log_event(
            logger,
            "payment.transaction.sync_failed",
            level=logging.WARNING,
            payment_transaction_id=transaction.id,
            provider=transaction.provider,
            error_code=result.error_code,
            error=result.error_message,
        )
        if result.error_code == ERROR_GATEWAY_UNAVAILABLE:
            raise GatewayUnavailable(result.error_message or "Payment gateway is unavailable")
        return SyncOutcome(
            transaction=transaction,
            changed=False,
            error_code=result.error_code,
            error_message=result.error_message,
        )
    if not result.status:
        return SyncOutcome(transaction=transaction, changed=False)

    if result.status == TX_PAID and result.amount is not None and to_money(result.amount) < to_money(transaction.amount):
        log_event(
            logger,
            "payment.transaction.amount_mismatch",
            level=logging.WARNING,
            payment_transaction_id=transaction.id,
            expected=transaction.amount,
            received=result.amount,
        )
        return SyncOutcome(
            transaction=transaction,
            changed=False,
            error_code="amount_mismatch",
            error_message=f"Gateway reported {to_money(result.amount)}, expected {to_money(transaction.amount)}",
        )

    changed = apply_transaction_status(
        transaction,
        result.status,
        amount=result.amount,
        gateway_data=dict(result.additional_data),
        now=current,
    )
    settlement = checkout_service.settle_session_for_transaction(db, transaction, now=current)
    commit_or_conflict(db, entity="Payment transaction")
    db.refresh(transaction)
    return SyncOutcome(transaction=transaction, changed=changed, settlement=settlement)


def _refundable_balance(
    db: Session,
    transaction: PaymentTransaction,
    *,
    exclude_refund_id: str | None = None,
) -> Decimal:
    """Captured amount not yet refunded or held by a refund awaiting approval."""
    filters = [
        PaymentRefund.payment_transaction_id == transaction.id,
        PaymentRefund.status == REFUND_PENDING_APPROVAL,
    ]
    if exclude_refund_id:
        filters.append(PaymentRefund.id != exclude_refund_id)
    held = db.execute(select(func.coalesce(func.sum(PaymentRefund.amount), 0)).where(*filters)).scalar_one()
    return to_money(transaction.amount) - to_money(transaction.refunded_amount) - to_money(held)


def _needs_approval(amount: Decimal) -> bool:
    threshold = settings.refund_approval_threshold
    return threshold is not None and amount > to_money(threshold)


def _execute_refund(
    db: Session,
    transaction: PaymentTransaction,
    refund: PaymentRefund,
    provider: GatewayProvider,
    *,
    now: datetime,
) -> RefundOutcome:
    result = provider.refund(
        RefundRequest(
            gateway_transaction_id=transaction.gateway_transaction_id or "",
            amount=to_money(refund.amount),
            currency=transaction.currency,
            reason=refund.reason,
        )
    )
    refund.gateway_refund_id = result.gateway_refund_id
    refund.status = REFUND_SUCCEEDED if result.success else REFUND_FAILED
    refund.failure_reason = None if result.success else (result.error_message or "")[:1000]
    if result.success:
        refunded_total = to_money(transaction.refunded_amount) + to_money(refund.amount)
        target = TX_REFUNDED if refunded_total >= to_money(transaction.amount) else TX_PARTIAL_REFUND
        apply_transaction_status(transaction, target, amount=refunded_total, now=now)
    commit_or_conflict(db, entity="Payment transaction")
    db.refresh(transaction)
    db.refresh(refund)
    log_event(
        logger,
        "payment.refund.recorded",
        tenant_id=transaction.tenant_id,
        payment_transaction_id=transaction.id,
        refund_id=refund.id,
        amount=refund.amount,
        success=result.success,
    )
    return RefundOutcome(
        success=result.success,
        transaction=transaction,
        refund=refund,
        error_code=result.error_code,
        error_message=result.error_message,
    )


def refund_transaction(
    db: Session,
    *,
    tenant_id: str,
    transaction_id: str,
    amount: Decimal | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> RefundOutcome:
    """Request a refund; run it at once unless it is large enough to need approval."""
    current = as_utc(now) if now is not None else utcnow()
    transaction = get_transaction(db, tenant_id=tenant_id, transaction_id=transaction_id)
    if transaction.status not in REFUNDABLE_TRANSACTION_STATUSES:
        raise InvalidStateTransition(f"Cannot refund a transaction that is {transaction.status}")

    remaining = _refundable_balance(db, transaction)
    refund_amount = to_money(amount) if amount is not None else remaining
    if refund_amount <= ZERO_MONEY:
        raise InvalidCheckoutInput("Refund amount must be greater than zero")
    if refund_amount > remaining:
        raise InvalidCheckoutInput(f"Refund amount exceeds the refundable balance of {remaining}")

    config = get_gateway_config_by_id(db, tenant_id=tenant_id, config_id=transaction.gateway_config_id)
    provider = provider_for_config(config)
    if not provider.supports_refunds:
        log_event(
            logger,
            "payment.refund.unsupported",
            level=logging.WARNING,
            payment_transaction_id=transaction.id,
            provider=transaction.provider,
        )
        return RefundOutcome(
            success=False,
            transaction=transaction,
            error_code=ERROR_UNSUPPORTED_OPERATION,
            error_message=f"{provider.display_name} has no refund API; refund the customer manually",
        )

    refund = PaymentRefund(
        id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        payment_transaction_id=transaction.id,
        amount=refund_amount,
        currency=transaction.currency,
        reason=(reason or "").strip()[:255] or None,
        status=REFUND_PENDING_APPROVAL,
    )
    db.add(refund)
    if _needs_approval(refund_amount):
        commit_or_conflict(db, entity="Payment transaction")
        db.refresh(refund)
        log_event(
            logger,
            "payment.refund.awaiting_approval",
            tenant_id=tenant_id,
            payment_transaction_id=transaction.id,
            refund_id=refund.id,
            amount=refund_amount,
        )
        return RefundOutcome(success=True, transaction=transaction, refund=refund)
    return _execute_refund(db, transaction, refund, provider, now=current)


def get_refund(db: Session, *, tenant_id: str, refund_id: str) -> PaymentRefund:
    refund = db.execute(
        select(PaymentRefund).where(PaymentRefund.id == refund_id, PaymentRefund.tenant_id == tenant_id)
    ).scalar_one_or_none()
    if not refund:
        raise RefundNotFound("Refund not found")
    return refund


def list_refunds(db: Session, *, tenant_id: str, transaction_id: str) -> list[PaymentRefund]:
    transaction = get_transaction(db, tenant_id=tenant_id, transaction_id=transaction_id)
    return list(
        db.execute(
            select(PaymentRefund)
            .where(PaymentRefund.payment_transaction_id == transaction.id)
            .order_by(PaymentRefund.created_at.asc(), PaymentRefund.id.asc())
        ).scalars().all()
    )


def approve_refund(
    db: Session,
    *,
    tenant_id: str,
    refund_id: str,
    note: str | None = None,
    now: datetime | None = None,
) -> RefundOutcome:
    current = as_utc(now) if now is not None else utcnow()
    refund = get_refund(db, tenant_id=tenant_id, refund_id=refund_id)
    if refund.status != REFUND_PENDING_APPROVAL:
        raise InvalidStateTransition(f"Cannot approve a refund that is {refund.status}")
    transaction = get_transaction(db, tenant_id=tenant_id, transaction_id=refund.payment_transaction_id)
    if transaction.status not in REFUNDABLE_TRANSACTION_STATUSES:
        raise InvalidStateTransition(f"Cannot refund a transaction that is {transaction.status}")
    remaining = _refundable_balance(db, transaction, exclude_refund_id=refund.id)
    if to_money(refund.amount) > remaining:
        raise InvalidCheckoutInput(f"Refund amount exceeds the refundable balance of {remaining}")

    refund.review_note = (note or "").strip()[:1000] or None
    refund.reviewed_at = current
    config = get_gateway_config_by_id(db, tenant_id=tenant_id, config_id=transaction.gateway_config_id)
    return _execute_refund(db, transaction, refund, provider_for_config(config), now=current)


def reject_refund(
    db: Session,
    *,
    tenant_id: str,
    refund_id: str,
    reason: str,
    now: datetime | None = None,
) -> PaymentRefund:
    current = as_utc(now) if now is not None else utcnow()
    refund = get_refund(db, tenant_id=tenant_id, refund_id=refund_id)
    if refund.status != REFUND_PENDING_APPROVAL:
        raise InvalidStateTransition(f"Cannot reject a refund that is {refund.status}")
    cleaned = (reason or "").strip()
    if not cleaned:
        raise InvalidCheckoutInput("A rejection reason is required")
    refund.status = REFUND_REJECTED
    refund.review_note = cleaned[:1000]
    refund.reviewed_at = current
    db.commit()
    db.refresh(refund)
    log_event(
        logger,
        "payment.refund.rejected",
        tenant_id=tenant_id,
        payment_transaction_id=refund.payment_transaction_id,
        refund_id=refund.id,
    )
    return refund


def cancel_transaction(
    db: Session,
    *,
    tenant_id: str,
    transaction_id: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> PaymentTransaction:
    """Cancel a payment that has not settled yet.

    Only the local record changes; a gateway-side intent is left to lapse.
    A success notification that still arrives for it is not applied and is
    queued as ``deferred`` for manual review.
    """
    current = as_utc(now) if now is not None else utcnow()
    transaction = get_transaction(db, tenant_id=tenant_id, transaction_id=transaction_id)
    if transaction.status not in CANCELLABLE_TRANSACTION_STATUSES:
        raise InvalidStateTransition(f"Cannot cancel a transaction that is {transaction.status}")
    cleaned = (reason or "").strip()
    apply_transaction_status(
        transaction,
        TX_CANCELLED,
        failure_reason=cleaned or "Cancelled by operator",
        now=current,
    )
    commit_or_conflict(db, entity="Payment transaction")
    db.refresh(transaction)
    return transaction


def list_pending_cod(
    db: Session,
    *,
    tenant_id: str,
    limit: int,
    offset: int,
) -> tuple[list[PaymentTransaction], int]:
    filters = [PaymentTransaction.tenant_id == tenant_id, PaymentTransaction.status == TX_COD_PENDING]
    total = int(db.execute(select(func.count(PaymentTransaction.id)).where(*filters)).scalar_one())
    rows = db.execute(
        select(PaymentTransaction)
        .where(*filters)
        .order_by(PaymentTransaction.created_at.asc(), PaymentTransaction.id.asc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    return list(rows), total


def _review_event(db: Session, *, tenant_id: str, event_id: str) -> PaymentWebhookEvent:
    event = db.execute(
        select(PaymentWebhookEvent).where(
            PaymentWebhookEvent.id == event_id,
            PaymentWebhookEvent.tenant_id == tenant_id,
        )
    ).scalar_one_or_none()
    if not event:
        raise WebhookEventNotFound("Webhook event not found")
    if event.processing_status not in MANUAL_REVIEW_WEBHOOK_STATUSES:
        raise InvalidStateTransition(f"Webhook event is {event.processing_status}, not awaiting review")
    return event


def record_manual_payment(
    db: Session,
    *,
    tenant_id: str,
    transaction_id: str,
    amount: Decimal,
    reference_number: str | None = None,
    notes: str | None = None,
    paid_at: datetime | None = None,
    webhook_event_id: str | None = None,
    now: datetime | None = None,
) -> ManualPaymentOutcome:
    """Mark an unsettled transaction paid from money confirmed outside the gateway.

    This is how the unmatched and underpaid webhook queue gets cleared: the
    operator checks the bank statement, then records the payment here and
    optionally closes the review row. The checkout session completes
    exactly as it would from a webhook.
    """
    current = as_utc(now) if now is not None else utcnow()
    transaction = get_transaction(db, tenant_id=tenant_id, transaction_id=transaction_id)
    if transaction.status not in MANUAL_PAYABLE_TRANSACTION_STATUSES:
        raise InvalidStateTransition(
            f"Cannot record a manual payment for a transaction that is {transaction.status}"
        )
    received = to_money(amount)
    if received < to_money(transaction.amount):
        raise InvalidCheckoutInput(
            f"Manual payment of {received} is less than the amount due of {to_money(transaction.amount)}"
        )
    event = _review_event(db, tenant_id=tenant_id, event_id=webhook_event_id) if webhook_event_id else None

    apply_transaction_status(
        transaction,
        TX_PAID,
        gateway_data={
            "manual_payment": {
                "amount": str(received),
                "reference_number": (reference_number or "").strip()[:200] or None,
                "notes": (notes or "").strip()[:1000] or None,
            }
        },
        now=current,
    )
    if paid_at is not None:
        transaction.paid_at = as_utc(paid_at)
    settlement = checkout_service.settle_session_for_transaction(db, transaction, now=current)
    if event is not None:
        event.processing_status = WEBHOOK_RESOLVED
        event.payment_transaction_id = transaction.id
        event.processing_note = f"Resolved by manual payment {reference_number or ''}".strip()[:1000]
    commit_or_conflict(db, entity="Payment transaction")
    db.refresh(transaction)
    log_event(
        logger,
        "payment.transaction.manual_payment",
        tenant_id=tenant_id,
        payment_transaction_id=transaction.id,
        amount=received,
        settlement=settlement,
        webhook_event_id=webhook_event_id,
    )
    return ManualPaymentOutcome(
        transaction=transaction,
        settlement=settlement,
        webhook_event_id=event.id if event is not None else None,
    )


def confirm_cod_collection(
    db: Session,
    *,
    tenant_id: str,
    transaction_id: str,
    collector_name: str | None = None,
    now: datetime | None = None,
) -> PaymentTransaction:
    current = as_utc(now) if now is not None else utcnow()
    transaction = get_transaction(db, tenant_id=tenant_id, transaction_id=transaction_id)
    if transaction.provider != "cod":
        raise UnsupportedOperation("Only cash-on-delivery payments can be marked as collected")
    if transaction.status != TX_COD_PENDING:
        raise InvalidStateTransition(f"Cannot confirm collection for a transaction that is {transaction.status}")

    apply_transaction_status(transaction, TX_COD_COLLECTED, now=current)
    cleaned = (collector_name or "").strip()
    transaction.cod_collector_name = cleaned[:200] or None
    commit_or_conflict(db, entity="Payment transaction")
    db.refresh(transaction)
    return transaction


def check_gateway_health(db: Session, *, tenant_id: str, provider: str, now: datetime | None = None):
    current = as_utc(now) if now is not None else utcnow()
    config = get_gateway_config(db, tenant_id=tenant_id, provider=provider, active_only=False)
    status = provider_for_config(config).health_check()
    config.health_status = status
    config.last_health_check_at = current
    db.commit()
    db.refresh(config)
    log_event(
        logger,
        "payment.gateway.health_checked",
        tenant_id=tenant_id,
        provider=config.provider,
        health_status=status,
    )
    return config


def gateway_schemas() -> list[dict[str, Any]]:
    schemas = []
    for code in available_providers():
        provider = build_provider(code)
        schemas.append(
            {
                "provider": provider.code,
                "display_name": provider.display_name,
                "supports_cod": provider.supports_cod,
                "supports_refunds": provider.supports_refunds,
                "credential_fields": [
                    {
                        "key": field.key,
                        "label": field.label,
                        "required": field.required,
                        "secret": field.secret,
                    }
                    for field in provider.credential_fields
                ],
            }
        )
    return schemas
