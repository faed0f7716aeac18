"""
Checkout session state machine.

    started -> address_complete -> shipping_selected -> payment_pending
        -> payment_processing -> completed | expired | abandoned

Every mutation checks the session first and changes nothing when the
check fails. Writes go through ``commit_or_conflict`` so a stale
``version`` surfaces as ``ConcurrentModification`` instead of a lost update.
``now`` is injectable on every operation for deterministic expiry.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from payflow.core.clock import as_utc, utcnow
from payflow.core.config import settings
from payflow.core.currencies import normalize_currency_code
from payflow.core.errors import (
    CheckoutSessionNotFound,
    ConcurrentModification,
    GatewayUnavailable,
    InvalidCheckoutInput,
    InvalidStateTransition,
    PaymentInitiationFailed,
    SessionExpired,
)
from payflow.core.id_utils import generate_transaction_number
from payflow.core.money import ZERO_MONEY, to_money
from payflow.core.observability import log_event
from payflow.db.guards import commit_or_conflict
from payflow.models.checkout import (
    STATUS_ABANDONED,
    STATUS_ADDRESS_COMPLETE,
    STATUS_COMPLETED,
    STATUS_EXPIRED,
    STATUS_PAYMENT_PENDING,
    STATUS_PAYMENT_PROCESSING,
    STATUS_SHIPPING_SELECTED,
    STATUS_STARTED,
    TERMINAL_SESSION_STATUSES,
    CheckoutSession,
)
from payflow.models.payment import (
    TX_COD_PENDING,
    TX_PAID,
    TX_PENDING,
    TX_PROCESSING,
    TX_REQUIRES_ACTION,
    PaymentTransaction,
)
from payflow.services.gateway_registry import PAYMENT_METHODS, resolve_for_payment
from payflow.services.gateways.base import ERROR_GATEWAY_UNAVAILABLE, PaymentInitRequest, PaymentInitResult
from payflow.services.order_handoff import OrderHandoffRequest, OrderService, get_order_service

logger = logging.getLogger("payflow.checkout")

PRE_PAYMENT_STATUSES = frozenset({STATUS_STARTED, STATUS_ADDRESS_COMPLETE, STATUS_SHIPPING_SELECTED})
AWAITING_PAYMENT_STATUSES = frozenset({STATUS_PAYMENT_PENDING, STATUS_PAYMENT_PROCESSING})
NON_TERMINAL_STATUSES = PRE_PAYMENT_STATUSES | AWAITING_PAYMENT_STATUSES
COMPLETABLE_TRANSACTION_STATUSES = frozenset({TX_PAID, TX_COD_PENDING})

SETTLEMENT_COMPLETED = "completed"
SETTLEMENT_ALREADY_COMPLETED = "already_completed"
SETTLEMENT_DEFERRED = "deferred"
SETTLEMENT_NOT_READY = "not_ready"
SETTLEMENT_NO_SESSION = "no_session"

_ADDRESS_REQUIRED_FIELDS = ("full_name", "line1", "city", "country")


@dataclass(frozen=True)
class PaymentSelection:
    session: CheckoutSession
    transaction: PaymentTransaction
    init_result: PaymentInitResult


def _now(now: datetime | None) -> datetime:
    return as_utc(now) if now is not None else utcnow()


def _is_past_deadline(checkout: CheckoutSession, now: datetime) -> bool:
    return now >= as_utc(checkout.expires_at)


def ensure_transition_allowed(
    checkout: CheckoutSession,
    allowed: Iterable[str],
    *,
    operation: str,
    now: datetime,
) -> None:
    if checkout.status == STATUS_EXPIRED:
        raise SessionExpired(f"Checkout session has expired; cannot {operation}")
    allowed_statuses = frozenset(allowed)
    if checkout.status in TERMINAL_SESSION_STATUSES or checkout.status not in allowed_statuses:
        raise InvalidStateTransition(f"Cannot {operation} while checkout session is {checkout.status}")
    if _is_past_deadline(checkout, now):
        raise SessionExpired(f"Checkout session expired at {as_utc(checkout.expires_at).isoformat()}")


def _touch(checkout: CheckoutSession, now: datetime) -> None:
    checkout.last_activity_at = now


def _clean_text(value: str | None, *, field: str, max_length: int) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    if len(cleaned) > max_length:
        raise InvalidCheckoutInput(f"{field} must be at most {max_length} characters")
    return cleaned


def _normalize_address(address: dict[str, Any], *, field: str) -> dict[str, Any]:
    normalized = {key: value.strip() if isinstance(value, str) else value for key, value in address.items()}
    missing = [name for name in _ADDRESS_REQUIRED_FIELDS if not normalized.get(name)]
    if missing:
        raise InvalidCheckoutInput(f"{field} is missing: {', '.join(missing)}")
    return normalized


def get_session(db: Session, *, tenant_id: str, session_id: str) -> CheckoutSession:
    checkout = db.execute(
        select(CheckoutSession).where(
            CheckoutSession.id == session_id,
            CheckoutSession.tenant_id == tenant_id,
        )
    ).scalar_one_or_none()
    if not checkout:
        raise CheckoutSessionNotFound("Checkout session not found")
    return checkout


def linked_transaction(db: Session, checkout: CheckoutSession) -> PaymentTransaction | None:
    if not checkout.payment_transaction_id:
        return None
    return db.get(PaymentTransaction, checkout.payment_transaction_id)


def create_session(
    db: Session,
    *,
    tenant_id: str,
    cart_id: str,
    customer_email: str,
    sub_total: Decimal,
    currency: str,
    user_id: str | None = None,
    now: datetime | None = None,
) -> CheckoutSession:
    current = _now(now)
    amount = to_money(sub_total)
    if amount < ZERO_MONEY:
        raise InvalidCheckoutInput("sub_total must not be negative")
    email = _clean_text(customer_email, field="customer_email", max_length=255)
    if not email:
        raise InvalidCheckoutInput("customer_email is required")
    cart = _clean_text(cart_id, field="cart_id", max_length=64)
    if not cart:
        raise InvalidCheckoutInput("cart_id is required")

    checkout = CheckoutSession(
        id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        cart_id=cart,
        user_id=_clean_text(user_id, field="user_id", max_length=64),
        status=STATUS_STARTED,
        customer_email=email.lower(),
        currency=normalize_currency_code(currency),
        sub_total=amount,
        discount_amount=ZERO_MONEY,
        tax_amount=ZERO_MONEY,
        billing_same_as_shipping=True,
        expires_at=current + timedelta(minutes=settings.checkout_session_ttl_minutes),
        last_activity_at=current,
    )
    db.add(checkout)
    commit_or_conflict(db, entity="Checkout session")
    db.refresh(checkout)
    log_event(
        logger,
        "checkout.session.created",
        tenant_id=tenant_id,
        checkout_session_id=checkout.id,
        cart_id=checkout.cart_id,
        sub_total=checkout.sub_total,
        currency=checkout.currency,
    )
    return checkout


def set_customer_info(
    db: Session,
    checkout: CheckoutSession,
    *,
    name: str | None = None,
    phone: str | None = None,
    email: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> CheckoutSession:
    current = _now(now)
    ensure_transition_allowed(checkout, PRE_PAYMENT_STATUSES, operation="update customer info", now=current)

    cleaned_email = _clean_text(email, field="customer_email", max_length=255)
    if name is not None:
        checkout.customer_name = _clean_text(name, field="customer_name", max_length=200)
    if phone is not None:
        checkout.customer_phone = _clean_text(phone, field="customer_phone", max_length=40)
    if cleaned_email:
        checkout.customer_email = cleaned_email.lower()
    if notes is not None:
        checkout.customer_notes = _clean_text(notes, field="customer_notes", max_length=1000)
    _touch(checkout, current)
    commit_or_conflict(db, entity="Checkout session")
    db.refresh(checkout)
    return checkout


def set_customer_notes(
    db: Session,
    checkout: CheckoutSession,
    *,
    notes: str | None,
    now: datetime | None = None,
) -> CheckoutSession:
    current = _now(now)
    ensure_transition_allowed(checkout, PRE_PAYMENT_STATUSES, operation="update notes", now=current)
    checkout.customer_notes = _clean_text(notes, field="customer_notes", max_length=1000)
    _touch(checkout, current)
    commit_or_conflict(db, entity="Checkout session")
    db.refresh(checkout)
    return checkout


def set_shipping_address(
    db: Session,
    checkout: CheckoutSession,
    *,
    address: dict[str, Any],
    now: datetime | None = None,
) -> CheckoutSession:
    current = _now(now)
    ensure_transition_allowed(
        checkout,
        {STATUS_STARTED, STATUS_ADDRESS_COMPLETE},
        operation="set shipping address",
        now=current,
    )
    normalized = _normalize_address(address, field="shipping_address")

    checkout.shipping_address = normalized
    if checkout.billing_same_as_shipping:
        checkout.billing_address = dict(normalized)
    checkout.status = STATUS_ADDRESS_COMPLETE
    _touch(checkout, current)
    commit_or_conflict(db, entity="Checkout session")
    db.refresh(checkout)
    log_event(
        logger,
        "checkout.session.address_set",
        tenant_id=checkout.tenant_id,
        checkout_session_id=checkout.id,
        country=normalized.get("country"),
    )
    return checkout


def set_billing_address(
    db: Session,
    checkout: CheckoutSession,
    *,
    address: dict[str, Any] | None,
    same_as_shipping: bool,
    now: datetime | None = None,
) -> CheckoutSession:
    current = _now(now)
    ensure_transition_allowed(
        checkout,
        {STATUS_ADDRESS_COMPLETE, STATUS_SHIPPING_SELECTED},
        operation="set billing address",
        now=current,
    )
    if same_as_shipping:
        checkout.billing_address = dict(checkout.shipping_address or {})
    else:
        if not address:
            raise InvalidCheckoutInput("billing_address is required when it differs from shipping")
        checkout.billing_address = _normalize_address(address, field="billing_address")
    checkout.billing_same_as_shipping = same_as_shipping
    _touch(checkout, current)
    commit_or_conflict(db, entity="Checkout session")
    db.refresh(checkout)
    return checkout


def select_shipping_method(
    db: Session,
    checkout: CheckoutSession,
    *,
    method: str,
    cost: Decimal,
    estimated_delivery_at: datetime | None = None,
    now: datetime | None = None,
) -> CheckoutSession:
    current = _now(now)
    ensure_transition_allowed(
        checkout,
        {STATUS_ADDRESS_COMPLETE},
        operation="select a shipping method",
        now=current,
    )
    name = _clean_text(method, field="shipping_method", max_length=120)
    if not name:
        raise InvalidCheckoutInput("shipping_method is required")
    shipping_cost = to_money(cost)
    if shipping_cost < ZERO_MONEY:
        raise InvalidCheckoutInput("shipping cost must not be negative")

    checkout.shipping_method = name
    checkout.shipping_cost = shipping_cost
    checkout.estimated_delivery_at = as_utc(estimated_delivery_at)
    checkout.status = STATUS_SHIPPING_SELECTED
    _touch(checkout, current)
    commit_or_conflict(db, entity="Checkout session")
    db.refresh(checkout)
    log_event(
        logger,
        "checkout.session.shipping_selected",
        tenant_id=checkout.tenant_id,
        checkout_session_id=checkout.id,
        shipping_method=name,
        shipping_cost=shipping_cost,
        grand_total=checkout.grand_total,
    )
    return checkout


def apply_coupon(
    db: Session,
    checkout: CheckoutSession,
    *,
    code: str,
    discount: Decimal,
    now: datetime | None = None,
) -> CheckoutSession:
    current = _now(now)
    ensure_transition_allowed(checkout, PRE_PAYMENT_STATUSES, operation="apply a coupon", now=current)
    coupon_code = _clean_text(code, field="coupon_code", max_length=60)
    if not coupon_code:
        raise InvalidCheckoutInput("coupon_code is required")
    amount = to_money(discount)
    if amount < ZERO_MONEY:
        raise InvalidCheckoutInput("discount must not be negative")
    if amount > to_money(checkout.sub_total):
        raise InvalidCheckoutInput("discount cannot exceed the sub total")

    checkout.coupon_code = coupon_code.upper()
    checkout.discount_amount = amount
    _touch(checkout, current)
    commit_or_conflict(db, entity="Checkout session")
    db.refresh(checkout)
    return checkout


def remove_coupon(db: Session, checkout: CheckoutSession, *, now: datetime | None = None) -> CheckoutSession:
    current = _now(now)
    ensure_transition_allowed(checkout, PRE_PAYMENT_STATUSES, operation="remove the coupon", now=current)
    checkout.coupon_code = None
    checkout.discount_amount = ZERO_MONEY
    _touch(checkout, current)
    commit_or_conflict(db, entity="Checkout session")
    db.refresh(checkout)
    return checkout


def select_payment_method(
    db: Session,
    checkout: CheckoutSession,
    *,
    payment_method: str,
    gateway_hint: str | None = None,
    return_url: str | None = None,
    now: datetime | None = None,
) -> PaymentSelection:
    current = _now(now)
    ensure_transition_allowed(
        checkout,
        {STATUS_SHIPPING_SELECTED},
        operation="select a payment method",
        now=current,
    )
    method = (payment_method or "").strip().lower()
    if method not in PAYMENT_METHODS:
        allowed = ", ".join(PAYMENT_METHODS)
        raise InvalidCheckoutInput(f"Invalid payment method. Allowed: {allowed}")

    amount = checkout.grand_total
    resolved = resolve_for_payment(
        db,
        tenant_id=checkout.tenant_id,
        payment_method=method,
        amount=amount,
        currency=checkout.currency,
        gateway_hint=gateway_hint,
    )
    transaction_number = generate_transaction_number()
    result = resolved.provider.initiate_payment(
        PaymentInitRequest(
            tenant_id=checkout.tenant_id,
            transaction_number=transaction_number,
            amount=amount,
            currency=checkout.currency,
            payment_method=method,
            customer_email=checkout.customer_email,
            return_url=return_url,
            metadata={"checkout_session_id": checkout.id, "tenant_id": checkout.tenant_id},
        )
    )
    if not result.success:
        log_event(
            logger,
            "checkout.payment.initiation_failed",
            level=logging.WARNING,
            tenant_id=checkout.tenant_id,
            checkout_session_id=checkout.id,
            provider=resolved.config.provider,
            error_code=result.error_code,
            error=result.error_message,
        )
        message = result.error_message or "Payment could not be initiated"
        if result.error_code == ERROR_GATEWAY_UNAVAILABLE:
            raise GatewayUnavailable(message)
        raise PaymentInitiationFailed(message)

    transaction_status = result.status or TX_PENDING
    transaction = PaymentTransaction(
        id=str(uuid.uuid4()),
        tenant_id=checkout.tenant_id,
        transaction_number=transaction_number,
        gateway_config_id=resolved.config.id,
        provider=resolved.config.provider,
        checkout_session_id=checkout.id,
        gateway_transaction_id=result.gateway_transaction_id,
        reference_code=result.reference_code,
        amount=amount,
        currency=checkout.currency,
        payment_method=method,
        status=transaction_status,
        payment_url=result.payment_url or result.qr_url,
        gateway_response_json=dict(result.additional_data),
        refunded_amount=ZERO_MONEY,
        paid_at=current if transaction_status == TX_PAID else None,
    )
    db.add(transaction)

    checkout.payment_method = method
    checkout.payment_gateway_id = resolved.config.id
    checkout.payment_transaction_id = transaction.id
    if result.requires_action or transaction_status in {TX_PROCESSING, TX_REQUIRES_ACTION}:
        checkout.status = STATUS_PAYMENT_PROCESSING
    else:
        checkout.status = STATUS_PAYMENT_PENDING
    _touch(checkout, current)
    commit_or_conflict(db, entity="Checkout session")
    db.refresh(checkout)
    db.refresh(transaction)
    log_event(
        logger,
        "checkout.payment.initiated",
        tenant_id=checkout.tenant_id,
        checkout_session_id=checkout.id,
        payment_transaction_id=transaction.id,
        provider=transaction.provider,
        transaction_status=transaction.status,
        session_status=checkout.status,
    )
    return PaymentSelection(session=checkout, transaction=transaction, init_result=result)


def _assert_completable(
    db: Session,
    checkout: CheckoutSession,
    *,
    now: datetime,
    transaction: PaymentTransaction | None = None,
) -> PaymentTransaction:
    ensure_transition_allowed(checkout, AWAITING_PAYMENT_STATUSES, operation="complete checkout", now=now)
    linked = transaction if transaction is not None else linked_transaction(db, checkout)
    if linked is None or linked.id != checkout.payment_transaction_id:
        raise InvalidStateTransition("Checkout session has no payment transaction to complete with")
    if linked.status not in COMPLETABLE_TRANSACTION_STATUSES:
        raise InvalidStateTransition(f"Payment transaction is {linked.status}; checkout cannot complete yet")
    return linked


def _mark_completed(checkout: CheckoutSession, *, order_id: str, order_number: str, now: datetime) -> None:
    checkout.order_id = order_id
    checkout.order_number = order_number
    checkout.status = STATUS_COMPLETED
    _touch(checkout, now)


def _handoff(
    checkout: CheckoutSession,
    transaction: PaymentTransaction,
    order_service: OrderService | None,
) -> tuple[str, str]:
    service = order_service or get_order_service(settings.order_service_default)
    created = service.create_order(
        OrderHandoffRequest(
            tenant_id=checkout.tenant_id,
            checkout_session_id=checkout.id,
            cart_id=checkout.cart_id,
            user_id=checkout.user_id,
            customer_email=checkout.customer_email,
            grand_total=str(checkout.grand_total),
            currency=checkout.currency,
            payment_transaction_id=transaction.id,
            idempotency_key=checkout.id,
        )
    )
    return created.order_id, created.order_number


def complete(
    db: Session,
    checkout: CheckoutSession,
    *,
    order_id: str,
    order_number: str,
    now: datetime | None = None,
) -> CheckoutSession:
    current = _now(now)
    _assert_completable(db, checkout, now=current)
    if not order_id or not order_number:
        raise InvalidCheckoutInput("order_id and order_number are required")
    _mark_completed(checkout, order_id=order_id, order_number=order_number, now=current)
    commit_or_conflict(db, entity="Checkout session")
    db.refresh(checkout)
    log_event(
        logger,
        "checkout.session.completed",
        tenant_id=checkout.tenant_id,
        checkout_session_id=checkout.id,
        order_id=order_id,
    )
    return checkout


def complete_with_order_handoff(
    db: Session,
    checkout: CheckoutSession,
    *,
    order_service: OrderService | None = None,
    now: datetime | None = None,
) -> CheckoutSession:
    current = _now(now)
    transaction = _assert_completable(db, checkout, now=current)
    order_id, order_number = _handoff(checkout, transaction, order_service)
    return complete(db, checkout, order_id=order_id, order_number=order_number, now=current)


def settle_session_for_transaction(
    db: Session,
    transaction: PaymentTransaction,
    *,
    order_service: OrderService | None = None,
    now: datetime | None = None,
) -> str:
    """Complete the session a settled transaction belongs to, without committing.

    Callers own the unit of work. A session that can no longer complete
    (expired, abandoned, past its deadline, or moved on to another
    transaction) yields ``SETTLEMENT_DEFERRED``: the payment stays recorded
    and the order has to be created by hand.
    """
    current = _now(now)
    if transaction.status not in COMPLETABLE_TRANSACTION_STATUSES:
        return SETTLEMENT_NOT_READY
    if not transaction.checkout_session_id:
        return SETTLEMENT_NO_SESSION
    checkout = db.get(CheckoutSession, transaction.checkout_session_id)
    if checkout is None:
        return SETTLEMENT_NO_SESSION
    if checkout.status == STATUS_COMPLETED and checkout.payment_transaction_id == transaction.id:
        return SETTLEMENT_ALREADY_COMPLETED
    try:
        _assert_completable(db, checkout, now=current, transaction=transaction)
    except (SessionExpired, InvalidStateTransition) as exc:
        log_event(
            logger,
            "checkout.session.completion_deferred",
            level=logging.WARNING,
            tenant_id=checkout.tenant_id,
            checkout_session_id=checkout.id,
            payment_transaction_id=transaction.id,
            session_status=checkout.status,
            reason=exc.message,
        )
        return SETTLEMENT_DEFERRED

    order_id, order_number = _handoff(checkout, transaction, order_service)
    _mark_completed(checkout, order_id=order_id, order_number=order_number, now=current)
    log_event(
        logger,
        "checkout.session.completed",
        tenant_id=checkout.tenant_id,
        checkout_session_id=checkout.id,
        order_id=order_id,
        payment_transaction_id=transaction.id,
    )
    return SETTLEMENT_COMPLETED


def abandon(db: Session, checkout: CheckoutSession, *, now: datetime | None = None) -> CheckoutSession:
    current = _now(now)
    ensure_transition_allowed(checkout, NON_TERMINAL_STATUSES, operation="abandon", now=current)
    checkout.status = STATUS_ABANDONED
    _touch(checkout, current)
    commit_or_conflict(db, entity="Checkout session")
    db.refresh(checkout)
    log_event(logger, "checkout.session.abandoned", tenant_id=checkout.tenant_id, checkout_session_id=checkout.id)
    return checkout


def extend_expiration(
    db: Session,
    checkout: CheckoutSession,
    *,
    minutes: int | None = None,
    now: datetime | None = None,
) -> CheckoutSession:
    current = _now(now)
    ensure_transition_allowed(checkout, NON_TERMINAL_STATUSES, operation="extend the session", now=current)
    extension = minutes if minutes is not None else settings.checkout_extension_minutes
    if extension < 1:
        raise InvalidCheckoutInput("minutes must be at least 1")
    # The deadline only ever moves forward.
    checkout.expires_at = max(as_utc(checkout.expires_at), current + timedelta(minutes=extension))
    _touch(checkout, current)
    commit_or_conflict(db, entity="Checkout session")
    db.refresh(checkout)
    return checkout


def expire_due_sessions(
    db: Session,
    *,
    now: datetime | None = None,
    limit: int | None = None,
) -> list[str]:
    """Move every non-terminal session past its deadline to ``expired``.

    Each session is committed on its own so one lost race does not undo
    the rest of the sweep; a session a concurrent writer touched is
    skipped and picked up by the next run if it is still due.
    """
    current = _now(now)
    batch_size = limit or settings.checkout_expiry_sweep_batch_size
    due_ids = db.execute(
        select(CheckoutSession.id)
        .where(
            CheckoutSession.status.in_(sorted(NON_TERMINAL_STATUSES)),
            CheckoutSession.expires_at <= current,
        )
        .order_by(CheckoutSession.expires_at.asc())
        .limit(batch_size)
    ).scalars().all()

    expired: list[str] = []
    for session_id in due_ids:
        checkout = db.get(CheckoutSession, session_id)
        if checkout is None or checkout.status not in NON_TERMINAL_STATUSES:
            continue
        if not _is_past_deadline(checkout, current):
            continue
        checkout.status = STATUS_EXPIRED
        try:
            commit_or_conflict(db, entity="Checkout session")
        except ConcurrentModification:
            log_event(
                logger,
                "checkout.session.expire_skipped",
                level=logging.WARNING,
                checkout_session_id=session_id,
            )
            continue
        expired.append(session_id)

    if expired:
        log_event(logger, "checkout.sessions.expired", count=len(expired), now=current)
    return expired
