from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from payflow.core.api_docs import error_responses
from payflow.core.deps import get_db, get_tenant_id
from payflow.core.money import to_money
from payflow.models.checkout import CheckoutSession
from payflow.schemas.checkout import (
    CheckoutBillingAddressIn,
    CheckoutCompleteIn,
    CheckoutCouponIn,
    CheckoutCustomerIn,
    CheckoutExpireDueOut,
    CheckoutExtendIn,
    CheckoutPaymentMethodIn,
    CheckoutPaymentOut,
    CheckoutPaymentSelectionOut,
    CheckoutSessionCreateIn,
    CheckoutSessionOut,
    CheckoutShippingAddressIn,
    CheckoutShippingMethodIn,
)
from payflow.services import checkout_service

router = APIRouter(prefix="/checkout", tags=["checkout"])


def _session_out(checkout: CheckoutSession) -> CheckoutSessionOut:
    return CheckoutSessionOut(
        id=checkout.id,
        tenant_id=checkout.tenant_id,
        cart_id=checkout.cart_id,
        user_id=checkout.user_id,
        status=checkout.status,
        customer_email=checkout.customer_email,
        customer_name=checkout.customer_name,
        customer_phone=checkout.customer_phone,
        customer_notes=checkout.customer_notes,
        currency=checkout.currency,
        sub_total=float(to_money(checkout.sub_total)),
        discount_amount=float(to_money(checkout.discount_amount)),
        coupon_code=checkout.coupon_code,
        tax_amount=float(to_money(checkout.tax_amount)),
        shipping_cost=float(to_money(checkout.shipping_cost)) if checkout.shipping_cost is not None else None,
        grand_total=float(checkout.grand_total),
        shipping_address=checkout.shipping_address,
        billing_address=checkout.billing_address,
        billing_same_as_shipping=checkout.billing_same_as_shipping,
        shipping_method=checkout.shipping_method,
        estimated_delivery_at=checkout.estimated_delivery_at,
        payment_method=checkout.payment_method,
        payment_transaction_id=checkout.payment_transaction_id,
        order_id=checkout.order_id,
        order_number=checkout.order_number,
        expires_at=checkout.expires_at,
        last_activity_at=checkout.last_activity_at,
        version=checkout.version,
    )


@router.post(
    "/sessions",
    response_model=CheckoutSessionOut,
    status_code=status.HTTP_201_CREATED,
    summary="Start a checkout session for a cart",
    responses=error_responses(400, 422, 500),
)
def create_checkout_session(
    payload: CheckoutSessionCreateIn,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    checkout = checkout_service.create_session(
        db,
        tenant_id=tenant_id,
        cart_id=payload.cart_id,
        customer_email=str(payload.customer_email),
        sub_total=payload.sub_total,
        currency=payload.currency,
        user_id=payload.user_id,
    )
    return _session_out(checkout)


@router.post(
    "/sessions/expire-due",
    response_model=CheckoutExpireDueOut,
    summary="Expire every checkout session past its deadline",
    responses=error_responses(500),
)
def expire_due_checkout_sessions(db: Session = Depends(get_db)):
    expired = checkout_service.expire_due_sessions(db)
    return CheckoutExpireDueOut(expired_count=len(expired), expired_session_ids=expired)


@router.get(
    "/sessions/{session_id}",
    response_model=CheckoutSessionOut,
    summary="Get checkout session",
    responses=error_responses(400, 404, 422, 500),
)
def get_checkout_session(
    session_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    checkout = checkout_service.get_session(db, tenant_id=tenant_id, session_id=session_id)
    return _session_out(checkout)


@router.put(
    "/sessions/{session_id}/customer",
    response_model=CheckoutSessionOut,
    summary="Update customer contact details and notes",
    responses=error_responses(400, 404, 409, 410, 422, 500),
)
def update_checkout_customer(
    session_id: str,
    payload: CheckoutCustomerIn,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    checkout = checkout_service.get_session(db, tenant_id=tenant_id, session_id=session_id)
    checkout = checkout_service.set_customer_info(
        db,
        checkout,
        name=payload.name,
        phone=payload.phone,
        email=str(payload.email) if payload.email else None,
        notes=payload.notes,
    )
    return _session_out(checkout)


@router.put(
    "/sessions/{session_id}/shipping-address",
    response_model=CheckoutSessionOut,
    summary="Set shipping address",
    responses=error_responses(400, 404, 409, 410, 422, 500),
)
def set_checkout_shipping_address(
    session_id: str,
    payload: CheckoutShippingAddressIn,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    checkout = checkout_service.get_session(db, tenant_id=tenant_id, session_id=session_id)
    checkout = checkout_service.set_shipping_address(
        db,
        checkout,
        address=payload.address.model_dump(exclude_none=True),
    )
    return _session_out(checkout)


@router.put(
    "/sessions/{session_id}/billing-address",
    response_model=CheckoutSessionOut,
    summary="Set billing address",
    responses=error_responses(400, 404, 409, 410, 422, 500),
)
def set_checkout_billing_address(
    session_id: str,
    payload: CheckoutBillingAddressIn,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    checkout = checkout_service.get_session(db, tenant_id=tenant_id, session_id=session_id)
    checkout = checkout_service.set_billing_address(
        db,
        checkout,
        address=payload.address.model_dump(exclude_none=True) if payload.address else None,
        same_as_shipping=payload.same_as_shipping,
    )
    return _session_out(checkout)


@router.put(
    "/sessions/{session_id}/shipping-method",
    response_model=CheckoutSessionOut,
    summary="Select shipping method",
    responses=error_responses(400, 404, 409, 410, 422, 500),
)
def select_checkout_shipping_method(
    session_id: str,
    payload: CheckoutShippingMethodIn,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    checkout = checkout_service.get_session(db, tenant_id=tenant_id, session_id=session_id)
    checkout = checkout_service.select_shipping_method(
        db,
        checkout,
        method=payload.method,
        cost=payload.cost,
        estimated_delivery_at=payload.estimated_delivery_at,
    )
    return _session_out(checkout)


@router.post(
    "/sessions/{session_id}/coupon",
    response_model=CheckoutSessionOut,
    summary="Apply a coupon discount",
    responses=error_responses(400, 404, 409, 410, 422, 500),
)
def apply_checkout_coupon(
    session_id: str,
    payload: CheckoutCouponIn,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    checkout = checkout_service.get_session(db, tenant_id=tenant_id, session_id=session_id)
    checkout = checkout_service.apply_coupon(db, checkout, code=payload.code, discount=payload.discount)
    return _session_out(checkout)


@router.delete(
    "/sessions/{session_id}/coupon",
    response_model=CheckoutSessionOut,
    summary="Remove the applied coupon",
    responses=error_responses(400, 404, 409, 410, 422, 500),
)
def remove_checkout_coupon(
    session_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    checkout = checkout_service.get_session(db, tenant_id=tenant_id, session_id=session_id)
    checkout = checkout_service.remove_coupon(db, checkout)
    return _session_out(checkout)


@router.put(
    "/sessions/{session_id}/payment-method",
    response_model=CheckoutPaymentSelectionOut,
    summary="Select payment method and initiate payment",
    responses=error_responses(400, 402, 404, 409, 410, 422, 500, 503),
)
def select_checkout_payment_method(
    session_id: str,
    payload: CheckoutPaymentMethodIn,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    checkout = checkout_service.get_session(db, tenant_id=tenant_id, session_id=session_id)
    selection = checkout_service.select_payment_method(
        db,
        checkout,
        payment_method=payload.payment_method,
        gateway_hint=payload.gateway,
        return_url=payload.return_url,
    )
    transaction = selection.transaction
    result = selection.init_result
    return CheckoutPaymentSelectionOut(
        session=_session_out(selection.session),
        payment=CheckoutPaymentOut(
            transaction_id=transaction.id,
            transaction_number=transaction.transaction_number,
            provider=transaction.provider,
            status=transaction.status,
            amount=float(to_money(transaction.amount)),
            currency=transaction.currency,
            gateway_transaction_id=transaction.gateway_transaction_id,
            reference_code=transaction.reference_code,
            payment_url=transaction.payment_url,
            qr_url=result.qr_url,
            client_secret=result.client_secret,
            requires_action=result.requires_action,
            additional_data=dict(result.additional_data),
        ),
    )


@router.post(
    "/sessions/{session_id}/complete",
    response_model=CheckoutSessionOut,
    summary="Complete checkout and hand off to order creation",
    responses=error_responses(400, 404, 409, 410, 422, 500),
)
def complete_checkout_session(
    session_id: str,
    payload: CheckoutCompleteIn | None = None,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    checkout = checkout_service.get_session(db, tenant_id=tenant_id, session_id=session_id)
    if payload and payload.order_id and payload.order_number:
        checkout = checkout_service.complete(
            db,
            checkout,
            order_id=payload.order_id,
            order_number=payload.order_number,
        )
    else:
        checkout = checkout_service.complete_with_order_handoff(db, checkout)
    return _session_out(checkout)


@router.post(
    "/sessions/{session_id}/abandon",
    response_model=CheckoutSessionOut,
    summary="Abandon checkout session",
    responses=error_responses(400, 404, 409, 410, 422, 500),
)
def abandon_checkout_session(
    session_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    checkout = checkout_service.get_session(db, tenant_id=tenant_id, session_id=session_id)
    checkout = checkout_service.abandon(db, checkout)
    return _session_out(checkout)


@router.post(
    "/sessions/{session_id}/extend",
    response_model=CheckoutSessionOut,
    summary="Push the session deadline forward",
    responses=error_responses(400, 404, 409, 410, 422, 500),
)
def extend_checkout_session(
    session_id: str,
    payload: CheckoutExtendIn | None = None,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    checkout = checkout_service.get_session(db, tenant_id=tenant_id, session_id=session_id)
    checkout = checkout_service.extend_expiration(db, checkout, minutes=payload.minutes if payload else None)
    return _session_out(checkout)
