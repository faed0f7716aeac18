from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from payflow.core.api_docs import error_responses
from payflow.core.deps import get_db, get_tenant_id
from payflow.core.money import to_money
from payflow.models.payment import (
    MANUAL_REVIEW_WEBHOOK_STATUSES,
    WEBHOOK_IGNORED,
    WEBHOOK_PROCESSED,
    WEBHOOK_RECEIVED,
    WEBHOOK_RESOLVED,
    PaymentRefund,
    PaymentTransaction,
    PaymentWebhookEvent,
)
from payflow.schemas.common import PaginationMeta
from payflow.schemas.payment import (
    CodCollectionIn,
    CodPendingListOut,
    CredentialFieldOut,
    GatewayHealthOut,
    GatewaySchemaListOut,
    GatewaySchemaOut,
    ManualPaymentIn,
    ManualPaymentOut,
    PaymentCancelIn,
    PaymentRefundIn,
    PaymentRefundOut,
    PaymentSyncOut,
    PaymentTransactionOut,
    RefundApproveIn,
    RefundListOut,
    RefundOut,
    RefundRejectIn,
    WebhookEventListOut,
    WebhookEventOut,
)
from payflow.services import payment_service

router = APIRouter(prefix="/payments", tags=["payments"])

ALLOWED_WEBHOOK_STATUSES = MANUAL_REVIEW_WEBHOOK_STATUSES | {
    WEBHOOK_RECEIVED,
    WEBHOOK_PROCESSED,
    WEBHOOK_IGNORED,
    WEBHOOK_RESOLVED,
}


def _transaction_out(transaction: PaymentTransaction) -> PaymentTransactionOut:
    return PaymentTransactionOut(
        id=transaction.id,
        transaction_number=transaction.transaction_number,
        provider=transaction.provider,
        checkout_session_id=transaction.checkout_session_id,
        gateway_transaction_id=transaction.gateway_transaction_id,
        reference_code=transaction.reference_code,
        amount=float(to_money(transaction.amount)),
        refunded_amount=float(to_money(transaction.refunded_amount)),
        currency=transaction.currency,
        payment_method=transaction.payment_method,
        status=transaction.status,
        failure_reason=transaction.failure_reason,
        payment_url=transaction.payment_url,
        paid_at=transaction.paid_at,
        cod_collected_at=transaction.cod_collected_at,
        cod_collector_name=transaction.cod_collector_name,
        created_at=transaction.created_at,
        updated_at=transaction.updated_at,
    )


def _refund_out(refund: PaymentRefund) -> RefundOut:
    return RefundOut(
        id=refund.id,
        payment_transaction_id=refund.payment_transaction_id,
        gateway_refund_id=refund.gateway_refund_id,
        amount=float(to_money(refund.amount)),
        currency=refund.currency,
        reason=refund.reason,
        status=refund.status,
        failure_reason=refund.failure_reason,
        review_note=refund.review_note,
        reviewed_at=refund.reviewed_at,
        created_at=refund.created_at,
    )


def _refund_outcome_out(outcome: payment_service.RefundOutcome) -> PaymentRefundOut:
    return PaymentRefundOut(
        success=outcome.success,
        transaction=_transaction_out(outcome.transaction),
        refund_id=outcome.refund.id if outcome.refund else None,
        gateway_refund_id=outcome.refund.gateway_refund_id if outcome.refund else None,
        refund_status=outcome.refund.status if outcome.refund else None,
        error_code=outcome.error_code,
        error_message=outcome.error_message,
    )


def _normalize_webhook_status(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip().lower()
    if not cleaned:
        return None
    if cleaned not in ALLOWED_WEBHOOK_STATUSES:
        allowed = ", ".join(sorted(ALLOWED_WEBHOOK_STATUSES))
        raise HTTPException(status_code=400, detail=f"Invalid processing status. Allowed: {allowed}")
    return cleaned


@router.get(
    "/transactions/{transaction_id}",
    response_model=PaymentTransactionOut,
    summary="Get payment transaction",
    responses=error_responses(400, 404, 422, 500),
)
def get_payment_transaction(
    transaction_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    transaction = payment_service.get_transaction(db, tenant_id=tenant_id, transaction_id=transaction_id)
    return _transaction_out(transaction)


@router.post(
    "/transactions/{transaction_id}/sync",
    response_model=PaymentSyncOut,
    summary="Poll the gateway for the current payment status",
    responses=error_responses(400, 404, 409, 422, 500, 503),
)
def sync_payment_transaction(
    transaction_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    outcome = payment_service.sync_transaction_status(db, tenant_id=tenant_id, transaction_id=transaction_id)
    return PaymentSyncOut(
        transaction=_transaction_out(outcome.transaction),
        changed=outcome.changed,
        settlement=outcome.settlement,
        error_code=outcome.error_code,
        error_message=outcome.error_message,
    )


@router.post(
    "/transactions/{transaction_id}/refunds",
    response_model=PaymentRefundOut,
    summary="Refund a settled payment, or queue the refund for approval",
    responses=error_responses(400, 404, 409, 422, 500),
)
def refund_payment_transaction(
    transaction_id: str,
    payload: PaymentRefundIn,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    outcome = payment_service.refund_transaction(
        db,
        tenant_id=tenant_id,
        transaction_id=transaction_id,
        amount=payload.amount,
        reason=payload.reason,
    )
    return _refund_outcome_out(outcome)


@router.post(
    "/transactions/{transaction_id}/cod-collected",
    response_model=PaymentTransactionOut,
    summary="Confirm cash on delivery was collected",
    responses=error_responses(400, 404, 409, 422, 500),
)
def confirm_cod_collected(
    transaction_id: str,
    payload: CodCollectionIn | None = None,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    transaction = payment_service.confirm_cod_collection(
        db,
        tenant_id=tenant_id,
        transaction_id=transaction_id,
        collector_name=payload.collector_name if payload else None,
    )
    return _transaction_out(transaction)


@router.get(
    "/transactions/{transaction_id}/refunds",
    response_model=RefundListOut,
    summary="List refunds recorded for a payment",
    responses=error_responses(400, 404, 422, 500),
)
def list_payment_refunds(
    transaction_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    refunds = payment_service.list_refunds(db, tenant_id=tenant_id, transaction_id=transaction_id)
    return RefundListOut(items=[_refund_out(refund) for refund in refunds])


@router.post(
    "/refunds/{refund_id}/approve",
    response_model=PaymentRefundOut,
    summary="Approve a held refund and send it to the gateway",
    responses=error_responses(400, 404, 409, 422, 500),
)
def approve_payment_refund(
    refund_id: str,
    payload: RefundApproveIn | None = None,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    outcome = payment_service.approve_refund(
        db,
        tenant_id=tenant_id,
        refund_id=refund_id,
        note=payload.note if payload else None,
    )
    return _refund_outcome_out(outcome)


@router.post(
    "/refunds/{refund_id}/reject",
    response_model=RefundOut,
    summary="Reject a held refund",
    responses=error_responses(400, 404, 409, 422, 500),
)
def reject_payment_refund(
    refund_id: str,
    payload: RefundRejectIn,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    refund = payment_service.reject_refund(db, tenant_id=tenant_id, refund_id=refund_id, reason=payload.reason)
    return _refund_out(refund)


@router.post(
    "/transactions/{transaction_id}/cancel",
    response_model=PaymentTransactionOut,
    summary="Cancel a payment that has not settled",
    responses=error_responses(400, 404, 409, 422, 500),
)
def cancel_payment_transaction(
    transaction_id: str,
    payload: PaymentCancelIn | None = None,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    transaction = payment_service.cancel_transaction(
        db,
        tenant_id=tenant_id,
        transaction_id=transaction_id,
        reason=payload.reason if payload else None,
    )
    return _transaction_out(transaction)


@router.post(
    "/transactions/{transaction_id}/manual-payment",
    response_model=ManualPaymentOut,
    summary="Record a payment confirmed outside the gateway",
    responses=error_responses(400, 404, 409, 422, 500),
)
def record_manual_payment(
    transaction_id: str,
    payload: ManualPaymentIn,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    outcome = payment_service.record_manual_payment(
        db,
        tenant_id=tenant_id,
        transaction_id=transaction_id,
        amount=payload.amount,
        reference_number=payload.reference_number,
        notes=payload.notes,
        paid_at=payload.paid_at,
        webhook_event_id=payload.webhook_event_id,
    )
    return ManualPaymentOut(
        transaction=_transaction_out(outcome.transaction),
        settlement=outcome.settlement,
        webhook_event_id=outcome.webhook_event_id,
    )


@router.get(
    "/cod/pending",
    response_model=CodPendingListOut,
    summary="List cash on delivery payments awaiting collection",
    responses=error_responses(400, 422, 500),
)
def list_pending_cod_payments(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    rows, total_count = payment_service.list_pending_cod(db, tenant_id=tenant_id, limit=limit, offset=offset)
    count = len(rows)
    return CodPendingListOut(
        items=[_transaction_out(row) for row in rows],
        pagination=PaginationMeta(
            total=total_count,
            limit=limit,
            offset=offset,
            count=count,
            has_next=(offset + count) < total_count,
        ),
    )


@router.get(
    "/gateways/schemas",
    response_model=GatewaySchemaListOut,
    summary="List supported gateways and their credential fields",
    responses=error_responses(500),
)
def list_gateway_schemas():
    items = [
        GatewaySchemaOut(
            provider=item["provider"],
            display_name=item["display_name"],
            supports_cod=item["supports_cod"],
            supports_refunds=item["supports_refunds"],
            credential_fields=[CredentialFieldOut(**field) for field in item["credential_fields"]],
        )
        for item in payment_service.gateway_schemas()
    ]
    return GatewaySchemaListOut(items=items)


@router.post(
    "/gateways/{provider}/health-check",
    response_model=GatewayHealthOut,
    summary="Run and record a gateway health check",
    responses=error_responses(400, 404, 422, 500),
)
def run_gateway_health_check(
    provider: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    config = payment_service.check_gateway_health(db, tenant_id=tenant_id, provider=provider)
    return GatewayHealthOut(
        provider=config.provider,
        environment=config.environment,
        is_active=config.is_active,
        health_status=config.health_status,
        last_health_check_at=config.last_health_check_at,
    )


@router.get(
    "/webhook-events",
    response_model=WebhookEventListOut,
    summary="List processed webhook deliveries, e.g. the manual-review queue",
    responses=error_responses(400, 422, 500),
)
def list_webhook_events(
    processing_status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    normalized_status = _normalize_webhook_status(processing_status)
    filters = [PaymentWebhookEvent.tenant_id == tenant_id]
    if normalized_status:
        filters.append(PaymentWebhookEvent.processing_status == normalized_status)

    total_count = int(db.execute(select(func.count(PaymentWebhookEvent.id)).where(*filters)).scalar_one())
    rows = db.execute(
        select(PaymentWebhookEvent)
        .where(*filters)
        .order_by(PaymentWebhookEvent.created_at.desc(), PaymentWebhookEvent.id.desc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    count = len(rows)
    return WebhookEventListOut(
        items=[
            WebhookEventOut(
                id=row.id,
                provider=row.provider,
                gateway_event_id=row.gateway_event_id,
                event_type=row.event_type,
                processing_status=row.processing_status,
                processing_note=row.processing_note,
                payment_transaction_id=row.payment_transaction_id,
                created_at=row.created_at,
            )
            for row in rows
        ],
        pagination=PaginationMeta(
            total=total_count,
            limit=limit,
            offset=offset,
            count=count,
            has_next=(offset + count) < total_count,
        ),
        processing_status=normalized_status,
    )
