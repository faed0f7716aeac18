from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from payflow.core.api_docs import error_responses
from payflow.core.deps import get_db
from payflow.schemas.payment import PaymentWebhookOut
from payflow.services.webhook_reconciler import process_webhook

router = APIRouter(prefix="/payment-webhooks", tags=["payment-webhooks"])


@router.post(
    "/{tenant_id}/{provider}",
    response_model=PaymentWebhookOut,
    summary="Receive a payment gateway webhook",
    responses=error_responses(400, 401, 404, 409, 500),
)
async def receive_payment_webhook(
    tenant_id: str,
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
):
    # Signatures cover the exact bytes the gateway sent, so the body is never parsed here.
    raw_body = await request.body()
    if len(tenant_id) > 64 or not provider.strip():
        raise HTTPException(status_code=400, detail="Invalid webhook route")

    outcome = process_webhook(
        db,
        tenant_id=tenant_id,
        provider=provider,
        raw_body=raw_body,
        headers=dict(request.headers),
    )
    return PaymentWebhookOut(
        ok=True,
        provider=outcome.provider,
        gateway_event_id=outcome.gateway_event_id,
        processing_status=outcome.processing_status,
        duplicate=outcome.duplicate,
        payment_transaction_id=outcome.payment_transaction_id,
        transaction_status=outcome.transaction_status,
        checkout_session_id=outcome.checkout_session_id,
        checkout_session_status=outcome.session_status,
    )
