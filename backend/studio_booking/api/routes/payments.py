"""
Credit purchase endpoints and the payment processor webhook.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from studio_booking.api.deps import get_payment_engine, get_payment_processor
from studio_booking.api.errors import unwrap
from studio_booking.core.config import get_settings
from studio_booking.core.logging import bind_context, get_logger
from studio_booking.core.security import Principal, get_current_user_id, require_admin
from studio_booking.domain.errors import InvalidSignatureError
from studio_booking.schemas.payment import (
    BalanceResponse,
    CheckoutCreate,
    CheckoutResponse,
    CreditPackageResponse,
    PurchaseListResponse,
    PurchaseResponse,
    RefundResponse,
    VerifySessionResponse,
    WebhookAck,
)
from studio_booking.services.payment_journal import RecordOutcome
from studio_booking.services.payment_processor import PaymentProcessor
from studio_booking.services.payment_service import PaymentReconciliationEngine

logger = get_logger(__name__)
router = APIRouter(prefix="/payments", tags=["Payments"])


@router.get("/packages", response_model=list[CreditPackageResponse])
async def list_packages(engine: PaymentReconciliationEngine = Depends(get_payment_engine)):
    return list(engine.credit_packages())


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    user_id: int = Depends(get_current_user_id),
    engine: PaymentReconciliationEngine = Depends(get_payment_engine),
):
    return BalanceResponse(credits=unwrap(await engine.get_balance(user_id)))


@router.get("/purchases", response_model=PurchaseListResponse)
async def list_purchases(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    user_id: int = Depends(get_current_user_id),
    engine: PaymentReconciliationEngine = Depends(get_payment_engine),
):
    result = unwrap(await engine.list_purchases(user_id, status_filter, page, page_size))
    return PurchaseListResponse(
        purchases=[PurchaseResponse.model_validate(p) for p in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
    )


@router.post("/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def create_checkout(
    checkout: CheckoutCreate,
    user_id: int = Depends(get_current_user_id),
    engine: PaymentReconciliationEngine = Depends(get_payment_engine),
):
    """Start a credit purchase; the client is redirected to the processor's checkout page."""
    result = unwrap(await engine.create_checkout(user_id, checkout.credits, checkout.package_id))
    return CheckoutResponse(
        checkout_session_id=result.checkout_session_id,
        redirect_url=result.redirect_url,
        amount=result.amount,
        credits=result.credits,
    )


@router.get("/checkout/{checkout_session_id}", response_model=VerifySessionResponse)
async def verify_checkout(
    checkout_session_id: str,
    user_id: int = Depends(get_current_user_id),
    engine: PaymentReconciliationEngine = Depends(get_payment_engine),
):
    """Poll the processor for a checkout and apply the result if the webhook has not yet."""
    verified = unwrap(await engine.verify_session(checkout_session_id, user_id))
    return VerifySessionResponse(
        purchase=PurchaseResponse.model_validate(verified.purchase),
        processor_status=verified.processor_status,
    )


@router.post("/webhook", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    processor: PaymentProcessor = Depends(get_payment_processor),
    engine: PaymentReconciliationEngine = Depends(get_payment_engine),
):
    """
    Processor notifications.

    Signature failures are rejected with 400 and never journaled. A ledger
    outage surfaces as 503, and a delivery racing an unfinished claim gets
    409, so the processor retries the delivery in both cases.
    """
    payload = await request.body()
    try:
        event = processor.construct_event(payload, stripe_signature)
    except InvalidSignatureError as e:
        logger.warning("webhook_rejected", reason=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    bind_context(payment_event_id=event.id, payment_event_type=event.type)
    outcome = await engine.process_notification(event)
    if outcome is RecordOutcome.IN_FLIGHT:
        # Non-2xx keeps the processor retrying until the claim is finished or reclaimed
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Event is still being processed",
            headers={"Retry-After": str(get_settings().PAYMENT_EVENT_CLAIM_SECONDS)},
        )
    return WebhookAck(received=True)


@router.post("/purchases/{purchase_id}/refund", response_model=RefundResponse)
async def refund_purchase(
    purchase_id: int,
    admin: Principal = Depends(require_admin),
    engine: PaymentReconciliationEngine = Depends(get_payment_engine),
):
    result = unwrap(await engine.refund(purchase_id))
    logger.info("refund_requested", purchase_id=purchase_id, admin_id=admin.user_id)
    return RefundResponse(
        purchase_id=result.purchase.id,
        refund_id=result.refund_id,
        status=result.purchase.status,
    )
