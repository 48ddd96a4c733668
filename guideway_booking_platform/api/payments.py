"""
FastAPI routes for payment intents, refunds, the gateway webhook and ledger reads.
"""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..cache import RedisCache
from ..database import get_db
from ..models.user import Actor, UserRole
from ..schemas.common import ApiResponse, ok, paginated
from ..schemas.payment import (
    PaymentConfirmRequest,
    PaymentIntentCreateRequest,
    PaymentIntentResponse,
    PaymentResponse,
    PaymentStatsResponse,
    RefundRequest,
    RefundResponse,
    WebhookResult,
)
from ..services.payment_gateway import PaymentGateway
from ..services.payment_service import PaymentService
from ..utils.dependencies import get_cache, get_current_actor, get_gateway, require_admin, require_roles
from ..utils.exceptions import WebhookSignatureError
from ..utils.logging_config import log_security_event

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/create-intent", response_model=ApiResponse[PaymentIntentResponse], status_code=status.HTTP_201_CREATED)
async def create_payment_intent(
    request: PaymentIntentCreateRequest,
    actor: Actor = Depends(require_roles(UserRole.TOURIST)),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    cache: Optional[RedisCache] = Depends(get_cache)
):
    """Open a payment intent for a confirmed booking; the client completes it with the gateway SDK."""
    payment, client_secret = await PaymentService(db, gateway, cache).create_payment_intent(
        actor, request.booking_id, request.amount, request.payment_method
    )
    return ok(
        PaymentIntentResponse(payment=PaymentResponse.model_validate(payment), client_secret=client_secret),
        "Payment intent created"
    )


@router.post("/confirm", response_model=ApiResponse[PaymentResponse])
async def confirm_payment(
    request: PaymentConfirmRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    cache: Optional[RedisCache] = Depends(get_cache)
):
    payment = await PaymentService(db, gateway, cache).confirm_payment(request.payment_intent_id, actor)
    return ok(PaymentResponse.model_validate(payment), f"Payment {payment.status.value}")


@router.post("/webhook", response_model=ApiResponse[WebhookResult])
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    cache: Optional[RedisCache] = Depends(get_cache)
):
    """Gateway webhook. The raw body is verified against the signature header before use."""
    payload = await request.body()
    if not stripe_signature:
        log_security_event("webhook_missing_signature", {"path": request.url.path})
        raise WebhookSignatureError("Missing Stripe-Signature header")

    try:
        result = await PaymentService(db, gateway, cache).handle_webhook(payload, stripe_signature)
    except WebhookSignatureError:
        log_security_event("webhook_bad_signature", {"path": request.url.path})
        raise
    return ok(WebhookResult(**result), "Webhook received")


@router.get("/my", response_model=ApiResponse[List[PaymentResponse]])
async def list_my_payments(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway)
):
    payments, total = await PaymentService(db, gateway).list_user_payments(actor, page, page_size)
    return paginated([PaymentResponse.model_validate(p) for p in payments], total, page, page_size)


@router.get("/stats", response_model=ApiResponse[PaymentStatsResponse])
async def payment_stats(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    actor: Actor = Depends(require_admin()),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway)
):
    """Ledger totals and platform revenue over an optional date range."""
    stats = await PaymentService(db, gateway).payment_stats(start, end)
    return ok(PaymentStatsResponse(**stats))


@router.get("/booking/{booking_id}", response_model=ApiResponse[List[PaymentResponse]])
async def get_booking_payments(
    booking_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway)
):
    payments = await PaymentService(db, gateway).get_booking_payments(booking_id, actor)
    return ok([PaymentResponse.model_validate(p) for p in payments])


@router.get("/{payment_id}", response_model=ApiResponse[PaymentResponse])
async def get_payment(
    payment_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway)
):
    payment = await PaymentService(db, gateway).get_payment(payment_id, actor)
    return ok(PaymentResponse.model_validate(payment))


@router.post("/{payment_id}/cancel", response_model=ApiResponse[PaymentResponse])
async def cancel_payment_intent(
    payment_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    cache: Optional[RedisCache] = Depends(get_cache)
):
    """Void a pending intent so a new one can be opened."""
    payment = await PaymentService(db, gateway, cache).cancel_payment_intent(payment_id, actor)
    return ok(PaymentResponse.model_validate(payment), "Payment cancelled")


@router.post("/{payment_id}/refund", response_model=ApiResponse[RefundResponse])
async def refund_payment(
    payment_id: UUID,
    request: RefundRequest,
    actor: Actor = Depends(require_admin()),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    cache: Optional[RedisCache] = Depends(get_cache)
):
    payment, refund = await PaymentService(db, gateway, cache).refund_payment(
        payment_id, request.amount, request.reason, actor
    )
    return ok(
        RefundResponse(
            payment=PaymentResponse.model_validate(payment),
            refund=PaymentResponse.model_validate(refund)
        ),
        "Refund processed"
    )
