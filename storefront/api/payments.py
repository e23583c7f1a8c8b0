"""
Payment endpoints: Stripe intent creation, client confirmation, the signed
webhook receiver and admin refunds.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from storefront.cache import CacheClient
from storefront.config import Settings
from storefront.database import get_db
from storefront.dependencies import get_app_settings, get_cache, get_current_user, get_gateway, require_admin
from storefront.models import User
from storefront.payments.gateway import StripeGateway
from storefront.payments.service import PaymentService
from storefront.schemas import ConfirmPaymentRequest, CreateIntentRequest, RefundRequest, success

router = APIRouter(prefix="/api/payments", tags=["payments"])


def get_payment_service(
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    settings: Settings = Depends(get_app_settings),
    cache: CacheClient = Depends(get_cache),
) -> PaymentService:
    return PaymentService(db, gateway, settings, cache)


@router.post("/stripe/create-intent")
def create_payment_intent(
    request: CreateIntentRequest,
    service: PaymentService = Depends(get_payment_service),
    user: User = Depends(get_current_user),
):
    intent = service.create_intent(user, request.order_id, request.return_url)
    return success(intent)


@router.post("/stripe/confirm")
def confirm_payment(
    request: ConfirmPaymentRequest,
    service: PaymentService = Depends(get_payment_service),
    user: User = Depends(get_current_user),
):
    result = service.confirm(user, request.payment_id, request.payment_intent_id)
    return success(result)


@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    service: PaymentService = Depends(get_payment_service),
):
    """Raw body is read untouched; the signature covers the exact bytes."""
    payload = await request.body()
    return success(service.handle_webhook(payload, stripe_signature))


@router.post("/{payment_id}/refund")
def refund_payment(
    payment_id: str,
    request: RefundRequest,
    service: PaymentService = Depends(get_payment_service),
    admin: User = Depends(require_admin),
):
    result = service.refund(payment_id, request.amount_cents, request.reason)
    return success(result, message="Refund created")
