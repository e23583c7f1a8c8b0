"""Stripe payment intents, reconciliation, webhooks and refunds."""

from storefront.payments.gateway import IntentResult, RefundResult, StripeGateway, WebhookSignatureError
from storefront.payments.service import NEXT_STEPS, TRANSITIONS, PaymentService, normalize_provider_status

__all__ = [
    "IntentResult",
    "RefundResult",
    "StripeGateway",
    "WebhookSignatureError",
    "PaymentService",
    "TRANSITIONS",
    "NEXT_STEPS",
    "normalize_provider_status",
]
