"""
Stripe gateway: the only module that talks to the payment provider.

Every call passes the API key per request; the global ``stripe.api_key`` is
never set. Provider failures surface as PaymentProviderError with a stable error code.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

import stripe

from storefront.errors import PaymentProviderError
from storefront.logger import get_logger

logger = get_logger(__name__)


class WebhookSignatureError(Exception):
    """Raised when a webhook payload does not carry a valid provider signature."""


@dataclass
class IntentResult:
    id: str
    status: str
    amount: int
    currency: str
    client_secret: Optional[str] = None
    last_error: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class RefundResult:
    id: str
    amount: int
    status: str


def _intent_result(intent) -> IntentResult:
    last_error = getattr(intent, "last_payment_error", None)
    metadata = getattr(intent, "metadata", None)
    return IntentResult(
        id=intent.id,
        status=intent.status,
        amount=intent.amount,
        currency=intent.currency,
        client_secret=getattr(intent, "client_secret", None),
        last_error=getattr(last_error, "message", None) if last_error else None,
        metadata=dict(metadata) if metadata else {},
    )


class StripeGateway:
    """Thin wrapper around the Stripe SDK calls the storefront needs."""

    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str] = None, webhook_tolerance: int = 300):
        self.api_key = api_key or None
        self.webhook_secret = webhook_secret or None
        self.webhook_tolerance = webhook_tolerance

    def _require_key(self, code: str) -> str:
        if not self.api_key:
            raise PaymentProviderError("Payment provider is not configured", code=code)
        return self.api_key

    def create_customer(self, user_id: str, email: str, name: Optional[str] = None) -> str:
        api_key = self._require_key("CUSTOMER_CREATION_FAILED")
        params = {"email": email, "metadata": {"user_id": user_id}}
        if name:
            params["name"] = name
        try:
            customer = stripe.Customer.create(api_key=api_key, **params)
        except stripe.StripeError as e:
            logger.error("Stripe customer creation failed for user %s: %s", user_id, e)
            raise PaymentProviderError("Failed to create payment customer", code="CUSTOMER_CREATION_FAILED") from e
        return customer.id

    def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        customer_id: Optional[str],
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> IntentResult:
        api_key = self._require_key("PAYMENT_INTENT_FAILED")
        params = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if customer_id:
            params["customer"] = customer_id
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            intent = stripe.PaymentIntent.create(api_key=api_key, **params)
        except stripe.StripeError as e:
            logger.error("Stripe intent creation failed for order %s: %s", metadata.get("order_id"), e)
            raise PaymentProviderError("Failed to create payment intent", code="PAYMENT_INTENT_FAILED") from e
        return _intent_result(intent)

    def retrieve_payment_intent(self, intent_id: str) -> IntentResult:
        api_key = self._require_key("STRIPE_ERROR")
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=api_key)
        except stripe.StripeError as e:
            logger.error("Stripe intent retrieval failed for %s: %s", intent_id, e)
            raise PaymentProviderError("Failed to retrieve payment status", code="STRIPE_ERROR") from e
        return _intent_result(intent)

    def create_refund(self, intent_id: str, amount_cents: Optional[int], reason: str) -> RefundResult:
        api_key = self._require_key("REFUND_FAILED")
        params = {"payment_intent": intent_id, "reason": reason}
        if amount_cents is not None:
            params["amount"] = amount_cents
        try:
            refund = stripe.Refund.create(api_key=api_key, **params)
        except stripe.StripeError as e:
            logger.error("Stripe refund failed for %s: %s", intent_id, e)
            raise PaymentProviderError("Failed to create refund", code="REFUND_FAILED") from e
        return RefundResult(id=refund.id, amount=refund.amount, status=refund.status)

    def verify_webhook(self, payload: bytes, signature_header: str) -> None:
        """
        Check the Stripe-Signature header against the raw body.

        Raises PaymentProviderError when no secret is configured and
        WebhookSignatureError when the signature or timestamp is invalid.
        """
        if not self.webhook_secret:
            raise PaymentProviderError("Webhook secret is not configured", code="WEBHOOK_NOT_CONFIGURED")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature_header,
                self.webhook_secret,
                self.webhook_tolerance,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            raise WebhookSignatureError(str(e)) from e
