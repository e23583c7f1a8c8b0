"""
Payment intent bridge and payment reconciliation.

Two entry points report provider status for a payment: the client-driven
confirm call and the signed webhook. Both feed the same transition table:

    provider status   payment      order       inventory
    succeeded         COMPLETED    CONFIRMED   commit
    processing        PROCESSING   -           -
    requires_action   PROCESSING   -           -
    canceled          CANCELLED    CANCELLED   release
    failed            FAILED       CANCELLED   release

The payment row moves with a conditional UPDATE from an open status
(PENDING/PROCESSING). Only the caller whose UPDATE matched goes on to move the
order and its stock, and the order move is itself conditional on the order
still awaiting payment. Terminal states therefore absorb every later or
repeated event, whichever entry point delivers it first. Stock follows the
per-line reservation flags, so each line is committed or released once.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.cache import CacheClient
from storefront.config import Settings
from storefront.errors import (
    BusinessRuleViolation, Forbidden, NotFound, RequestValidationFailed, StorefrontError,
)
from storefront.logger import get_logger
from storefront.models import (
    OPEN_PAYMENT_STATUSES, Order, OrderStatus, Payment, PaymentStatus, User, WebhookEvent,
)
from storefront.orders import ACTIVE_ORDER_STATUSES, CLOSED_ORDER_STATUSES, advance_order, settle_reservations
from storefront.payments import events
from storefront.payments.gateway import StripeGateway, WebhookSignatureError
from storefront.structured_logger import audit_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Transition:
    payment_status: str
    order_status: Optional[str] = None
    inventory_action: Optional[str] = None


TRANSITIONS: Dict[str, Transition] = {
    "succeeded": Transition(PaymentStatus.COMPLETED.value, OrderStatus.CONFIRMED.value, "commit"),
    "processing": Transition(PaymentStatus.PROCESSING.value),
    "requires_action": Transition(PaymentStatus.PROCESSING.value),
    "canceled": Transition(PaymentStatus.CANCELLED.value, OrderStatus.CANCELLED.value, "release"),
    "failed": Transition(PaymentStatus.FAILED.value, OrderStatus.CANCELLED.value, "release"),
}

NEXT_STEPS: Dict[str, List[str]] = {
    "succeeded": [
        "Payment successful!",
        "Your order is confirmed and will ship soon",
        "You can review the order in your order history",
    ],
    "processing": [
        "Your payment is processing",
        "This usually takes a few minutes",
        "We will email you once the payment completes",
    ],
    "requires_action": [
        "Additional verification is required",
        "Follow the prompts to complete verification",
        "The payment continues automatically once verified",
    ],
    "canceled": [
        "Payment was cancelled",
        "The order has been cancelled and reserved stock released",
        "Place a new order to purchase again",
    ],
    "failed": [
        "Payment failed",
        "Check your payment details or try another payment method",
        "Contact support if the problem persists",
    ],
}
UNKNOWN_NEXT_STEPS = ["Payment status unknown, please contact support"]

# Orders that have been paid and can still be refunded
REFUNDABLE_ORDER_STATUSES = (
    OrderStatus.CONFIRMED.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
)


def normalize_provider_status(status: str, last_error: Optional[str] = None) -> Optional[str]:
    """
    Map a raw PaymentIntent status onto the transition table.

    A declined attempt leaves the intent in requires_payment_method with an
    error attached; that is reported as a failure. Statuses that say nothing
    about the outcome yet return None.
    """
    if status in TRANSITIONS:
        return status
    if status == "requires_payment_method" and last_error:
        return "failed"
    if status == "requires_capture":
        return "processing"
    return None


@dataclass
class TransitionOutcome:
    applied: bool
    payment_status: str
    order_status: str
    touched_products: List[str] = field(default_factory=list)


class PaymentService:
    def __init__(self, db: Session, gateway: StripeGateway, settings: Settings, cache: Optional[CacheClient] = None):
        self.db = db
        self.gateway = gateway
        self.settings = settings
        self.cache = cache

    #
    # Intent creation
    #

    def _open_payment(self, order_id: str) -> Optional[Payment]:
        return (
            self.db.query(Payment)
            .filter(
                Payment.order_id == order_id,
                Payment.status.in_(OPEN_PAYMENT_STATUSES),
                Payment.provider_transaction_id.isnot(None),
            )
            .order_by(Payment.created_at.desc())
            .first()
        )

    @staticmethod
    def _intent_payload(payment: Payment, reused: bool) -> Dict[str, Any]:
        return {
            "client_secret": payment.client_secret,
            "payment_intent_id": payment.provider_transaction_id,
            "payment_id": payment.id,
            "amount_cents": payment.amount_cents,
            "currency": payment.currency,
            "reused": reused,
        }

    def create_intent(self, user: User, order_id: str, return_url: Optional[str] = None) -> Dict[str, Any]:
        order = self.db.get(Order, order_id)
        if order is None or order.user_id != user.id:
            raise NotFound("Order not found", code="ORDER_NOT_FOUND")
        if order.status != OrderStatus.PENDING.value:
            raise BusinessRuleViolation(
                "Order is not awaiting payment",
                code="INVALID_ORDER_STATUS",
                details={"status": order.status},
            )

        existing = self._open_payment(order.id)
        if existing is not None:
            logger.info("Reusing payment intent %s for order %s", existing.provider_transaction_id, order.order_number)
            return self._intent_payload(existing, reused=True)

        customer_id = user.stripe_customer_id
        if not customer_id:
            customer_id = self.gateway.create_customer(user.id, user.email, user.name)
            user.stripe_customer_id = customer_id
            self.db.commit()

        attempt = self.db.query(Payment).filter(Payment.order_id == order.id).count()
        metadata = {
            "order_id": order.id,
            "order_number": order.order_number,
            "user_id": user.id,
            "item_count": str(len(order.items)),
        }
        if return_url:
            metadata["return_url"] = return_url

        intent = self.gateway.create_payment_intent(
            amount_cents=order.total_cents,
            currency=order.currency,
            customer_id=customer_id,
            metadata=metadata,
            idempotency_key=f"order-{order.id}-attempt-{attempt}",
        )

        payment = Payment(
            order_id=order.id,
            payment_method="card",
            provider="stripe",
            provider_transaction_id=intent.id,
            amount_cents=order.total_cents,
            currency=order.currency,
            status=PaymentStatus.PENDING.value,
            client_secret=intent.client_secret,
            provider_customer_id=customer_id,
            provider_status=intent.status,
        )
        self.db.add(payment)
        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent request already stored this intent (same idempotency key)
            self.db.rollback()
            existing = self._open_payment(order.id)
            if existing is None:
                raise
            return self._intent_payload(existing, reused=True)

        audit_logger.info(
            "payment_intent_created",
            f"Payment intent created for order {order.order_number}",
            {"order_id": order.id, "payment_id": payment.id, "intent_id": intent.id, "amount_cents": payment.amount_cents},
        )
        return self._intent_payload(payment, reused=False)

    #
    # Reconciliation
    #

    def _apply_status(
        self,
        payment: Payment,
        provider_status: str,
        source: str,
        last_error: Optional[str] = None,
    ) -> TransitionOutcome:
        """
        Run one transition inside the caller's transaction (no commit here).
        Unknown statuses only record the raw provider status on open payments.
        """
        transition = TRANSITIONS.get(provider_status)
        values: Dict[str, Any] = {"provider_status": provider_status}
        if transition is not None:
            values["status"] = transition.payment_status
        if last_error:
            values["last_error"] = last_error

        matched = self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status.in_(OPEN_PAYMENT_STATUSES))
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount > 0
        applied = matched and transition is not None

        touched: List[str] = []
        if applied and transition.order_status:
            if advance_order(self.db, payment.order_id, transition.order_status, ACTIVE_ORDER_STATUSES):
                if transition.inventory_action:
                    touched = settle_reservations(self.db, payment.order_id, transition.inventory_action)
            else:
                touched = self._order_not_active(payment, provider_status, transition)

        self.db.flush()
        self.db.expire_all()
        current = self.db.get(Payment, payment.id)
        order = self.db.get(Order, payment.order_id)
        audit_logger.log_payment_transition(
            payment.id, source, provider_status, applied, current.status, order.status
        )
        return TransitionOutcome(
            applied=applied,
            payment_status=current.status,
            order_status=order.status,
            touched_products=touched,
        )

    def _order_not_active(self, payment: Payment, provider_status: str, transition: Transition) -> List[str]:
        """
        The payment moved but its order had already left PENDING/PROCESSING.

        Money taken for a closed order needs an operator refund. An order an
        admin moved forward while payment was open still gets its stock committed.
        """
        order_status = self.db.query(Order.status).filter(Order.id == payment.order_id).scalar()
        context = {
            "payment_id": payment.id,
            "order_id": payment.order_id,
            "order_status": order_status,
            "intent_id": payment.provider_transaction_id,
            "amount_cents": payment.amount_cents,
            "currency": payment.currency,
        }
        if order_status in CLOSED_ORDER_STATUSES:
            if transition.inventory_action == "commit":
                audit_logger.error(
                    "paid_order_not_active",
                    f"Payment {payment.id} succeeded for {order_status} order; refund required",
                    context,
                )
            else:
                audit_logger.warning("order_not_active", f"Payment {payment.id} {provider_status} for closed order", context)
            return []

        if transition.inventory_action == "commit":
            logger.info("Order %s already %s; committing its reserved stock", payment.order_id, order_status)
            return settle_reservations(self.db, payment.order_id, "commit")
        audit_logger.warning(
            "order_not_active",
            f"Payment {payment.id} {provider_status} but order is {order_status}; reservations kept",
            context,
        )
        return []

    def _finish(self, outcome: TransitionOutcome) -> None:
        if self.cache and outcome.touched_products:
            self.cache.invalidate_products(outcome.touched_products)

    def confirm(self, user: User, payment_id: str, payment_intent_id: str) -> Dict[str, Any]:
        payment = self.db.get(Payment, payment_id)
        if payment is None:
            raise NotFound("Payment not found", code="PAYMENT_NOT_FOUND")
        if payment.order.user_id != user.id:
            raise Forbidden("Payment belongs to another user")
        if payment.provider_transaction_id != payment_intent_id:
            raise BusinessRuleViolation("Payment intent does not match payment", code="PAYMENT_INTENT_MISMATCH")

        intent = self.gateway.retrieve_payment_intent(payment_intent_id)
        provider_status = normalize_provider_status(intent.status, intent.last_error)

        try:
            outcome = self._apply_status(payment, provider_status or intent.status, "confirm", intent.last_error)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self._finish(outcome)

        return {
            "payment_id": payment_id,
            "payment_status": outcome.payment_status,
            "order_id": payment.order_id,
            "order_status": outcome.order_status,
            "provider_status": intent.status,
            "applied": outcome.applied,
            "next_steps": NEXT_STEPS.get(provider_status or intent.status, UNKNOWN_NEXT_STEPS),
        }

    #
    # Webhooks
    #

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify, parse and apply one provider event.

        Signature problems are rejected before anything is read or written.
        Handler failures surface as 500 so the provider redelivers.
        """
        if not signature:
            raise RequestValidationFailed("Missing Stripe-Signature header", code="MISSING_SIGNATURE")
        try:
            self.gateway.verify_webhook(payload, signature)
        except WebhookSignatureError as e:
            logger.warning("Rejected webhook with invalid signature: %s", e)
            raise RequestValidationFailed("Invalid webhook signature", code="INVALID_SIGNATURE") from e

        try:
            event = events.parse_event(json.loads(payload))
        except (ValueError, ValidationError) as e:
            raise RequestValidationFailed("Malformed webhook payload", code="INVALID_PAYLOAD") from e

        if self.db.get(WebhookEvent, event.id) is not None:
            audit_logger.log_webhook(event.id, event.type, "duplicate")
            return {"received": True, "duplicate": True}

        try:
            self.db.add(WebhookEvent(id=event.id, type=event.type))
            self.db.flush()
            outcome = self._dispatch(event)
            self.db.commit()
        except IntegrityError:
            # Same event delivered concurrently and recorded first elsewhere
            self.db.rollback()
            audit_logger.log_webhook(event.id, event.type, "duplicate")
            return {"received": True, "duplicate": True}
        except StorefrontError:
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            audit_logger.log_error("webhook_handler_failed", str(e), {"event_id": event.id, "type": event.type})
            raise StorefrontError("Webhook processing failed", code="WEBHOOK_HANDLER_FAILED") from e

        if outcome is not None:
            self._finish(outcome)
        audit_logger.log_webhook(event.id, event.type, "processed")
        return {"received": True, "duplicate": False}

    def _payment_for_intent(self, intent_id: Optional[str]) -> Optional[Payment]:
        if not intent_id:
            return None
        return self.db.query(Payment).filter(Payment.provider_transaction_id == intent_id).first()

    def _dispatch(self, event) -> Optional[TransitionOutcome]:
        if event.type in events.EVENT_PROVIDER_STATUS:
            intent = event.data.object
            payment = self._payment_for_intent(intent.id)
            if payment is None:
                audit_logger.log_webhook(event.id, event.type, f"unmatched intent {intent.id}")
                return None
            last_error = intent.last_payment_error.message if intent.last_payment_error else None
            return self._apply_status(payment, events.EVENT_PROVIDER_STATUS[event.type], "webhook", last_error)

        if event.type == "charge.refunded":
            charge = event.data.object
            payment = self._payment_for_intent(charge.payment_intent)
            if payment is None:
                audit_logger.log_webhook(event.id, event.type, f"unmatched charge {charge.id}")
                return None
            self._record_refund(payment, charge.amount_refunded, absolute=True)
            return None

        if event.type == "charge.dispute.created":
            dispute = event.data.object
            audit_logger.warning(
                "dispute_created",
                f"Dispute {dispute.id} opened",
                {"dispute_id": dispute.id, "charge": dispute.charge, "amount": dispute.amount, "reason": dispute.reason},
            )
            return None

        logger.info("Ignoring unhandled webhook event type %s", event.type)
        return None

    #
    # Refunds
    #

    def _record_refund(self, payment: Payment, amount_cents: int, absolute: bool = False) -> bool:
        """
        Add (or, for webhooks, converge to) a refunded amount. A payment whose
        refunds cover its full amount becomes REFUNDED along with its order.
        Returns True when the payment reached REFUNDED on this call.
        """
        if absolute:
            refunded = max(payment.refunded_cents or 0, amount_cents)
        else:
            refunded = (payment.refunded_cents or 0) + amount_cents
        refunded = min(refunded, payment.amount_cents)
        payment.refunded_cents = refunded
        self.db.flush()

        if refunded < payment.amount_cents:
            return False
        became_refunded = self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.COMPLETED.value)
            .values(status=PaymentStatus.REFUNDED.value)
            .execution_options(synchronize_session=False)
        ).rowcount > 0
        if became_refunded:
            advance_order(self.db, payment.order_id, OrderStatus.REFUNDED.value, REFUNDABLE_ORDER_STATUSES)
        return became_refunded

    def refund(self, payment_id: str, amount_cents: Optional[int] = None, reason: str = "requested_by_customer") -> Dict[str, Any]:
        payment = self.db.get(Payment, payment_id)
        if payment is None:
            raise NotFound("Payment not found", code="PAYMENT_NOT_FOUND")
        if payment.status != PaymentStatus.COMPLETED.value:
            raise BusinessRuleViolation(
                "Only completed payments can be refunded",
                code="INVALID_PAYMENT_STATUS",
                details={"status": payment.status},
            )
        remaining = payment.amount_cents - (payment.refunded_cents or 0)
        if amount_cents is not None and amount_cents > remaining:
            raise BusinessRuleViolation(
                "Refund exceeds the refundable amount",
                code="INVALID_REFUND_AMOUNT",
                details={"refundable_cents": remaining},
            )

        result = self.gateway.create_refund(payment.provider_transaction_id, amount_cents, reason)

        try:
            self._record_refund(payment, result.amount)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(payment)
        audit_logger.info(
            "refund_created",
            f"Refund {result.id} for payment {payment.id}",
            {"payment_id": payment.id, "refund_id": result.id, "amount_cents": result.amount, "reason": reason},
        )
        return {
            "refund_id": result.id,
            "amount_cents": result.amount,
            "status": result.status,
            "payment_id": payment.id,
            "payment_status": payment.status,
            "refunded_cents": payment.refunded_cents,
            "order_status": payment.order.status,
        }
