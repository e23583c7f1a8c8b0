"""
Typed webhook events.

The raw body is only parsed after its signature is verified. Known event
types are validated into a discriminated union on ``type``; anything else is
kept as an UnhandledEvent so it can be acknowledged and logged.
"""

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _ProviderObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


class PaymentError(_ProviderObject):
    code: Optional[str] = None
    message: Optional[str] = None


class PaymentIntentObject(_ProviderObject):
    id: str
    status: str
    amount: int
    currency: str
    metadata: Dict[str, str] = Field(default_factory=dict)
    last_payment_error: Optional[PaymentError] = None


class ChargeObject(_ProviderObject):
    id: str
    payment_intent: Optional[str] = None
    amount: int = 0
    amount_refunded: int = 0
    refunded: bool = False


class DisputeObject(_ProviderObject):
    id: str
    charge: Optional[str] = None
    payment_intent: Optional[str] = None
    amount: int = 0
    reason: Optional[str] = None
    status: Optional[str] = None


class _Data(_ProviderObject):
    object: Any


class PaymentIntentData(_Data):
    object: PaymentIntentObject


class ChargeData(_Data):
    object: ChargeObject


class DisputeData(_Data):
    object: DisputeObject


class _Event(_ProviderObject):
    id: str
    created: Optional[int] = None
    livemode: bool = False


class PaymentIntentSucceeded(_Event):
    type: Literal["payment_intent.succeeded"]
    data: PaymentIntentData


class PaymentIntentFailed(_Event):
    type: Literal["payment_intent.payment_failed"]
    data: PaymentIntentData


class PaymentIntentCanceled(_Event):
    type: Literal["payment_intent.canceled"]
    data: PaymentIntentData


class PaymentIntentRequiresAction(_Event):
    type: Literal["payment_intent.requires_action"]
    data: PaymentIntentData


class PaymentIntentProcessing(_Event):
    type: Literal["payment_intent.processing"]
    data: PaymentIntentData


class ChargeRefunded(_Event):
    type: Literal["charge.refunded"]
    data: ChargeData


class ChargeDisputeCreated(_Event):
    type: Literal["charge.dispute.created"]
    data: DisputeData


class UnhandledEvent(_Event):
    type: str


KnownEvent = Annotated[
    Union[
        PaymentIntentSucceeded,
        PaymentIntentFailed,
        PaymentIntentCanceled,
        PaymentIntentRequiresAction,
        PaymentIntentProcessing,
        ChargeRefunded,
        ChargeDisputeCreated,
    ],
    Field(discriminator="type"),
]

_known_event_adapter = TypeAdapter(KnownEvent)

KNOWN_EVENT_TYPES = frozenset({
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
    "payment_intent.requires_action",
    "payment_intent.processing",
    "charge.refunded",
    "charge.dispute.created",
})

# Provider status each payment-intent event reports
EVENT_PROVIDER_STATUS = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "canceled",
    "payment_intent.requires_action": "requires_action",
    "payment_intent.processing": "processing",
}


def parse_event(payload: Dict[str, Any]) -> Union[KnownEvent, UnhandledEvent]:
    """Validate a decoded event body. Raises pydantic.ValidationError on malformed events."""
    if not isinstance(payload, dict):
        raise ValueError("Webhook payload must be a JSON object")
    if payload.get("type") in KNOWN_EVENT_TYPES:
        return _known_event_adapter.validate_python(payload)
    return UnhandledEvent.model_validate(payload)
