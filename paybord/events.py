"""Provider wire shapes -> one canonical ``PaymentEvent``.

Only successful-charge events produce a ``PaymentEvent``; every other event
type normalizes to ``None`` and is acknowledged without further work, since
providers treat a non-2xx answer as a reason to redeliver.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from paybord.currency import MinorUnits
from paybord.errors import MalformedEventError
from paybord.signatures import PAYSTACK, STRIPE, GENERIC

SUCCESS_EVENT_TYPES = {
    PAYSTACK: "charge.success",
    STRIPE: "payment_intent.succeeded",
    GENERIC: "payment.succeeded",
}

CHANNEL_PAYMENT_METHODS = {
    "card": "card",
    "bank": "bank_transfer",
    "bank_transfer": "bank_transfer",
    "mobile_money": "mobile_money",
}

ATTRIBUTION_KEYS = {
    "business_id": ("business_id", "businessId"),
    "storefront_id": ("storefront_id", "storefrontId"),
    "payment_link_id": ("payment_link_id", "paymentLinkId"),
}


@dataclass
class Customer:
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class PaymentEvent:
    provider: str
    provider_reference: str
    amount_minor: MinorUnits
    currency: str
    channel: Optional[str] = None
    customer: Customer = field(default_factory=Customer)
    metadata: dict = field(default_factory=dict)
    payment_type: str = "other"
    raw_payload: Any = None

    @property
    def payment_method(self) -> str:
        return payment_method_for_channel(self.channel)

    @property
    def business_id(self):
        return self.metadata.get("business_id")

    @property
    def storefront_id(self):
        return self.metadata.get("storefront_id")

    @property
    def payment_link_id(self):
        return self.metadata.get("payment_link_id")


def payment_method_for_channel(channel) -> str:
    if not isinstance(channel, str):
        return "other"
    return CHANNEL_PAYMENT_METHODS.get(channel.lower(), "other")


def payment_type_for(metadata: dict) -> str:
    if metadata.get("storefront_id"):
        return "storefront_purchase"
    if metadata.get("payment_link_id"):
        return "payment_link"
    if metadata.get("subscription") or metadata.get("plan"):
        return "subscription"
    return "other"


def _custom_fields(metadata: dict) -> dict:
    fields = metadata.get("custom_fields")
    if not isinstance(fields, list):
        return {}
    return {
        f.get("variable_name"): f.get("value")
        for f in fields
        if isinstance(f, dict) and f.get("variable_name")
    }


def extract_metadata(raw_metadata) -> dict:
    """Copy provider metadata and lift attribution ids to canonical keys.

    Direct metadata keys win over Paystack ``custom_fields`` entries.
    """
    if not isinstance(raw_metadata, dict):
        return {}
    metadata = dict(raw_metadata)
    custom = _custom_fields(raw_metadata)
    for key, aliases in ATTRIBUTION_KEYS.items():
        value = None
        for alias in aliases:
            value = value or raw_metadata.get(alias)
        value = value or custom.get(key)
        if value:
            metadata[key] = str(value)
        else:
            metadata.pop(key, None)
    return metadata


def _require(data: dict, key: str, event_type: str):
    value = data.get(key)
    if value in (None, ""):
        raise MalformedEventError(f"{event_type} event is missing '{key}'")
    return value


def _minor_amount(value, event_type: str) -> MinorUnits:
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedEventError(f"{event_type} amount must be an integer in minor units")
    if value < 0:
        raise MalformedEventError(f"{event_type} amount must not be negative")
    return MinorUnits(value)


def _customer_name(metadata: dict, first=None, last=None) -> str:
    custom = _custom_fields(metadata)
    name = custom.get("full_name") or metadata.get("customer_name")
    if not name:
        name = " ".join(part for part in (first, last) if part)
    return name or "Anonymous"


def normalize_paystack_transaction(data: dict, event_type: str = "charge.success") -> PaymentEvent:
    """Paystack transaction object (webhook ``data`` or verify response)."""
    if not isinstance(data, dict):
        raise MalformedEventError(f"{event_type} event has no data object")
    reference = _require(data, "reference", event_type)
    amount = _minor_amount(_require(data, "amount", event_type), event_type)
    currency = str(_require(data, "currency", event_type)).upper()

    raw_metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    metadata = extract_metadata(raw_metadata)
    if data.get("plan"):
        metadata.setdefault("plan", data["plan"])

    customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}
    channel = data.get("channel")
    if not channel and isinstance(data.get("authorization"), dict):
        channel = data["authorization"].get("channel")

    return PaymentEvent(
        provider=PAYSTACK,
        provider_reference=str(reference),
        amount_minor=amount,
        currency=currency,
        channel=channel,
        customer=Customer(
            email=customer.get("email"),
            name=_customer_name(raw_metadata, customer.get("first_name"), customer.get("last_name")),
            phone=raw_metadata.get("customer_phone") or customer.get("phone"),
        ),
        metadata=metadata,
        payment_type=payment_type_for(metadata),
        raw_payload=data,
    )


def normalize_stripe_intent(intent: dict, event_type: str) -> PaymentEvent:
    if not isinstance(intent, dict):
        raise MalformedEventError(f"{event_type} event has no data object")
    reference = _require(intent, "id", event_type)
    amount = intent.get("amount_received")
    if amount in (None, 0):
        amount = intent.get("amount")
    amount = _minor_amount(amount, event_type)
    currency = str(_require(intent, "currency", event_type)).upper()

    raw_metadata = intent.get("metadata") if isinstance(intent.get("metadata"), dict) else {}
    metadata = extract_metadata(raw_metadata)
    method_types = intent.get("payment_method_types") or []

    return PaymentEvent(
        provider=STRIPE,
        provider_reference=str(reference),
        amount_minor=amount,
        currency=currency,
        channel=method_types[0] if method_types else None,
        customer=Customer(
            email=intent.get("receipt_email") or raw_metadata.get("customer_email"),
            name=_customer_name(raw_metadata),
            phone=raw_metadata.get("customer_phone"),
        ),
        metadata=metadata,
        payment_type=payment_type_for(metadata),
        raw_payload=intent,
    )


def normalize_generic_payment(data: dict, event_type: str) -> PaymentEvent:
    if not isinstance(data, dict):
        raise MalformedEventError(f"{event_type} event has no data object")
    reference = data.get("reference") or data.get("transactionId") or data.get("paymentIntentId")
    if not reference:
        raise MalformedEventError(f"{event_type} event is missing 'reference'")
    amount = _minor_amount(_require(data, "amount", event_type), event_type)
    currency = str(_require(data, "currency", event_type)).upper()

    raw_metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    metadata = extract_metadata(raw_metadata)
    customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}

    return PaymentEvent(
        provider="other",
        provider_reference=str(reference),
        amount_minor=amount,
        currency=currency,
        channel=data.get("channel") or data.get("paymentMethod"),
        customer=Customer(
            email=customer.get("email"),
            name=customer.get("name") or _customer_name(raw_metadata),
            phone=customer.get("phone"),
        ),
        metadata=metadata,
        payment_type=payment_type_for(metadata),
        raw_payload=data,
    )


def event_type_of(payload: dict, channel: str) -> Optional[str]:
    key = "event" if channel == PAYSTACK else "type"
    return payload.get(key)


def normalize(payload, channel: str) -> Optional[PaymentEvent]:
    """Return the ``PaymentEvent`` for a success event, ``None`` for anything else."""
    if not isinstance(payload, dict):
        raise MalformedEventError("Webhook payload must be a JSON object")

    event_type = event_type_of(payload, channel)
    if event_type != SUCCESS_EVENT_TYPES.get(channel):
        return None

    if channel == PAYSTACK:
        return normalize_paystack_transaction(payload.get("data"), event_type)
    if channel == STRIPE:
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        return normalize_stripe_intent(data.get("object"), event_type)
    return normalize_generic_payment(payload.get("data"), event_type)
