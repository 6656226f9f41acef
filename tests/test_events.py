import pytest

from paybord.errors import MalformedEventError
from paybord.events import normalize, normalize_paystack_transaction, payment_method_for_channel
from paybord.signatures import GENERIC, PAYSTACK, STRIPE


def paystack_charge(**data):
    base = {
        "reference": "ref_1",
        "amount": 15000,
        "currency": "GHS",
        "channel": "mobile_money",
        "customer": {"email": "ama@example.com", "first_name": "Ama", "last_name": "Mensah", "phone": "+233200000000"},
        "metadata": {"payment_link_id": "pl_abc"},
    }
    base.update(data)
    return {"event": "charge.success", "data": base}


def test_paystack_charge_success():
    event = normalize(paystack_charge(), PAYSTACK)

    assert event.provider == "paystack"
    assert event.provider_reference == "ref_1"
    assert event.amount_minor == 15000
    assert event.currency == "GHS"
    assert event.payment_method == "mobile_money"
    assert event.payment_link_id == "pl_abc"
    assert event.payment_type == "payment_link"
    assert event.customer.name == "Ama Mensah"
    assert event.customer.email == "ama@example.com"


def test_paystack_custom_fields_carry_attribution():
    payload = paystack_charge(metadata={"custom_fields": [
        {"variable_name": "storefront_id", "value": "sf_1"},
        {"variable_name": "full_name", "value": "Kofi Boateng"},
    ]})
    event = normalize(payload, PAYSTACK)

    assert event.storefront_id == "sf_1"
    assert event.payment_type == "storefront_purchase"
    assert event.customer.name == "Kofi Boateng"


def test_unhandled_event_types_are_ignored():
    assert normalize({"event": "transfer.success", "data": {}}, PAYSTACK) is None
    assert normalize({"type": "customer.created", "data": {}}, GENERIC) is None
    assert normalize({"type": "payment_intent.created", "data": {"object": {}}}, STRIPE) is None


def test_success_event_without_reference_is_malformed():
    payload = paystack_charge()
    del payload["data"]["reference"]
    with pytest.raises(MalformedEventError):
        normalize(payload, PAYSTACK)


@pytest.mark.parametrize("amount", ["150.00", 150.5, None, -1])
def test_amount_must_be_integer_minor_units(amount):
    with pytest.raises(MalformedEventError):
        normalize(paystack_charge(amount=amount), PAYSTACK)


def test_non_object_payload_is_malformed():
    with pytest.raises(MalformedEventError):
        normalize(["charge.success"], PAYSTACK)


def test_stripe_payment_intent_succeeded():
    payload = {
        "id": "evt_1",
        "type": "payment_intent.succeeded",
        "data": {"object": {
            "id": "pi_123",
            "amount": 2500,
            "amount_received": 2500,
            "currency": "usd",
            "payment_method_types": ["card"],
            "receipt_email": "buyer@example.com",
            "metadata": {"businessId": "biz_9"},
        }},
    }
    event = normalize(payload, STRIPE)

    assert event.provider == "stripe"
    assert event.provider_reference == "pi_123"
    assert event.currency == "USD"
    assert event.business_id == "biz_9"
    assert event.payment_method == "card"
    assert event.customer.name == "Anonymous"


def test_generic_payment_succeeded():
    payload = {"type": "payment.succeeded", "data": {
        "reference": "gen_1", "amount": 1000, "currency": "KES", "channel": "bank",
    }}
    event = normalize(payload, GENERIC)

    assert event.provider == "other"
    assert event.payment_method == "bank_transfer"
    assert event.payment_type == "other"


def test_paystack_verify_payload_reads_authorization_channel():
    event = normalize_paystack_transaction({
        "reference": "ref_2", "amount": 500, "currency": "NGN",
        "authorization": {"channel": "card"}, "plan": "PLN_monthly",
    })
    assert event.payment_method == "card"
    assert event.payment_type == "subscription"


@pytest.mark.parametrize("channel,method", [
    ("card", "card"),
    ("bank", "bank_transfer"),
    ("MOBILE_MONEY", "mobile_money"),
    ("ussd", "other"),
    (None, "other"),
])
def test_channel_mapping(channel, method):
    assert payment_method_for_channel(channel) == method
