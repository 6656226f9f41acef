"""Clients for the payment providers.

Handlers receive these through FastAPI dependencies, so tests swap in fakes
with ``app.dependency_overrides`` instead of patching SDK globals.
"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import httpx
import stripe

from paybord.currency import to_minor_unit
from paybord.errors import DownstreamFailure, GatewayUnavailableError, ValidationError
from paybord.logging_utils import get_logger

logger = get_logger(__name__)


@dataclass
class ChargeResult:
    succeeded: bool
    reference: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None
    # the provider accepted the charge but has not settled it yet
    pending: bool = False


# Stripe PaymentIntent statuses that mean the charge did not go through.
STRIPE_DECLINED_STATUSES = ("requires_payment_method", "canceled")


class StripeGateway:
    """Synchronous charges and refunds through the Stripe API."""

    provider = "stripe"

    def __init__(self, api_key):
        self.api_key = api_key

    def charge(self, intent) -> ChargeResult:
        """Charge ``intent`` (a ``PaymentIntent`` row) with its payment method.

        A decline is a ``ChargeResult`` with ``succeeded=False``. Anything
        that leaves the outcome unknown raises ``GatewayUnavailableError``.
        """
        if not self.api_key:
            raise GatewayUnavailableError("Stripe is not configured")

        amount = to_minor_unit(intent.amount, intent.currency)
        try:
            payment = stripe.PaymentIntent.create(
                amount=amount,
                currency=intent.currency.lower(),
                payment_method=intent.payment_method,
                confirm=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                receipt_email=intent.receipt_email,
                metadata={**(intent.meta or {}), "payment_intent_id": intent.payment_intent_id},
                idempotency_key=f"{intent.payment_intent_id}-{intent.payment_method}-{amount}",
                api_key=self.api_key,
            )
        except stripe.CardError as exc:
            logger.info("Stripe declined %s: %s", intent.payment_intent_id, exc.user_message)
            return ChargeResult(False, status="failed", error=exc.user_message or "Card declined")
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
            logger.warning("Stripe unavailable for %s: %s", intent.payment_intent_id, exc)
            raise GatewayUnavailableError("Payment gateway unavailable, retry confirmation") from exc
        except stripe.InvalidRequestError as exc:
            return ChargeResult(False, status="failed", error=exc.user_message or str(exc))
        except stripe.StripeError as exc:
            logger.error("Stripe error for %s: %s", intent.payment_intent_id, exc)
            raise GatewayUnavailableError("Payment gateway error") from exc

        if payment.status == "succeeded":
            return ChargeResult(True, reference=payment.id, status="succeeded")
        if payment.status in STRIPE_DECLINED_STATUSES:
            return ChargeResult(False, reference=payment.id, status=payment.status,
                                error=f"Payment not completed (status: {payment.status})")
        # requires_action, processing, requires_capture: settled later by webhook
        logger.info("Stripe charge %s for %s is %s", payment.id, intent.payment_intent_id, payment.status)
        return ChargeResult(False, reference=payment.id, status=payment.status, pending=True)

    def refund(self, reference):
        if not self.api_key:
            raise DownstreamFailure("Stripe is not configured")
        try:
            return stripe.Refund.create(payment_intent=reference, api_key=self.api_key)
        except stripe.InvalidRequestError as exc:
            raise ValidationError(exc.user_message or str(exc)) from exc
        except stripe.StripeError as exc:
            raise DownstreamFailure("Stripe refund failed") from exc


class PaystackClient:
    """Minimal Paystack REST client: checkout initialization, verification and refunds."""

    provider = "paystack"

    def __init__(self, secret_key, base_url="https://api.paystack.co", timeout=10.0, transport=None):
        self.secret_key = secret_key
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    def initialize(self, payload) -> dict:
        """Start a hosted checkout; ``payload["amount"]`` is in minor units."""
        return self._request("POST", "/transaction/initialize", json=payload)

    def verify(self, reference) -> dict:
        """Return Paystack's transaction object for ``reference``."""
        return self._request("GET", f"/transaction/verify/{quote(str(reference), safe='')}")

    def refund(self, reference) -> dict:
        return self._request("POST", "/refund", json={"transaction": reference})

    def _request(self, method, path, json=None) -> dict:
        if not self.secret_key:
            raise DownstreamFailure("Paystack is not configured")
        try:
            with httpx.Client(
                base_url=self.base_url,
                headers={"Authorization": f"Bearer {self.secret_key}"},
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                response = client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            logger.warning("Paystack %s %s failed: %s", method, path, exc)
            raise DownstreamFailure("Paystack is unreachable") from exc

        if response.status_code >= 500:
            raise DownstreamFailure(f"Paystack returned {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise DownstreamFailure("Paystack returned an unreadable response") from exc
        if not isinstance(body, dict):
            raise DownstreamFailure("Paystack returned an unreadable response")

        if response.status_code >= 400 or not body.get("status"):
            raise ValidationError(body.get("message") or "Paystack rejected the request")
        return body.get("data") or {}
