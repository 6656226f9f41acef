import hashlib
import hmac

import stripe

from paybord.errors import AuthenticationError
from paybord.logging_utils import get_logger

logger = get_logger(__name__)

PAYSTACK = "paystack"
STRIPE = "stripe"
GENERIC = "generic"

PAYSTACK_SIGNATURE_HEADER = "x-paystack-signature"
STRIPE_SIGNATURE_HEADER = "stripe-signature"
GENERIC_SIGNATURE_HEADER = "x-webhook-signature"


def hex_hmac(secret: str, raw_body: bytes, digestmod) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, digestmod).hexdigest()


class SignatureVerifier:
    """Authenticates webhook bodies before anything reads them.

    The channel is picked by which signature header is present; the digest
    is always computed over the raw request bytes.
    """

    def __init__(self, paystack_secret=None, webhook_secret=None, stripe_webhook_secret=None,
                 stripe_tolerance=stripe.Webhook.DEFAULT_TOLERANCE):
        self.paystack_secret = paystack_secret
        self.webhook_secret = webhook_secret
        self.stripe_webhook_secret = stripe_webhook_secret
        self.stripe_tolerance = stripe_tolerance

    def verify(self, raw_body: bytes, headers) -> str:
        """Return the authenticated channel or raise ``AuthenticationError``."""
        headers = {k.lower(): v for k, v in headers.items()}

        if headers.get(PAYSTACK_SIGNATURE_HEADER):
            self._verify_hmac(raw_body, headers[PAYSTACK_SIGNATURE_HEADER],
                              self.paystack_secret, hashlib.sha512, PAYSTACK)
            return PAYSTACK

        if headers.get(STRIPE_SIGNATURE_HEADER):
            self._verify_stripe(raw_body, headers[STRIPE_SIGNATURE_HEADER])
            return STRIPE

        signature = headers.get(GENERIC_SIGNATURE_HEADER)
        if not signature:
            raise AuthenticationError("Webhook signature is missing", status_code=400)
        self._verify_hmac(raw_body, signature, self.webhook_secret, hashlib.sha256, GENERIC)
        return GENERIC

    def _verify_hmac(self, raw_body, signature, secret, digestmod, channel):
        if not secret:
            logger.error("No signing secret configured for %s webhooks", channel)
            raise AuthenticationError(f"Invalid {channel} webhook signature")
        expected = hex_hmac(secret, raw_body, digestmod)
        if not hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("utf-8")):
            raise AuthenticationError(f"Invalid {channel} webhook signature")

    def _verify_stripe(self, raw_body, signature):
        if not self.stripe_webhook_secret:
            logger.error("No signing secret configured for stripe webhooks")
            raise AuthenticationError("Invalid stripe webhook signature")
        try:
            stripe.WebhookSignature.verify_header(
                raw_body.decode("utf-8"),
                signature,
                self.stripe_webhook_secret,
                self.stripe_tolerance,
            )
        except UnicodeDecodeError:
            raise AuthenticationError("Invalid stripe webhook signature")
        except stripe.SignatureVerificationError:
            raise AuthenticationError("Invalid stripe webhook signature")
