from fastapi import Request

from paybord import config, database
from paybord.notifier import Notifier
from paybord.providers import PaystackClient, StripeGateway
from paybord.signatures import SignatureVerifier


def get_db():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_verifier() -> SignatureVerifier:
    return SignatureVerifier(
        paystack_secret=config.PAYSTACK_SECRET_KEY,
        webhook_secret=config.WEBHOOK_SECRET,
        stripe_webhook_secret=config.STRIPE_WEBHOOK_SECRET,
    )


def get_gateway() -> StripeGateway:
    return StripeGateway(config.STRIPE_SECRET_KEY)


def get_paystack_client() -> PaystackClient:
    return PaystackClient(
        config.PAYSTACK_SECRET_KEY,
        base_url=config.PAYSTACK_BASE_URL,
        timeout=config.PROVIDER_TIMEOUT_SECONDS,
    )
