import hashlib
import hmac
import json
import os
import time

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_paybord.db")

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import sessionmaker

from paybord import config
from paybord.database import Base, make_engine
from paybord.models import Business, PaymentLink, Storefront
from paybord.notifier import Notifier
import paybord.auth

PAYSTACK_SECRET = "sk_test_paystack"
WEBHOOK_SECRET = "whsec_generic"
STRIPE_WEBHOOK_SECRET = "whsec_stripe"
JWT_SECRET = "jwt-test-secret"

# Setup test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_paybord.db"
engine = make_engine(SQLALCHEMY_DATABASE_URL)
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.published = []

    def publish(self, transaction):
        self.published.append(transaction)

    def subscribe(self):
        raise NotImplementedError

    def unsubscribe(self, queue):
        pass


class Signer:
    def paystack(self, body: bytes, secret=PAYSTACK_SECRET):
        return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()

    def generic(self, body: bytes, secret=WEBHOOK_SECRET):
        return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()

    def stripe(self, body: bytes, secret=STRIPE_WEBHOOK_SECRET, timestamp=None):
        timestamp = timestamp or int(time.time())
        signed = f"{timestamp}.{body.decode()}".encode()
        digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={digest}"


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def secrets(monkeypatch):
    monkeypatch.setattr(config, "PAYSTACK_SECRET_KEY", PAYSTACK_SECRET)
    monkeypatch.setattr(config, "WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_SECRET", STRIPE_WEBHOOK_SECRET)
    monkeypatch.setattr(config, "STRIPE_SECRET_KEY", "sk_test_stripe")
    monkeypatch.setattr(config, "JWT_SECRET", JWT_SECRET)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def signer():
    return Signer()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def directory(db):
    """Businesses, payment links and storefronts owned by other services."""
    db.add_all([
        Business(id="biz_1", owner_id="user_1", name="Accra Bakes"),
        Business(id="biz_2", owner_id="user_2", name="Lagos Prints"),
        PaymentLink(link_id="pl_abc", business_id="biz_1"),
        Storefront(id="sf_1", business_id="biz_2"),
    ])
    db.commit()


@pytest.fixture
def fastapi_app(monkeypatch, notifier):
    from paybord.main import create_app

    # Mock SessionLocal so every request uses the test database
    monkeypatch.setattr("paybord.database.SessionLocal", TestingSessionLocal)
    app = create_app(notifier=notifier)
    # Mock auth verification
    app.dependency_overrides[paybord.auth.verify_token] = lambda: "user_1"
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(fastapi_app):
    with TestClient(fastapi_app) as c:
        yield c


def encode(payload) -> bytes:
    return json.dumps(payload).encode()


def bearer(sub="user_1"):
    token = jwt.encode({"sub": sub}, JWT_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}
