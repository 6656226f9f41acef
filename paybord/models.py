import datetime as dt

from sqlalchemy import Column, String, Numeric, DateTime, JSON, UniqueConstraint, Index
from paybord.database import Base


def utcnow():
    return dt.datetime.now(dt.timezone.utc)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        # One ledger row per real-world payment. NULL references never collide.
        UniqueConstraint("provider", "provider_reference", name="uq_transactions_provider_reference"),
        Index("ix_transactions_business_created", "business_id", "created_at"),
    )

    transaction_id = Column(String, primary_key=True)       # txn_<hex>, never reassigned
    provider_reference = Column(String, nullable=True)      # Paystack reference / Stripe PaymentIntent ID
    provider = Column(String, nullable=False, default="other")  # stripe | paystack | other
    amount = Column(Numeric(14, 2), nullable=False)         # major unit, always
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending | success | failed | refunded

    business_id = Column(String, index=True)
    storefront_id = Column(String)
    payment_link_id = Column(String)
    payment_type = Column(String, default="other")          # storefront_purchase | payment_link | subscription | other
    payment_method = Column(String, default="other")        # card | bank_transfer | mobile_money | other

    customer_name = Column(String)
    customer_email = Column(String, index=True)
    customer_phone = Column(String)

    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, default=dict)
    provider_data = Column(JSON)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    processed_at = Column(DateTime(timezone=True))
    failure_reason = Column(String)
    refund_requested_at = Column(DateTime(timezone=True))   # set while a provider refund is in flight


class PaymentIntent(Base):
    __tablename__ = "payment_intents"

    payment_intent_id = Column(String, primary_key=True)    # pi_<hex>
    client_secret = Column(String, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)         # major unit
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String, nullable=False, default="created", index=True)
    payment_method = Column(String)
    payment_method_types = Column(JSON, default=lambda: ["card"])
    customer = Column(String, index=True)
    description = Column(String)
    meta = Column("metadata", JSON, default=dict)
    receipt_email = Column(String)
    payment_result = Column(JSON)
    canceled_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# Owned by the business/storefront services; read here only to attribute payments.

class Business(Base):
    __tablename__ = "businesses"

    id = Column(String, primary_key=True)
    owner_id = Column(String, index=True)                   # user id of the account holder
    name = Column(String)


class PaymentLink(Base):
    __tablename__ = "payment_links"

    link_id = Column(String, primary_key=True)
    business_id = Column(String, nullable=False)


class Storefront(Base):
    __tablename__ = "storefronts"

    id = Column(String, primary_key=True)
    business_id = Column(String)
