from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class PaymentIntentCreate(BaseModel):
    amount: Decimal                 # major unit, e.g. 53.55 GHS
    currency: str = "USD"
    customer: Optional[str] = None
    payment_method_types: List[str] = ["card"]
    description: Optional[str] = None
    metadata: Dict[str, str] = {}
    receipt_email: Optional[str] = None


class PaymentIntentUpdate(BaseModel):
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None
    receipt_email: Optional[str] = None
    payment_method_types: Optional[List[str]] = None


class PaymentIntentConfirm(BaseModel):
    payment_method: str


class CustomerInfo(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class PaystackInitialize(BaseModel):
    amount: Decimal                 # major unit; sent to Paystack in minor units
    email: str
    currency: str = "NGN"
    reference: Optional[str] = None
    callback_url: Optional[str] = None
    metadata: Dict[str, Any] = {}
    payment_link_id: Optional[str] = None
    customer_info: CustomerInfo = CustomerInfo()


def _timestamp(value):
    return value.isoformat() if value is not None else None


def _amount(value):
    return float(value) if value is not None else None


def transaction_to_dict(transaction) -> dict:
    return {
        "transaction_id": transaction.transaction_id,
        "provider": transaction.provider,
        "provider_reference": transaction.provider_reference,
        "amount": _amount(transaction.amount),
        "currency": transaction.currency,
        "status": transaction.status,
        "business_id": transaction.business_id,
        "storefront_id": transaction.storefront_id,
        "payment_link_id": transaction.payment_link_id,
        "payment_type": transaction.payment_type,
        "payment_method": transaction.payment_method,
        "customer_name": transaction.customer_name,
        "customer_email": transaction.customer_email,
        "customer_phone": transaction.customer_phone,
        "metadata": transaction.meta or {},
        "created_at": _timestamp(transaction.created_at),
        "processed_at": _timestamp(transaction.processed_at),
        "failure_reason": transaction.failure_reason,
    }


def intent_to_dict(intent, include_secret=False) -> dict:
    data = {
        "id": intent.payment_intent_id,
        "amount": _amount(intent.amount),
        "currency": intent.currency,
        "status": intent.status,
        "customer": intent.customer,
        "payment_method": intent.payment_method,
        "payment_method_types": intent.payment_method_types or [],
        "description": intent.description,
        "metadata": intent.meta or {},
        "payment_result": intent.payment_result,
        "created": _timestamp(intent.created_at),
        "canceled_at": _timestamp(intent.canceled_at),
    }
    if include_secret:
        data["client_secret"] = intent.client_secret
    return data
