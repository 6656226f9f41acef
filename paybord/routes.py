import math
import secrets
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from paybord.auth import verify_token
from paybord.currency import to_major_unit, to_minor_unit
from paybord.dependencies import get_db, get_gateway, get_notifier, get_paystack_client
from paybord.errors import InvalidStateError, NotFoundError, ValidationError
from paybord.events import normalize_paystack_transaction
from paybord.intents import PaymentIntentService
from paybord.ledger import LedgerWriter
from paybord.logging_utils import get_logger
from paybord.models import Business, PaymentLink
from paybord.reconcile import PaymentReconciler
from paybord.schemas import (
    PaymentIntentConfirm,
    PaymentIntentCreate,
    PaymentIntentUpdate,
    PaystackInitialize,
    intent_to_dict,
    transaction_to_dict,
)

logger = get_logger(__name__)

router = APIRouter()


def _pagination(total, page, limit):
    return {"total": total, "pages": math.ceil(total / limit) if limit else 0, "page": page, "limit": limit}


def intent_service(db=Depends(get_db), gateway=Depends(get_gateway), notifier=Depends(get_notifier)):
    return PaymentIntentService(db, gateway, PaymentReconciler(db, notifier))


# --- Provider checkout ---

@router.post("/paystack/initialize")
def initialize_paystack_payment(
    request: PaystackInitialize,
    db=Depends(get_db),
    paystack=Depends(get_paystack_client),
):
    # attribution travels in the metadata Paystack echoes back on verify and webhook
    metadata = dict(request.metadata)
    if request.payment_link_id:
        link = db.query(PaymentLink).filter_by(link_id=request.payment_link_id).first()
        if link is None:
            raise NotFoundError("Payment link not found")
        metadata["payment_link_id"] = link.link_id
        metadata["business_id"] = link.business_id
        business = db.get(Business, link.business_id)
        if business is not None and business.name:
            metadata["business_name"] = business.name

    customer = request.customer_info
    if customer.name:
        metadata["customer_name"] = customer.name
    if customer.phone:
        metadata["customer_phone"] = customer.phone
    if customer.address:
        metadata["customer_address"] = customer.address

    currency = request.currency.upper()
    reference = request.reference or f"pbd_{secrets.token_hex(8)}"
    amount = to_minor_unit(request.amount, currency)
    if amount <= 0:
        raise ValidationError("Valid amount is required")

    payload = {
        "amount": amount,
        "email": request.email,
        "currency": currency,
        "reference": reference,
        "metadata": metadata,
    }
    if request.callback_url:
        payload["callback_url"] = request.callback_url
    data = paystack.initialize(payload)
    logger.info("Initialized Paystack checkout %s (%s %s)", reference, request.amount, currency)

    return {
        "success": True,
        "data": {
            "reference": data.get("reference") or reference,
            "authorization_url": data.get("authorization_url"),
            "access_code": data.get("access_code"),
            "amount": float(request.amount),
            "currency": currency,
        },
    }


# --- Provider verification callback ---

@router.get("/paystack/verify/{reference}")
def verify_paystack_payment(
    reference: str,
    background_tasks: BackgroundTasks,
    db=Depends(get_db),
    paystack=Depends(get_paystack_client),
    notifier=Depends(get_notifier),
):
    data = paystack.verify(reference)

    if data.get("status") != "success":
        return {
            "success": False,
            "data": {
                "reference": data.get("reference") or reference,
                "status": data.get("status"),
                "message": "Payment was not successful",
            },
        }

    event = normalize_paystack_transaction(data)
    if event.provider_reference != reference:
        raise ValidationError("Verified reference does not match the requested reference")

    result = PaymentReconciler(db, notifier).reconcile(event, background_tasks=background_tasks)
    transaction = result.transaction
    return {
        "success": True,
        "data": {
            "reference": event.provider_reference,
            "status": data["status"],
            "amount": float(to_major_unit(event.amount_minor, event.currency)),
            "currency": event.currency,
            "customer": data.get("customer"),
            "transaction_id": transaction.transaction_id,
            "payment_method": transaction.payment_method,
        },
    }


# --- Payment intents ---

@router.post("/payments/intents", status_code=201)
def create_payment_intent(
    request: PaymentIntentCreate,
    user_id=Depends(verify_token),
    service=Depends(intent_service),
):
    intent = service.create(
        user_id,
        request.amount,
        currency=request.currency,
        customer=request.customer,
        payment_method_types=request.payment_method_types,
        description=request.description,
        metadata=request.metadata,
        receipt_email=request.receipt_email,
    )
    return intent_to_dict(intent, include_secret=True)


@router.get("/payments/intents")
def list_payment_intents(
    status: Optional[str] = None,
    customer: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user_id=Depends(verify_token),
    service=Depends(intent_service),
):
    intents, total = service.list(user_id, status=status, customer=customer, page=page, limit=limit)
    return {"data": [intent_to_dict(i) for i in intents], "pagination": _pagination(total, page, limit)}


@router.get("/payments/intents/{payment_intent_id}")
def get_payment_intent(payment_intent_id: str, user_id=Depends(verify_token), service=Depends(intent_service)):
    return intent_to_dict(service.retrieve(user_id, payment_intent_id))


@router.put("/payments/intents/{payment_intent_id}")
def update_payment_intent(
    payment_intent_id: str,
    request: PaymentIntentUpdate,
    user_id=Depends(verify_token),
    service=Depends(intent_service),
):
    intent = service.update(user_id, payment_intent_id, **request.model_dump(exclude_unset=True))
    return intent_to_dict(intent)


@router.post("/payments/intents/{payment_intent_id}/confirm")
def confirm_payment_intent(
    payment_intent_id: str,
    request: PaymentIntentConfirm,
    background_tasks: BackgroundTasks,
    user_id=Depends(verify_token),
    service=Depends(intent_service),
):
    intent = service.confirm(user_id, payment_intent_id, request.payment_method, background_tasks)
    return intent_to_dict(intent)


@router.post("/payments/intents/{payment_intent_id}/cancel")
def cancel_payment_intent(payment_intent_id: str, user_id=Depends(verify_token), service=Depends(intent_service)):
    return intent_to_dict(service.cancel(user_id, payment_intent_id))


# --- Ledger read side and refunds ---

def _owned_business_ids(db, user_id):
    return [row.id for row in db.query(Business.id).filter(Business.owner_id == str(user_id))]


def _owned_transaction(db, user_id, transaction_id):
    transaction = LedgerWriter(db).get(transaction_id)
    if transaction.business_id not in _owned_business_ids(db, user_id):
        raise NotFoundError("Transaction not found")
    return transaction


@router.get("/transactions")
def list_transactions(
    business_id: Optional[str] = None,
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user_id=Depends(verify_token),
    db=Depends(get_db),
):
    business_ids = _owned_business_ids(db, user_id)
    if business_id:
        if business_id not in business_ids:
            raise NotFoundError("Business not found")
        business_ids = [business_id]
    transactions, total = LedgerWriter(db).list(business_ids, status=status, page=page, limit=limit)
    return {"data": [transaction_to_dict(t) for t in transactions], "pagination": _pagination(total, page, limit)}


@router.get("/transactions/{transaction_id}")
def get_transaction(transaction_id: str, user_id=Depends(verify_token), db=Depends(get_db)):
    return transaction_to_dict(_owned_transaction(db, user_id, transaction_id))


@router.post("/transactions/{transaction_id}/refund")
def refund_transaction(
    transaction_id: str,
    user_id=Depends(verify_token),
    db=Depends(get_db),
    gateway=Depends(get_gateway),
    paystack=Depends(get_paystack_client),
):
    ledger = LedgerWriter(db)
    transaction = _owned_transaction(db, user_id, transaction_id)
    if transaction.status != "success":
        raise InvalidStateError(f"Transaction cannot be refunded in status: {transaction.status}")

    providers = {"stripe": gateway, "paystack": paystack}
    client = providers.get(transaction.provider)
    if client is None or not transaction.provider_reference:
        raise ValidationError(f"Refunds are not supported for provider {transaction.provider}")

    ledger.claim_refund(transaction)
    try:
        client.refund(transaction.provider_reference)
    except Exception:
        ledger.release_refund(transaction)
        raise
    logger.info("Refunded %s through %s", transaction_id, transaction.provider)
    return transaction_to_dict(ledger.mark_refunded(transaction_id))
