"""PaymentIntent lifecycle for the synchronous, client-driven payment path.

    created ─┬─> requires_payment_method ─┐
             └─> requires_confirmation ───┴─> processing ─┬─> succeeded
                                                          └─> failed
    canceled is reachable from every state except succeeded and canceled.

A charge the gateway accepted but has not settled (3DS, async methods) leaves
the intent in processing; the provider success webhook moves it to succeeded
through ``settle_processing_intent``.

Every status change is a conditional UPDATE on the current status, so two
requests racing on the same intent cannot both win.
"""

import secrets
from decimal import Decimal, InvalidOperation

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from paybord.currency import to_minor_unit
from paybord.errors import (
    DownstreamFailure,
    GatewayUnavailableError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from paybord.events import Customer, PaymentEvent, payment_type_for, extract_metadata
from paybord.logging_utils import get_logger
from paybord.models import PaymentIntent, utcnow

logger = get_logger(__name__)

MODIFIABLE_STATES = ("created", "requires_payment_method", "requires_confirmation")
CONFIRMABLE_STATES = MODIFIABLE_STATES
NON_CANCELABLE_STATES = ("succeeded", "canceled")
INTENT_STATES = MODIFIABLE_STATES + ("processing", "succeeded", "failed", "canceled")


def _positive_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("Valid amount is required")
    if not value.is_finite() or value <= 0:
        raise ValidationError("Valid amount is required")
    return value


def _currency(currency) -> str:
    if not isinstance(currency, str) or len(currency) != 3 or not currency.isalpha():
        raise ValidationError("Currency must be a 3-letter ISO 4217 code")
    return currency.upper()


class PaymentIntentService:
    def __init__(self, db, gateway, reconciler):
        self.db = db
        self.gateway = gateway
        self.reconciler = reconciler

    def create(self, user_id, amount, currency="USD", customer=None, payment_method_types=None,
               description=None, metadata=None, receipt_email=None) -> PaymentIntent:
        payment_intent_id = f"pi_{secrets.token_hex(8)}"
        intent = PaymentIntent(
            payment_intent_id=payment_intent_id,
            client_secret=f"{payment_intent_id}_secret_{secrets.token_hex(16)}",
            user_id=str(user_id),
            amount=_positive_amount(amount),
            currency=_currency(currency),
            status="created",
            customer=customer,
            payment_method_types=payment_method_types or ["card"],
            description=description,
            meta=metadata or {},
            receipt_email=receipt_email.lower() if receipt_email else None,
        )
        try:
            self.db.add(intent)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise DownstreamFailure("Could not create payment intent") from exc
        logger.info("Created payment intent %s (%s %s)", payment_intent_id, intent.amount, intent.currency)
        return intent

    def retrieve(self, user_id, payment_intent_id) -> PaymentIntent:
        intent = (
            self.db.query(PaymentIntent)
            .filter_by(payment_intent_id=payment_intent_id, user_id=str(user_id))
            .first()
        )
        if intent is None:
            raise NotFoundError("Payment intent not found")
        return intent

    def list(self, user_id, status=None, customer=None, page=1, limit=10):
        query = self.db.query(PaymentIntent).filter_by(user_id=str(user_id))
        if status:
            query = query.filter(PaymentIntent.status == status)
        if customer:
            query = query.filter(PaymentIntent.customer == customer)
        total = query.count()
        intents = (
            query.order_by(PaymentIntent.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return intents, total

    def update(self, user_id, payment_intent_id, amount=None, currency=None, description=None,
               metadata=None, receipt_email=None, payment_method_types=None) -> PaymentIntent:
        intent = self.retrieve(user_id, payment_intent_id)
        self._require(intent, MODIFIABLE_STATES, "updated")

        values = {}
        if amount is not None:
            values["amount"] = _positive_amount(amount)
        if currency:
            values["currency"] = _currency(currency)
        if description:
            values["description"] = description
        if metadata is not None:
            values["meta"] = metadata
        if receipt_email:
            values["receipt_email"] = receipt_email.lower()
        if payment_method_types:
            values["payment_method_types"] = payment_method_types
        if not values:
            return intent

        return self._transition(intent, MODIFIABLE_STATES, "updated", **values)

    def confirm(self, user_id, payment_intent_id, payment_method, background_tasks=None) -> PaymentIntent:
        if not payment_method:
            raise ValidationError("Payment method is required")
        intent = self.retrieve(user_id, payment_intent_id)
        self._require(intent, CONFIRMABLE_STATES, "confirmed")

        intent = self._transition(intent, CONFIRMABLE_STATES, "confirmed",
                                  status="processing", payment_method=payment_method)
        try:
            result = self.gateway.charge(intent)
        except GatewayUnavailableError:
            # outcome unknown: let the client confirm again rather than failing the intent
            self._transition(intent, ("processing",), "reset", status="requires_confirmation")
            raise

        now = utcnow().isoformat()
        if result.succeeded:
            intent = self._transition(intent, ("processing",), "completed", status="succeeded", payment_result={
                "id": result.reference,
                "status": "succeeded",
                "update_time": now,
                "email_address": intent.receipt_email,
            })
            self._record(intent, result.reference, "success", None, background_tasks)
        elif result.pending:
            # money may still move (3DS, async methods); the provider webhook settles it
            intent = self._transition(intent, ("processing",), "confirmed", payment_result={
                "id": result.reference,
                "status": result.status,
                "update_time": now,
            })
            self._record(intent, result.reference, "pending", None, background_tasks)
        else:
            intent = self._transition(intent, ("processing",), "completed", status="failed", payment_result={
                "id": result.reference,
                "status": "failed",
                "update_time": now,
                "error": result.error or "Payment processing failed",
            })
            self._record(intent, result.reference, "failed", result.error, background_tasks)
        return intent

    def cancel(self, user_id, payment_intent_id) -> PaymentIntent:
        intent = self.retrieve(user_id, payment_intent_id)
        if intent.status in NON_CANCELABLE_STATES:
            raise InvalidStateError(f"Payment intent cannot be canceled in status: {intent.status}")
        cancelable = tuple(s for s in INTENT_STATES if s not in NON_CANCELABLE_STATES)
        return self._transition(intent, cancelable, "canceled", status="canceled", canceled_at=utcnow())

    def _require(self, intent, states, action):
        if intent.status not in states:
            raise InvalidStateError(f"Payment intent cannot be {action} in status: {intent.status}")

    def _transition(self, intent, from_states, action, **values) -> PaymentIntent:
        try:
            result = self.db.execute(
                update(PaymentIntent)
                .where(PaymentIntent.payment_intent_id == intent.payment_intent_id)
                .where(PaymentIntent.status.in_(from_states))
                .values({getattr(PaymentIntent, key): value for key, value in values.items()})
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise DownstreamFailure("Payment intent storage unavailable") from exc

        self.db.refresh(intent)
        if result.rowcount == 0:
            raise InvalidStateError(f"Payment intent cannot be {action} in status: {intent.status}")
        return intent

    def _record(self, intent, reference, status, failure_reason, background_tasks):
        raw_metadata = dict(intent.meta or {})
        metadata = extract_metadata(raw_metadata)
        metadata["payment_intent_id"] = intent.payment_intent_id
        event = PaymentEvent(
            provider=self.gateway.provider,
            provider_reference=reference or intent.payment_intent_id,
            amount_minor=to_minor_unit(intent.amount, intent.currency),
            currency=intent.currency,
            channel=(intent.payment_method_types or ["card"])[0],
            customer=Customer(
                email=intent.receipt_email,
                name=intent.customer or intent.receipt_email or "Anonymous",
            ),
            metadata=metadata,
            payment_type=payment_type_for(metadata),
            raw_payload={"payment_intent_id": intent.payment_intent_id, "payment_result": intent.payment_result},
        )
        try:
            self.reconciler.reconcile(event, status, failure_reason, background_tasks)
        except DownstreamFailure:
            # the provider webhook for this charge records the same row later
            logger.error("Ledger write for intent %s deferred to webhook delivery",
                         intent.payment_intent_id)


def settle_processing_intent(db, payment_intent_id, reference) -> bool:
    """Mark a ``processing`` intent succeeded once its provider charge settles.

    Returns False when the intent is unknown or no longer processing.
    """
    try:
        result = db.execute(
            update(PaymentIntent)
            .where(PaymentIntent.payment_intent_id == payment_intent_id)
            .where(PaymentIntent.status == "processing")
            .values(status="succeeded", payment_result={
                "id": reference,
                "status": "succeeded",
                "update_time": utcnow().isoformat(),
            })
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise DownstreamFailure("Payment intent storage unavailable") from exc
    if result.rowcount:
        logger.info("Payment intent %s settled by %s", payment_intent_id, reference)
    return bool(result.rowcount)
