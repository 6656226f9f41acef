import uuid
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from paybord.errors import DownstreamFailure, InvalidStateError, NotFoundError
from paybord.events import PaymentEvent
from paybord.logging_utils import get_logger
from paybord.models import Transaction, utcnow

logger = get_logger(__name__)

TRANSACTION_STATUSES = ("pending", "success", "failed", "refunded")

# Statuses a row may move to from each status. Nothing ever returns to pending.
ALLOWED_TRANSITIONS = {
    "pending": {"success", "failed", "refunded"},
    "success": {"refunded"},
    "failed": set(),
    "refunded": set(),
}


def new_transaction_id() -> str:
    return f"txn_{uuid.uuid4().hex}"


@dataclass
class LedgerResult:
    transaction: Transaction
    created: bool
    # an earlier pending row for the same payment was settled by this delivery
    completed: bool = False


class LedgerWriter:
    """Writes exactly one ``Transaction`` per ``(provider, provider_reference)``.

    Uniqueness is enforced by the database constraint, not by a read before
    the write: concurrent deliveries of the same event may run in different
    processes. Losing the insert race counts as success and yields the row
    that won.
    """

    def __init__(self, db: Session):
        self.db = db

    def record(self, event: PaymentEvent, business_id, amount_major: Decimal,
               status="success", failure_reason=None) -> LedgerResult:
        if status not in TRANSACTION_STATUSES:
            raise ValueError(f"Unknown transaction status: {status}")

        metadata = dict(event.metadata)
        if business_id is None:
            metadata["attribution_gap"] = True

        transaction = Transaction(
            transaction_id=new_transaction_id(),
            provider_reference=event.provider_reference,
            provider=event.provider,
            amount=amount_major,
            currency=event.currency,
            status=status,
            business_id=business_id,
            storefront_id=event.storefront_id,
            payment_link_id=event.payment_link_id,
            payment_type=event.payment_type,
            payment_method=event.payment_method,
            customer_name=event.customer.name,
            customer_email=event.customer.email,
            customer_phone=event.customer.phone,
            meta=metadata,
            provider_data=event.raw_payload,
            processed_at=utcnow() if status != "pending" else None,
            failure_reason=failure_reason,
        )

        try:
            self.db.add(transaction)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.find(event.provider, event.provider_reference)
            if existing is None:
                logger.error("Insert of %s failed but no existing row matches %s/%s",
                             transaction.transaction_id, event.provider, event.provider_reference)
                raise DownstreamFailure("Could not record transaction")
            logger.info("Duplicate %s payment %s already recorded as %s",
                        event.provider, event.provider_reference, existing.transaction_id)
            if existing.status == "pending" and status != "pending":
                try:
                    self._advance(existing, status, failure_reason)
                except InvalidStateError:
                    logger.info("Transaction %s was finalized concurrently as %s",
                                existing.transaction_id, existing.status)
                else:
                    return LedgerResult(existing, False, completed=True)
            return LedgerResult(existing, False)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Ledger write for %s/%s failed: %s",
                         event.provider, event.provider_reference, exc)
            raise DownstreamFailure("Ledger storage unavailable") from exc

        logger.info("Recorded %s transaction %s for %s/%s (%s %s, business=%s)",
                    status, transaction.transaction_id, event.provider,
                    event.provider_reference, amount_major, event.currency, business_id)
        return LedgerResult(transaction, True)

    def find(self, provider, provider_reference):
        try:
            return (
                self.db.query(Transaction)
                .filter_by(provider=provider, provider_reference=provider_reference)
                .first()
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise DownstreamFailure("Ledger storage unavailable") from exc

    def get(self, transaction_id) -> Transaction:
        transaction = self.db.get(Transaction, transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction not found")
        return transaction

    def list(self, business_ids=None, status=None, page=1, limit=10):
        query = self.db.query(Transaction)
        if business_ids is not None:
            query = query.filter(Transaction.business_id.in_(business_ids))
        if status:
            query = query.filter(Transaction.status == status)
        total = query.count()
        rows = (
            query.order_by(Transaction.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return rows, total

    def claim_refund(self, transaction: Transaction) -> Transaction:
        """Reserve ``transaction`` for one refund before the provider is called.

        Only a ``success`` row without an outstanding claim can be claimed, so
        concurrent refund requests cannot both reach the provider.
        """
        try:
            result = self.db.execute(
                update(Transaction)
                .where(Transaction.transaction_id == transaction.transaction_id)
                .where(Transaction.status == "success")
                .where(Transaction.refund_requested_at.is_(None))
                .values(refund_requested_at=utcnow())
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise DownstreamFailure("Ledger storage unavailable") from exc

        self.db.refresh(transaction)
        if result.rowcount == 0:
            if transaction.status == "success":
                raise InvalidStateError("A refund for this transaction is already in progress")
            raise InvalidStateError(f"Transaction cannot be refunded in status: {transaction.status}")
        return transaction

    def release_refund(self, transaction: Transaction) -> None:
        try:
            self.db.execute(
                update(Transaction)
                .where(Transaction.transaction_id == transaction.transaction_id)
                .where(Transaction.status == "success")
                .values(refund_requested_at=None)
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise DownstreamFailure("Ledger storage unavailable") from exc

    def mark_refunded(self, transaction_id) -> Transaction:
        transaction = self.get(transaction_id)
        return self._advance(transaction, "refunded")

    def _advance(self, transaction: Transaction, status, failure_reason=None) -> Transaction:
        current = transaction.status
        if status not in ALLOWED_TRANSITIONS.get(current, set()):
            raise InvalidStateError(f"Transaction cannot move from {current} to {status}")

        # compare-and-set so a concurrent writer cannot be overwritten
        values = {"status": status, "processed_at": utcnow()}
        if failure_reason:
            values["failure_reason"] = failure_reason
        try:
            result = self.db.execute(
                update(Transaction)
                .where(Transaction.transaction_id == transaction.transaction_id)
                .where(Transaction.status == current)
                .values(**values)
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise DownstreamFailure("Ledger storage unavailable") from exc

        self.db.refresh(transaction)
        if result.rowcount == 0:
            raise InvalidStateError(
                f"Transaction cannot move from {transaction.status} to {status}"
            )
        return transaction
