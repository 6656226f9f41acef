from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from conftest import TestingSessionLocal
from paybord.errors import DownstreamFailure, InvalidStateError
from paybord.events import Customer, PaymentEvent
from paybord.ledger import LedgerWriter
from paybord.models import Transaction


def make_event(reference="ref_1", provider="paystack", amount=15000, currency="GHS", **metadata):
    return PaymentEvent(
        provider=provider,
        provider_reference=reference,
        amount_minor=amount,
        currency=currency,
        channel="card",
        customer=Customer(email="ama@example.com", name="Ama"),
        metadata=metadata,
        payment_type="other",
        raw_payload={"reference": reference},
    )


def test_record_creates_transaction(db):
    result = LedgerWriter(db).record(make_event(), "biz_1", Decimal("150.00"))

    assert result.created
    txn = result.transaction
    assert txn.transaction_id.startswith("txn_")
    assert txn.amount == Decimal("150.00")
    assert txn.status == "success"
    assert txn.business_id == "biz_1"
    assert txn.processed_at is not None


def test_duplicate_delivery_returns_existing_row(db):
    ledger = LedgerWriter(db)
    first = ledger.record(make_event(), "biz_1", Decimal("150.00"))
    second = ledger.record(make_event(), "biz_1", Decimal("150.00"))

    assert not second.created
    assert second.transaction.transaction_id == first.transaction.transaction_id
    assert db.query(Transaction).filter_by(provider_reference="ref_1").count() == 1


def test_duplicate_from_another_worker_is_idempotent_success():
    # Two sessions stand in for two processes handling the same delivery.
    worker_a, worker_b = TestingSessionLocal(), TestingSessionLocal()
    try:
        won = LedgerWriter(worker_a).record(make_event(), None, Decimal("150.00"))
        lost = LedgerWriter(worker_b).record(make_event(), None, Decimal("150.00"))
    finally:
        worker_a.close()
        worker_b.close()

    assert won.created and not lost.created
    assert lost.transaction.transaction_id == won.transaction.transaction_id


def test_same_reference_from_different_providers_are_distinct(db):
    ledger = LedgerWriter(db)
    ledger.record(make_event(provider="paystack"), None, Decimal("1"))
    result = ledger.record(make_event(provider="other"), None, Decimal("1"))
    assert result.created


def test_unattributed_payment_is_flagged(db):
    txn = LedgerWriter(db).record(make_event(), None, Decimal("150.00")).transaction
    assert txn.business_id is None
    assert txn.meta["attribution_gap"] is True


def test_storage_failure_is_downstream_failure(db, mocker):
    mocker.patch.object(db, "commit", side_effect=OperationalError("INSERT", {}, Exception("db down")))
    with pytest.raises(DownstreamFailure):
        LedgerWriter(db).record(make_event(), "biz_1", Decimal("150.00"))


def test_pending_row_is_completed_by_later_delivery(db):
    ledger = LedgerWriter(db)
    pending = ledger.record(make_event(), "biz_1", Decimal("150.00"), status="pending").transaction
    assert pending.processed_at is None

    result = ledger.record(make_event(), "biz_1", Decimal("150.00"))
    assert not result.created
    assert result.transaction.status == "success"
    assert result.completed

    again = ledger.record(make_event(), "biz_1", Decimal("150.00"))
    assert not again.completed


def test_success_never_reverts_to_pending(db):
    ledger = LedgerWriter(db)
    ledger.record(make_event(), "biz_1", Decimal("150.00"))
    result = ledger.record(make_event(), "biz_1", Decimal("150.00"), status="pending")
    assert result.transaction.status == "success"


def test_refund_is_one_way(db):
    ledger = LedgerWriter(db)
    txn = ledger.record(make_event(), "biz_1", Decimal("150.00")).transaction

    assert ledger.mark_refunded(txn.transaction_id).status == "refunded"
    with pytest.raises(InvalidStateError):
        ledger.mark_refunded(txn.transaction_id)


def test_failed_transaction_cannot_be_refunded(db):
    ledger = LedgerWriter(db)
    txn = ledger.record(make_event(), None, Decimal("150.00"), status="failed", failure_reason="declined").transaction
    assert txn.failure_reason == "declined"
    with pytest.raises(InvalidStateError):
        ledger.mark_refunded(txn.transaction_id)


def test_refund_claim_is_exclusive_until_released(db):
    ledger = LedgerWriter(db)
    txn = ledger.record(make_event(), "biz_1", Decimal("150.00")).transaction

    assert ledger.claim_refund(txn).refund_requested_at is not None
    with pytest.raises(InvalidStateError, match="already in progress"):
        ledger.claim_refund(txn)

    ledger.release_refund(txn)
    db.refresh(txn)
    assert txn.refund_requested_at is None
    ledger.claim_refund(txn)
    assert ledger.mark_refunded(txn.transaction_id).status == "refunded"


def test_refund_claim_from_another_worker_is_refused(db):
    txn = LedgerWriter(db).record(make_event(), "biz_1", Decimal("150.00")).transaction
    other = TestingSessionLocal()
    try:
        LedgerWriter(other).claim_refund(other.get(Transaction, txn.transaction_id))
    finally:
        other.close()

    with pytest.raises(InvalidStateError):
        LedgerWriter(db).claim_refund(txn)


def test_pending_transaction_cannot_be_claimed_for_refund(db):
    ledger = LedgerWriter(db)
    txn = ledger.record(make_event(), "biz_1", Decimal("150.00"), status="pending").transaction
    with pytest.raises(InvalidStateError, match="status: pending"):
        ledger.claim_refund(txn)
