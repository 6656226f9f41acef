from paybord.currency import to_major_unit
from paybord.ledger import LedgerResult, LedgerWriter
from paybord.logging_utils import get_logger
from paybord.resolver import ContextResolver
from paybord.schemas import transaction_to_dict

logger = get_logger(__name__)


class PaymentReconciler:
    """Resolve attribution, convert the amount and write the ledger row.

    The webhook, the verification callback and intent confirmation all go
    through ``reconcile`` so a payment is recorded the same way whichever
    path reports it first.
    """

    def __init__(self, db, notifier=None):
        self.resolver = ContextResolver(db)
        self.ledger = LedgerWriter(db)
        self.notifier = notifier

    def reconcile(self, event, status="success", failure_reason=None,
                  background_tasks=None) -> LedgerResult:
        business_id = self.resolver.resolve(event.metadata)
        if business_id is None:
            logger.warning("Attribution gap: %s payment %s recorded without a business",
                           event.provider, event.provider_reference)

        amount = to_major_unit(event.amount_minor, event.currency)
        result = self.ledger.record(event, business_id, amount, status, failure_reason)

        if result.created or result.completed:
            self._notify(result.transaction, background_tasks)
        return result

    def _notify(self, transaction, background_tasks):
        if self.notifier is None:
            return
        # serialize now; the session is closed by the time background tasks run
        payload = transaction_to_dict(transaction)
        if background_tasks is not None:
            background_tasks.add_task(self.notifier.publish, payload)
        else:
            self.notifier.publish(payload)
