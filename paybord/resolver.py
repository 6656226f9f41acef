from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from paybord.logging_utils import get_logger
from paybord.models import PaymentLink, Storefront

logger = get_logger(__name__)


class ContextResolver:
    """Finds the business that owns a payment from whatever metadata arrived.

    Order: explicit business id, then the payment link's business, then the
    storefront's business. An unresolvable payment is still recorded; the
    caller stores it unattributed.
    """

    def __init__(self, db: Session):
        self.db = db

    def resolve(self, metadata: dict) -> Optional[str]:
        metadata = metadata or {}

        business_id = metadata.get("business_id")
        if business_id:
            return str(business_id)

        link_id = metadata.get("payment_link_id")
        if link_id:
            business_id = self._lookup(PaymentLink, PaymentLink.link_id, link_id)
            if business_id:
                logger.info("Resolved business %s from payment link %s", business_id, link_id)
                return business_id
            logger.warning("No business found for payment link %s", link_id)

        storefront_id = metadata.get("storefront_id")
        if storefront_id:
            business_id = self._lookup(Storefront, Storefront.id, storefront_id)
            if business_id:
                logger.info("Resolved business %s from storefront %s", business_id, storefront_id)
                return business_id
            logger.warning("No business found for storefront %s", storefront_id)

        return None

    def _lookup(self, model, key_column, key) -> Optional[str]:
        try:
            row = self.db.query(model).filter(key_column == str(key)).first()
        except SQLAlchemyError:
            logger.exception("Lookup of %s %s failed", model.__tablename__, key)
            self.db.rollback()
            return None
        if row is None or not row.business_id:
            return None
        return str(row.business_id)
