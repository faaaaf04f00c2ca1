"""Read-only access to the payment record store."""

import asyncio

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from tripreceipts.common.errors import StoreError
from tripreceipts.common.logging import logger
from tripreceipts.services.after_payment.models import Payment
from tripreceipts.services.after_payment.schemas import PaymentRecord


class PaymentRecordStore:
    """Looks up payment records by order id.

    Queries run in a worker thread so the event loop never blocks on the
    database driver.
    """

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def _load(self, order_id: str) -> PaymentRecord | None:
        with self.session_factory() as db:
            row = db.get(Payment, order_id)
            if row is None:
                return None
            return PaymentRecord.from_row(row)

    async def find_by_order_id(self, order_id: str) -> PaymentRecord | None:
        """Return the record for `order_id`, or None when absent."""

        try:
            return await asyncio.to_thread(self._load, order_id)
        except (SQLAlchemyError, ValidationError) as exc:
            logger.error("payment_store_error order_id=%s error=%s", order_id, exc)
            raise StoreError(str(exc), order_id=order_id) from exc
