"""After-payment fulfillment.

Looks up the payment record, sends the receipt email (one in flight per
order), and streams the receipt PDF. Every failure leaves here as a
`FulfillmentError` subclass so the HTTP layer can translate it directly.
"""

import asyncio
from dataclasses import dataclass
from typing import AsyncGenerator, AsyncIterator, Callable

from tripreceipts.common.errors import DispatchError, DispatchInProgressError, NotFoundError, RenderError
from tripreceipts.common.logging import logger
from tripreceipts.common.metrics import receipt_downloads_total, receipt_emails_total
from tripreceipts.common.tracing import traced
from tripreceipts.services.after_payment.inflight import InFlightRegistry
from tripreceipts.services.after_payment.schemas import PaymentRecord
from tripreceipts.services.after_payment.store import PaymentRecordStore
from tripreceipts.services.mailer.dispatcher import MailDispatcher
from tripreceipts.services.receipts.renderer import ReceiptRenderer


@dataclass
class ReceiptDownload:
    """Attachment metadata plus the lazily produced document body."""

    filename: str
    body: AsyncIterator[bytes]
    media_type: str = "application/pdf"


class FulfillmentService:
    """Orchestrates lookup, email dispatch and receipt download."""

    def __init__(
        self,
        store: PaymentRecordStore,
        dispatcher: MailDispatcher,
        renderer_factory: Callable[[], ReceiptRenderer] = ReceiptRenderer,
        inflight: InFlightRegistry | None = None,
        service_name: str = "after-payment",
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.renderer_factory = renderer_factory
        self.inflight = inflight or InFlightRegistry()
        self.service_name = service_name

    async def get_booking(self, order_id: str) -> PaymentRecord:
        record = await self.store.find_by_order_id(order_id)
        if record is None:
            logger.info("payment_not_found order_id=%s", order_id)
            raise NotFoundError(order_id)
        return record

    async def _lookup_and_send(self, order_id: str) -> None:
        record = await self.get_booking(order_id)
        await self.dispatcher.send_receipt(record)

    async def email_receipt(self, order_id: str) -> None:
        """Send the receipt email for `order_id` exactly once for this call.

        The order is claimed before the record lookup, so a concurrent second
        request is rejected instead of racing to a duplicate send. The
        dispatch is shielded: once started it runs to completion even if the
        requesting client goes away.
        """

        try:
            task = self.inflight.start(order_id, lambda: self._lookup_and_send(order_id))
        except DispatchInProgressError:
            receipt_emails_total.labels(service=self.service_name, outcome="rejected_in_flight").inc()
            logger.warning("receipt_email_rejected_in_flight order_id=%s", order_id)
            raise
        try:
            with traced("receipt.email", order_id=order_id):
                await asyncio.shield(task)
        except DispatchError as exc:
            receipt_emails_total.labels(service=self.service_name, outcome="failed").inc()
            logger.error("receipt_email_failed order_id=%s details=%s", order_id, exc.details)
            raise
        receipt_emails_total.labels(service=self.service_name, outcome="sent").inc()

    async def download_receipt(self, order_id: str) -> ReceiptDownload:
        """Prepare a streamed receipt; the first chunk is produced up front.

        Producing the header before the response starts means a renderer that
        cannot even begin fails as a clean 500 instead of a broken download.
        """

        record = await self.get_booking(order_id)
        chunks = self.renderer_factory().iter_chunks(record)
        try:
            with traced("receipt.render.start", order_id=order_id):
                first = await anext(chunks)
        except Exception as exc:
            await chunks.aclose()
            receipt_downloads_total.labels(service=self.service_name, outcome="failed").inc()
            logger.error("receipt_render_failed order_id=%s error=%s", order_id, exc)
            raise RenderError(str(exc), order_id=order_id) from exc
        return ReceiptDownload(filename=f"receipt_{order_id}.pdf", body=self._stream(order_id, first, chunks))

    async def _stream(
        self, order_id: str, first: bytes, chunks: AsyncGenerator[bytes, None]
    ) -> AsyncIterator[bytes]:
        outcome = "aborted"
        try:
            yield first
            async for chunk in chunks:
                yield chunk
            outcome = "completed"
        except Exception as exc:
            outcome = "failed"
            logger.error("receipt_stream_failed order_id=%s error=%s", order_id, exc)
            raise
        finally:
            await chunks.aclose()
            receipt_downloads_total.labels(service=self.service_name, outcome=outcome).inc()
            if outcome == "aborted":
                logger.warning("receipt_download_aborted order_id=%s", order_id)
