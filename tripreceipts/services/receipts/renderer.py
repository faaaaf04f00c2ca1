"""Single-page receipt PDF, streamed as it is generated."""

from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable

from tripreceipts.common.errors import RenderError
from tripreceipts.common.logging import logger
from tripreceipts.services.after_payment.schemas import PaymentRecord
from tripreceipts.services.receipts.content import RECEIPT_TITLE, receipt_fields
from tripreceipts.services.receipts.pdf import PdfWriter, pdf_string

Sink = Callable[[bytes], Awaitable[None]]

PAGE_WIDTH = 612
PAGE_HEIGHT = 792
MARGIN = 72
TITLE_SIZE = 20
BODY_SIZE = 12
LINE_GAP = 18
# Helvetica-Bold averages roughly 0.55 em per glyph; good enough for centering.
TITLE_EM = 0.55

CATALOG, PAGES, PAGE, FONT_REGULAR, FONT_BOLD, CONTENTS, CONTENTS_LENGTH, INFO = range(1, 9)


class ReceiptRenderer:
    """Renders one receipt. Create a new instance per request."""

    def __init__(self, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)) -> None:
        self._clock = clock

    def _content_lines(self, record: PaymentRecord):
        title_width = len(RECEIPT_TITLE) * TITLE_SIZE * TITLE_EM
        title_x = max(MARGIN, (PAGE_WIDTH - title_width) / 2)
        y = PAGE_HEIGHT - MARGIN
        yield b"BT /F2 %d Tf %.2f %d Td " % (TITLE_SIZE, title_x, y) + pdf_string(RECEIPT_TITLE) + b" Tj ET\n"
        y -= TITLE_SIZE + LINE_GAP
        for label, value in receipt_fields(record):
            text = pdf_string(f"{label}: {value}")
            yield b"BT /F1 %d Tf %d %d Td " % (BODY_SIZE, MARGIN, y) + text + b" Tj ET\n"
            y -= LINE_GAP

    async def iter_chunks(self, record: PaymentRecord) -> AsyncIterator[bytes]:
        """Yield the document piece by piece; nothing is held back."""

        writer = PdfWriter()
        yield writer.header()
        yield writer.obj(CATALOG, b"<< /Type /Catalog /Pages %d 0 R >>" % PAGES)
        yield writer.obj(PAGES, b"<< /Type /Pages /Kids [%d 0 R] /Count 1 >>" % PAGE)
        yield writer.obj(
            PAGE,
            b"<< /Type /Page /Parent %d 0 R /MediaBox [0 0 %d %d] "
            b"/Resources << /Font << /F1 %d 0 R /F2 %d 0 R >> >> /Contents %d 0 R >>"
            % (PAGES, PAGE_WIDTH, PAGE_HEIGHT, FONT_REGULAR, FONT_BOLD, CONTENTS),
        )
        yield writer.obj(
            FONT_REGULAR, b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica /Encoding /WinAnsiEncoding >>"
        )
        yield writer.obj(
            FONT_BOLD, b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica-Bold /Encoding /WinAnsiEncoding >>"
        )
        yield writer.begin_stream(CONTENTS, length_ref=CONTENTS_LENGTH)
        for line in self._content_lines(record):
            yield writer.stream_data(line)
        closing, length = writer.end_stream()
        yield closing
        yield writer.obj(CONTENTS_LENGTH, b"%d" % length)
        created = self._clock().strftime("D:%Y%m%d%H%M%SZ")
        yield writer.obj(
            INFO,
            b"<< /Title "
            + pdf_string(f"{RECEIPT_TITLE} {record.order_id}")
            + b" /Producer (tripreceipts) /CreationDate "
            + pdf_string(created)
            + b" >>",
        )
        yield writer.trailer(root=CATALOG, info=INFO)

    async def render(self, record: PaymentRecord, sink: Sink) -> int:
        """Write the receipt to `sink`; returns the number of bytes written.

        A failing sink aborts the render right away with `RenderError`.
        """

        written = 0
        chunks = self.iter_chunks(record)
        try:
            async for chunk in chunks:
                try:
                    await sink(chunk)
                except Exception as exc:
                    logger.warning("receipt_sink_failed order_id=%s written=%s error=%s", record.order_id, written, exc)
                    raise RenderError(f"sink closed after {written} bytes: {exc}", order_id=record.order_id) from exc
                written += len(chunk)
        finally:
            await chunks.aclose()
        return written
