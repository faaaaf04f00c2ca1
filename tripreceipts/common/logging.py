"""Structured JSON logging with request and order context.

Every record carries `service_name`, `trace_id` and `order_id`. Receipt
logs routinely mention customer addresses and relay credentials, so a
redaction filter masks e-mail local parts and bearer tokens before a record
is formatted.
"""

import logging
import re
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from tripreceipts.common.config import settings
from tripreceipts.common.tracing import current_trace_id


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
order_id_ctx: ContextVar[str] = ContextVar("order_id", default="")

_EMAIL = re.compile(r"\b([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+\.[A-Za-z]{2,})\b")
_BEARER = re.compile(r"(Bearer\s+|access_token=)[^\s\x01&,;]+", re.IGNORECASE)


def redact(text: str) -> str:
    """Mask e-mail local parts (`a***@b.com`) and bearer token values."""

    text = _EMAIL.sub(r"\1***@\2", text)
    return _BEARER.sub(r"\1<redacted>", text)


class ContextFilter(logging.Filter):
    """Inject service, trace and order identifiers into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        # Prefer the caller's correlation id; fall back to the active span.
        record.trace_id = trace_id_ctx.get() or current_trace_id()
        record.order_id = order_id_ctx.get()
        return True


class RedactingFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact(record.getMessage())
        record.args = None
        return True


@contextmanager
def bind_order(order_id: str):
    """Tag log records emitted inside the block with `order_id`."""

    token = order_id_ctx.set(order_id)
    try:
        yield
    finally:
        order_id_ctx.reset(token)


def configure_logging() -> None:
    """Configure root logger once per service process."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.addFilter(RedactingFilter())
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(order_id)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)


logger = logging.getLogger("tripreceipts")
