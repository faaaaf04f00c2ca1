"""Receipt field layout shared by the email body and the PDF document."""

from datetime import datetime
from decimal import Decimal

from tripreceipts.services.after_payment.schemas import PaymentRecord

RECEIPT_TITLE = "Payment Receipt"


def format_receipt_date(value: datetime) -> str:
    """US-style short date (e.g. 8/18/2025), matching the booking site."""

    return f"{value.month}/{value.day}/{value.year}"


def format_amount(currency: str, amount: Decimal) -> str:
    return f"{currency.upper()} {amount:,.2f}"


def receipt_fields(record: PaymentRecord) -> list[tuple[str, str]]:
    """Ordered (label, value) pairs printed on every receipt."""

    customer = record.customer
    return [
        ("Order ID", record.order_id),
        ("Payment Type", record.payment_type_label),
        ("Trip Name", customer.trip_name),
        ("Amount", format_amount(record.currency, record.amount)),
        ("Name", customer.full_name),
        ("Email", str(customer.email)),
        ("Phone", customer.phone),
        ("Date", format_receipt_date(record.created_at)),
    ]
