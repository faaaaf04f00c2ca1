"""Payment store mapping.

The `payments` table is written by the payment-capture flow; this service
only ever reads it.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from tripreceipts.common.db import Base


class Payment(Base):
    """Completed payment captured for one order."""

    __tablename__ = "payments"

    order_id: Mapped[str] = mapped_column(String, primary_key=True)
    payment_type: Mapped[str] = mapped_column(String)
    currency: Mapped[str] = mapped_column(String(3))
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    customer_first_name: Mapped[str] = mapped_column(String)
    customer_last_name: Mapped[str] = mapped_column(String)
    customer_email: Mapped[str] = mapped_column(String, index=True)
    customer_phone: Mapped[str] = mapped_column(String)
    trip_name: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
