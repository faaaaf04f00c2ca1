"""API schemas for after-payment endpoints.

`PaymentRecord` serializes with the store's wire names (`order_id`,
`paymentType`, `customer.tripName`, ...) so existing clients keep working.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_serializer

from tripreceipts.services.after_payment.models import Payment


class PaymentType(str, Enum):
    """Payment method tags written by the capture flow."""

    CARD = "card"
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"


class Customer(BaseModel):
    """Customer details embedded in a payment record."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    first_name: str
    last_name: str
    email: EmailStr
    phone: str
    trip_name: str = Field(alias="tripName")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class PaymentRecord(BaseModel):
    """Immutable view of one completed payment."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    order_id: str = Field(min_length=1)
    # Tags unknown to this service are kept verbatim.
    payment_type: PaymentType | str = Field(alias="paymentType", union_mode="left_to_right")
    currency: str = Field(min_length=3, max_length=3)
    amount: Decimal = Field(ge=0)
    customer: Customer
    created_at: datetime

    @field_serializer("amount")
    def _amount_as_number(self, amount: Decimal) -> float:
        return float(amount)

    @property
    def payment_type_label(self) -> str:
        if isinstance(self.payment_type, PaymentType):
            return self.payment_type.value
        return self.payment_type

    @classmethod
    def from_row(cls, row: Payment) -> "PaymentRecord":
        return cls(
            order_id=row.order_id,
            payment_type=row.payment_type,
            currency=row.currency,
            amount=row.amount,
            customer=Customer(
                first_name=row.customer_first_name,
                last_name=row.customer_last_name,
                email=row.customer_email,
                phone=row.customer_phone,
                trip_name=row.trip_name,
            ),
            created_at=row.created_at,
        )


class EmailReceiptResponse(BaseModel):
    """Confirmation returned once the relay accepted the receipt email."""

    success: bool
    message: str


class CsrfTokenResponse(BaseModel):
    """Anti-forgery token for the current session."""

    csrfToken: str


class LogoutResponse(BaseModel):
    success: bool
    message: str
