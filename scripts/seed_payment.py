"""Insert one demo payment record for local runs of the after-payment service."""

import argparse
from datetime import datetime, timezone
from decimal import Decimal

from tripreceipts.common.db import Base, SessionLocal, engine
from tripreceipts.services.after_payment.models import Payment


def main() -> None:
    """CLI entrypoint: upsert a payment row into the configured store."""

    parser = argparse.ArgumentParser(description="Seed a payment record into the payment store.")
    parser.add_argument("--order-id", default="ORDER_1")
    parser.add_argument("--payment-type", default="card")
    parser.add_argument("--currency", default="USD")
    parser.add_argument("--amount", type=Decimal, default=Decimal("150.00"))
    parser.add_argument("--first-name", default="A")
    parser.add_argument("--last-name", default="B")
    parser.add_argument("--email", default="a@b.com")
    parser.add_argument("--phone", default="555")
    parser.add_argument("--trip-name", default="Kandy Tour")
    parser.add_argument(
        "--create-table",
        action="store_true",
        help="Create the payments table first (local SQLite only; production owns its schema).",
    )
    args = parser.parse_args()

    if args.create_table:
        Base.metadata.create_all(engine)

    with SessionLocal() as db:
        db.merge(
            Payment(
                order_id=args.order_id,
                payment_type=args.payment_type,
                currency=args.currency.upper(),
                amount=args.amount,
                customer_first_name=args.first_name,
                customer_last_name=args.last_name,
                customer_email=args.email,
                customer_phone=args.phone,
                trip_name=args.trip_name,
                created_at=datetime.now(timezone.utc),
            )
        )
        db.commit()
    print(f"seeded payment {args.order_id}")


if __name__ == "__main__":
    main()
