"""
Payment ledger: persisted payment attempts per booking.

A booking counts as paid when *any* of its DEPOSIT payments is PAID, not just
the latest one; retries may fail after an earlier attempt succeeded.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import and_, exists, select

from models.booking import Booking, BookingStatus
from models.payment import Payment, PaymentStatus, PaymentType
from utils.clock import utcnow


def paid_deposit_exists(booking_id_column=Booking.id):
    """Correlated EXISTS clause, usable inside conditional UPDATEs."""
    return exists().where(
        and_(
            Payment.booking_id == booking_id_column,
            Payment.type == PaymentType.DEPOSIT,
            Payment.status == PaymentStatus.PAID,
        )
    )


@dataclass(frozen=True)
class ProviderPayment:
    """Gateway-side view of one payment attempt."""

    provider_payment_id: str
    status: str
    booking_id: Optional[int] = None
    method: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    paid_at: Optional[object] = None
    checkout_url: Optional[str] = None
    provider_charge_id: Optional[str] = None


class PaymentLedger:
    def __init__(self, session):
        self.session = session

    def is_booking_paid(self, booking_id: int) -> bool:
        return bool(self.session.execute(select(paid_deposit_exists(booking_id))).scalar())

    def latest_payment(self, booking_id: int, payment_type: str = PaymentType.DEPOSIT) -> Optional[Payment]:
        return self.session.execute(
            select(Payment)
            .where(Payment.booking_id == booking_id, Payment.type == payment_type)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def history(self, booking_id: int) -> list[Payment]:
        return list(
            self.session.execute(
                select(Payment)
                .where(Payment.booking_id == booking_id)
                .order_by(Payment.created_at.desc(), Payment.id.desc())
            ).scalars()
        )

    def by_provider_id(self, provider_payment_id: str) -> Optional[Payment]:
        return self.session.execute(
            select(Payment).where(Payment.provider_payment_id == provider_payment_id)
        ).scalar_one_or_none()

    def record_attempt(self, booking: Booking, provider_payment_id: str, amount_cents: int,
                       currency: str, provider: str = "STRIPE") -> Payment:
        payment = Payment(
            booking_id=booking.id,
            type=PaymentType.DEPOSIT,
            provider=provider,
            provider_payment_id=provider_payment_id,
            status=PaymentStatus.CREATED,
            amount_cents=amount_cents,
            currency=currency,
        )
        self.session.add(payment)
        self.session.flush()
        return payment

    def upsert_from_provider(self, update: ProviderPayment, booking_id: int) -> Payment:
        """
        Idempotent per provider_payment_id. A PAID or REFUNDED row is never
        downgraded by a late or replayed event.
        """
        payment = self.by_provider_id(update.provider_payment_id)
        if payment is None:
            payment = Payment(
                booking_id=booking_id,
                type=PaymentType.DEPOSIT,
                provider_payment_id=update.provider_payment_id,
                status=PaymentStatus.CREATED,
                amount_cents=update.amount_cents or 0,
                currency=update.currency or "EUR",
            )
            self.session.add(payment)

        if payment.status == PaymentStatus.REFUNDED:
            return payment
        if payment.status == PaymentStatus.PAID and update.status != PaymentStatus.REFUNDED:
            return payment

        payment.status = update.status
        if update.method:
            payment.method = update.method
        if update.amount_cents is not None:
            payment.amount_cents = update.amount_cents
        if update.currency:
            payment.currency = update.currency
        if update.status == PaymentStatus.PAID:
            payment.paid_at = update.paid_at or utcnow()
        payment.updated_at = utcnow()
        self.session.flush()
        return payment

    def mark_refunded(self, payment: Payment, provider_refund_id: Optional[str]) -> Payment:
        payment.status = PaymentStatus.REFUNDED
        payment.refunded_at = utcnow()
        payment.provider_refund_id = provider_refund_id
        self.session.flush()
        return payment


def status_projection(booking: Booking, ledger: PaymentLedger) -> dict:
    """What the status-polling client needs to decide when to stop polling."""
    latest = ledger.latest_payment(booking.id)
    return {
        "ok": True,
        "bookingId": booking.id,
        "bookingStatus": booking.status,
        "confirmed": booking.status == BookingStatus.CONFIRMED,
        "paid": ledger.is_booking_paid(booking.id),
        "paymentStatus": latest.status if latest else None,
        "payment": {
            "providerPaymentId": latest.provider_payment_id,
            "status": latest.status,
            "method": latest.method,
            "paidAt": latest.paid_at.isoformat() if latest.paid_at else None,
        } if latest else None,
        "summary": {
            "partnerName": booking.partner.name if booking.partner else None,
            "startTime": booking.slot.start_time.isoformat() if booking.slot else None,
            "depositPaidAt": booking.deposit_paid_at.isoformat() if booking.deposit_paid_at else None,
        },
    }
