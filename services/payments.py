"""
Deposit payments.

Provider updates (webhook or manual refresh) land in ``apply_provider_update``,
which is safe to call any number of times with the same update. The gateway
is never called while a database transaction is open.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import select, update

from models.booking import Booking, BookingStatus
from models.discount_code import DiscountCode
from models.payment import Payment, PaymentStatus
from services.actor import Actor
from services.errors import Conflict, NotFound, PaymentGatewayError
from services.payment_ledger import PaymentLedger, ProviderPayment, status_projection
from services.reconciliation import BookingReconciler
from utils.audit import log_event
from utils.clock import utcnow
from utils.emailer import booking_confirmation_messages, send_messages

logger = logging.getLogger(__name__)


class PaymentAction:
    CONFIRMED = "CONFIRMED"
    ALREADY_CONFIRMED = "ALREADY_CONFIRMED"
    RELEASED = "RELEASED"
    LATE_REFUNDED = "LATE_REFUNDED"
    LATE_REFUND_FAILED = "LATE_REFUND_FAILED"
    LATE_RECORDED = "LATE_RECORDED"
    RECORDED = "RECORDED"


@dataclass(frozen=True)
class PaymentOutcome:
    booking_id: int
    payment_status: str
    booking_status: str
    action: str


class PaymentService:
    def __init__(self, session, gateway, refund_late_payments: bool = True,
                 notify: Optional[Callable] = send_messages):
        self.session = session
        self.gateway = gateway
        self.refund_late_payments = refund_late_payments
        self.notify = notify
        self.ledger = PaymentLedger(session)

    def _booking(self, booking_id: int) -> Booking:
        booking = self.session.get(Booking, booking_id)
        if booking is None:
            raise NotFound("Booking not found", code="BOOKING_NOT_FOUND")
        return booking

    def start_deposit_payment(self, booking_id: int) -> tuple:
        """Returns (payment, checkout_url) for the booking's deposit."""
        booking = self._booking(booking_id)
        if booking.status != BookingStatus.PENDING or self.ledger.is_booking_paid(booking.id):
            raise Conflict("Booking cannot be paid anymore", code="BOOKING_NOT_PAYABLE")
        if booking.deposit_amount_cents <= 0:
            raise Conflict("No deposit is due for this booking", code="NO_DEPOSIT_DUE")

        amount = booking.deposit_amount_cents
        currency = booking.currency
        description = f"Deposit booking #{booking.id} - {booking.partner.name}"
        email = booking.customer.email if booking.customer else None
        # no transaction stays open across the gateway round trip
        self.session.commit()

        checkout = self.gateway.create_checkout(booking_id, amount, currency, description, email)

        booking = self._booking(booking_id)
        payment = self.ledger.record_attempt(booking, checkout.provider_payment_id, amount, currency)
        if checkout.status != PaymentStatus.CREATED:
            payment.status = checkout.status
        self.session.commit()
        log_event("PAYMENT_SESSION_CREATED", entity="payment", entity_id=payment.id,
                  metadata={"booking_id": booking_id, "provider_payment_id": checkout.provider_payment_id})
        return payment, checkout.checkout_url

    def apply_provider_update(self, update_: ProviderPayment) -> PaymentOutcome:
        existing = self.ledger.by_provider_id(update_.provider_payment_id)
        booking_id = existing.booking_id if existing else update_.booking_id
        if booking_id is None:
            raise NotFound("Unknown payment", code="PAYMENT_NOT_FOUND")
        booking = self._booking(booking_id)

        payment = self.ledger.upsert_from_provider(update_, booking.id)

        if payment.status == PaymentStatus.PAID:
            return self._on_paid(booking, payment)

        self.session.commit()
        if payment.status in PaymentStatus.TERMINAL_UNPAID:
            reconciler = BookingReconciler(self.session, Actor.system())
            result = reconciler.release_if_unpaid(booking.id, reason=f"PAYMENT_{payment.status}")
            if result.changed:
                log_event("BOOKING_RELEASED", entity="booking", entity_id=booking.id,
                          metadata={"reason": result.reason, "payment_status": payment.status})
                return PaymentOutcome(booking.id, payment.status, BookingStatus.CANCELLED, PaymentAction.RELEASED)
        self.session.refresh(booking)
        return PaymentOutcome(booking.id, payment.status, booking.status, PaymentAction.RECORDED)

    def _on_paid(self, booking: Booking, payment) -> PaymentOutcome:
        booking_id = booking.id
        discount_code_id = booking.discount_code_id
        paid = (payment.id, payment.provider_payment_id, payment.amount_cents)
        now = utcnow()
        confirmed = self.session.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.status == BookingStatus.PENDING)
            .values(status=BookingStatus.CONFIRMED, confirmed_at=now, deposit_paid_at=payment.paid_at or now)
            .execution_options(synchronize_session=False)
        ).rowcount == 1

        if confirmed:
            if discount_code_id:
                self.session.execute(
                    update(DiscountCode)
                    .where(DiscountCode.id == discount_code_id)
                    .values(redeemed_count=DiscountCode.redeemed_count + 1)
                    .execution_options(synchronize_session=False)
                )
            self.session.commit()
            log_event("BOOKING_CONFIRMED", entity="booking", entity_id=booking_id,
                      metadata={"provider_payment_id": paid[1]})
            messages = booking_confirmation_messages(self._booking(booking_id))
            # mail goes out with no transaction open
            self.session.commit()
            self._send_confirmation(booking_id, messages)
            return PaymentOutcome(booking_id, PaymentStatus.PAID, BookingStatus.CONFIRMED, PaymentAction.CONFIRMED)

        self.session.commit()
        status = self.session.execute(select(Booking.status).where(Booking.id == booking_id)).scalar_one()
        self.session.commit()
        if status == BookingStatus.CANCELLED:
            return self._on_late_payment(booking_id, *paid)
        return PaymentOutcome(booking_id, PaymentStatus.PAID, status, PaymentAction.ALREADY_CONFIRMED)

    def _on_late_payment(self, booking_id: int, payment_id: int, provider_payment_id: str,
                         amount_cents: int) -> PaymentOutcome:
        """Money arrived after the hold was released: the booking stays cancelled."""
        meta = {"booking_id": booking_id, "provider_payment_id": provider_payment_id}
        if not self.refund_late_payments:
            log_event("PAYMENT_LATE_RECORDED", entity="payment", entity_id=payment_id, metadata=meta)
            return PaymentOutcome(booking_id, PaymentStatus.PAID, BookingStatus.CANCELLED,
                                  PaymentAction.LATE_RECORDED)

        try:
            refund_id = self.gateway.refund(provider_payment_id, amount_cents)
        except PaymentGatewayError as exc:
            logger.error("Refund of late payment %s failed: %s", provider_payment_id, exc.message)
            log_event("PAYMENT_LATE_REFUND_FAILED", entity="payment", entity_id=payment_id,
                      metadata={**meta, "error": exc.code})
            return PaymentOutcome(booking_id, PaymentStatus.PAID, BookingStatus.CANCELLED,
                                  PaymentAction.LATE_REFUND_FAILED)

        self.ledger.mark_refunded(self.session.get(Payment, payment_id), refund_id)
        self.session.commit()
        log_event("PAYMENT_LATE_REFUNDED", entity="payment", entity_id=payment_id,
                  metadata={**meta, "refund_id": refund_id})
        return PaymentOutcome(booking_id, PaymentStatus.REFUNDED, BookingStatus.CANCELLED,
                              PaymentAction.LATE_REFUNDED)

    def _send_confirmation(self, booking_id: int, messages: list) -> None:
        if self.notify is None:
            return
        for to_email, ok, err in self.notify(messages) or []:
            if not ok:
                logger.warning("Confirmation mail to %s for booking %s not sent: %s", to_email, booking_id, err)

    def refresh(self, booking_id: int) -> dict:
        """Pulls the latest attempt's state from the gateway and applies it."""
        booking = self._booking(booking_id)
        latest = self.ledger.latest_payment(booking.id)
        if latest is not None and latest.status not in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
            provider_payment_id = latest.provider_payment_id
            self.session.commit()
            self.apply_provider_update(self.gateway.fetch(provider_payment_id))
            booking = self._booking(booking_id)
        return status_projection(booking, self.ledger)
