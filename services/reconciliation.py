"""
Booking reconciliation.

Unpaid PENDING bookings hold their slot for a limited time. The sweep finds
holds older than the TTL and releases them, one short transaction per
booking. Every write re-checks the state it depends on in its own WHERE
clause, so a booking paid between the scan and the write is left alone and
two sweeps running at once cannot double-release.
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from models.booking import Booking, BookingStatus
from services.errors import BookingNotEditable, Forbidden, NotFound
from services.payment_ledger import PaymentLedger, paid_deposit_exists
from services.slot_lifecycle import SlotLifecycle
from utils.audit import log_event
from utils.clock import utcnow

logger = logging.getLogger(__name__)

DEFAULT_TTL_MINUTES = 30


class ReleaseReason:
    RELEASED = "RELEASED"
    BOOKING_CANCELLED_ONLY = "BOOKING_CANCELLED_ONLY"
    ALREADY_RELEASED = "ALREADY_RELEASED"
    NO_BOOKING = "NO_BOOKING"
    ALREADY_CONFIRMED = "ALREADY_CONFIRMED"
    ALREADY_PAID = "ALREADY_PAID"

    # guard hits: the booking is (or became) paid and must not be touched
    PAID_GUARDS = (ALREADY_CONFIRMED, ALREADY_PAID)


@dataclass(frozen=True)
class ReleaseResult:
    changed: bool
    reason: str
    booking_id: Optional[int] = None
    slot_released: bool = False


@dataclass
class ReconcileSummary:
    processed: int = 0
    released: int = 0
    skipped: int = 0
    failed: int = 0
    results: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "processed": self.processed,
            "released": self.released,
            "skipped": self.skipped,
            "failed": self.failed,
        }


class BookingReconciler:
    def __init__(self, session, actor, ttl_minutes: int = DEFAULT_TTL_MINUTES,
                 clock: Callable = utcnow):
        self.session = session
        self.actor = actor
        self.ttl = timedelta(minutes=ttl_minutes)
        self.clock = clock
        self.ledger = PaymentLedger(session)
        self.slots = SlotLifecycle(session, actor)

    def find_stale_booking_ids(self) -> list[int]:
        """
        PENDING bookings older than the TTL without any PAID deposit. Holds
        whose latest attempt is PENDING, FAILED or CANCELED qualify, and so do
        holds that never reached the gateway (no attempt or CREATED only).
        """
        cutoff = self.clock() - self.ttl
        ids = list(
            self.session.execute(
                select(Booking.id)
                .where(
                    Booking.status == BookingStatus.PENDING,
                    Booking.created_at < cutoff,
                    ~paid_deposit_exists(Booking.id),
                )
                .order_by(Booking.created_at.asc())
            ).scalars()
        )
        # end the read transaction before per-booking units of work
        self.session.commit()
        return ids

    def release_if_unpaid(self, booking_id: int, reason: str = "PAYMENT_TIMEOUT") -> ReleaseResult:
        """
        One unit of work: cancel the booking if still unpaid, give the slot
        back if nobody else holds it. Guard failures return a reason instead
        of raising.
        """
        booking = self.session.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        if booking is None:
            self.session.rollback()
            return ReleaseResult(False, ReleaseReason.NO_BOOKING, booking_id)
        if booking.status == BookingStatus.CONFIRMED:
            self.session.rollback()
            return ReleaseResult(False, ReleaseReason.ALREADY_CONFIRMED, booking_id)
        if self.ledger.is_booking_paid(booking.id):
            self.session.rollback()
            return ReleaseResult(False, ReleaseReason.ALREADY_PAID, booking_id)

        slot_id = booking.slot_id
        cancelled = self.session.execute(
            update(Booking)
            .where(
                Booking.id == booking_id,
                Booking.status == BookingStatus.PENDING,
                ~paid_deposit_exists(Booking.id),
            )
            .values(status=BookingStatus.CANCELLED, cancelled_at=self.clock(), cancel_reason=reason[:120])
            .execution_options(synchronize_session=False)
        ).rowcount == 1

        if not cancelled and booking.status == BookingStatus.PENDING:
            # lost a race against a payment landing in between
            self.session.rollback()
            return ReleaseResult(False, ReleaseReason.ALREADY_PAID, booking_id)

        released = self.slots.release(slot_id, booking_id)
        self.session.commit()

        if released:
            return ReleaseResult(True, ReleaseReason.RELEASED, booking_id, slot_released=True)
        if cancelled:
            return ReleaseResult(True, ReleaseReason.BOOKING_CANCELLED_ONLY, booking_id)
        return ReleaseResult(False, ReleaseReason.ALREADY_RELEASED, booking_id)

    def cancel_by_customer(self, booking_id: int) -> ReleaseResult:
        """Customer gives up a hold before paying. Paid or confirmed bookings are not editable."""
        result = self.release_if_unpaid(booking_id, reason="CUSTOMER_CANCELLED")
        if result.reason == ReleaseReason.NO_BOOKING:
            raise NotFound("Booking not found", code="BOOKING_NOT_FOUND")
        if result.reason in ReleaseReason.PAID_GUARDS:
            raise BookingNotEditable("Booking is already paid or confirmed")
        return result

    def run(self) -> ReconcileSummary:
        if not self.actor.is_admin:
            raise Forbidden("Only admins may run the reconciliation")

        summary = ReconcileSummary()
        for booking_id in self.find_stale_booking_ids():
            try:
                result = self.release_if_unpaid(booking_id)
            except SQLAlchemyError:
                self.session.rollback()
                logger.exception("Releasing booking %s failed", booking_id)
                summary.failed += 1
                continue

            summary.processed += 1
            summary.results.append(result)
            if result.changed:
                summary.released += 1
                log_event("BOOKING_RELEASED", user_id=self.actor.user_id, entity="booking",
                          entity_id=booking_id, metadata={"reason": result.reason})
            else:
                summary.skipped += 1
        if summary.processed or summary.failed:
            logger.info("Reconciliation: %s processed, %s released, %s failed",
                        summary.processed, summary.released, summary.failed)
        return summary
