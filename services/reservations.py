import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from models.booking import Booking, BookingStatus
from models.customer import Customer
from models.partner import Partner
from models.slot import Slot
from services import pricing
from services.actor import Actor
from services.errors import NotFound, PartnerUnavailable, SlotUnavailable, ValidationFailed
from services.reconciliation import BookingReconciler
from services.slot_lifecycle import SlotLifecycle
from utils.clock import utcnow

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class BookingRequest:
    players_count: int
    customer_email: str
    partner_id: Optional[int] = None
    partner_slug: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    locale: str = "nl"
    slot_id: Optional[int] = None
    start_time: Optional[datetime] = None


class ReservationService:
    """
    Creates PENDING bookings. The slot flip to BOOKED and the booking insert
    share one transaction; the flip is a compare-and-swap, so of two racing
    requests for the same slot exactly one commits.
    """

    def __init__(self, session, allow_draft_booking: bool = False, currency: str = "EUR"):
        self.session = session
        self.currency = currency
        self.slots = SlotLifecycle(session, Actor.system(), allow_draft_booking=allow_draft_booking)

    def create_booking(self, req: BookingRequest) -> Booking:
        if req.slot_id is None and req.start_time is None:
            raise ValidationFailed("Provide slotId or startTimeISO", code="SLOT_REQUIRED")
        pricing.validate_players(req.players_count)

        email = (req.customer_email or "").strip().lower()
        if not EMAIL_RE.match(email):
            raise ValidationFailed("A valid customer email is required", code="INVALID_EMAIL")

        partner = self.find_partner(req.partner_id, req.partner_slug)
        if partner is None or not partner.is_active:
            raise PartnerUnavailable("Partner not found or inactive")

        slot = self._resolve_slot(partner, req)
        if slot.start_time <= utcnow():
            raise ValidationFailed("Cannot book past or started slots", code="SLOT_IN_PAST")
        if slot.status not in self.slots.bookable_statuses():
            raise SlotUnavailable("Slot is not available")

        quote = pricing.quote_for_partner(partner, req.players_count)
        customer = self._upsert_customer(req)

        if not self.slots.reserve(slot.id):
            self.session.rollback()
            raise SlotUnavailable("Slot was just booked by someone else")

        booking = Booking(
            partner_id=partner.id,
            slot_id=slot.id,
            customer_id=customer.id,
            status=BookingStatus.PENDING,
            players_count=req.players_count,
            currency=self.currency,
            total_amount_cents=quote.total_cents,
            discount_amount_cents=0,
            deposit_amount_cents=quote.deposit_cents,
            rest_amount_cents=quote.rest_cents,
        )
        self.session.add(booking)
        try:
            self.session.commit()
        except IntegrityError:
            # the slot CAS already won; any constraint failure here is a data error
            self.session.rollback()
            raise
        return booking

    def get(self, booking_id: int) -> Booking:
        booking = self.session.get(Booking, booking_id)
        if booking is None:
            raise NotFound("Booking not found", code="BOOKING_NOT_FOUND")
        return booking

    def cancel(self, booking_id: int):
        """Customer-initiated cancel of an unpaid hold; the slot goes back on sale."""
        return BookingReconciler(self.session, Actor.system()).cancel_by_customer(booking_id)

    def find_partner(self, partner_id: Optional[int] = None, slug: Optional[str] = None) -> Optional[Partner]:
        if partner_id is not None:
            return self.session.get(Partner, partner_id)
        if slug:
            return self.session.execute(
                select(Partner).where(Partner.slug == slug.strip().lower())
            ).scalar_one_or_none()
        return None

    def _resolve_slot(self, partner: Partner, req: BookingRequest) -> Slot:
        if req.slot_id is not None:
            slot = self.session.execute(
                select(Slot).where(Slot.id == req.slot_id, Slot.partner_id == partner.id)
            ).scalar_one_or_none()
            if slot is None:
                raise NotFound("Slot not found", code="SLOT_NOT_FOUND")
            if req.start_time is not None and not slot.contains(req.start_time):
                raise ValidationFailed("Requested time is outside the slot", code="INVALID_SLOT_TIME")
            return slot

        # by time: the latest slot starting at or before the requested moment
        slot = self.session.execute(
            select(Slot)
            .where(Slot.partner_id == partner.id, Slot.start_time <= req.start_time)
            .order_by(Slot.start_time.desc())
            .limit(1)
        ).scalar_one_or_none()
        if slot is None or not slot.contains(req.start_time):
            raise NotFound("No slot at the requested time", code="SLOT_NOT_FOUND")
        return slot

    def _upsert_customer(self, req: BookingRequest) -> Customer:
        email = (req.customer_email or "").strip().lower()
        name = (req.customer_name or "").strip() or None

        q = select(Customer).where(Customer.email == email)
        if name:
            q = q.where(Customer.name == name)
        customer = self.session.execute(q.order_by(Customer.id.asc()).limit(1)).scalar_one_or_none()

        if customer is None:
            customer = Customer(email=email, name=name, phone=req.customer_phone, locale=req.locale or "nl")
            self.session.add(customer)
            self.session.flush()
        else:
            if req.customer_phone:
                customer.phone = req.customer_phone
            if req.locale:
                customer.locale = req.locale
        return customer


def booking_view(b: Booking) -> dict:
    return {
        "id": b.id,
        "status": b.status,
        "playersCount": b.players_count,
        "currency": b.currency,
        "totalAmountCents": b.total_amount_cents,
        "discountAmountCents": b.discount_amount_cents,
        "depositAmountCents": b.deposit_amount_cents,
        "restAmountCents": b.rest_amount_cents,
        "discountCode": b.discount_code.code if b.discount_code else None,
        "createdAt": b.created_at.isoformat() if b.created_at else None,
        "confirmedAt": b.confirmed_at.isoformat() if b.confirmed_at else None,
        "cancelledAt": b.cancelled_at.isoformat() if b.cancelled_at else None,
        "partner": {"id": b.partner.id, "name": b.partner.name, "slug": b.partner.slug},
        "slot": {
            "id": b.slot.id,
            "startTime": b.slot.start_time.isoformat(),
            "endTime": b.slot.end_time.isoformat() if b.slot.end_time else None,
        },
        "customer": {"name": b.customer.name, "email": b.customer.email},
    }
