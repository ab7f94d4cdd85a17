import re
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from models.booking import Booking, BookingStatus
from models.discount_code import DiscountCode, DiscountType
from models.payment import PaymentStatus
from services import pricing
from services.errors import BookingNotEditable, Conflict, NotFound, ValidationFailed
from services.payment_ledger import PaymentLedger
from utils.clock import utcnow

CODE_RE = re.compile(r"^[A-Z0-9_-]{3,32}$")


def normalize_code(code) -> str:
    value = (code or "").strip().upper()
    if not CODE_RE.match(value):
        raise ValidationFailed("Code must be 3-32 characters: letters, digits, - or _", code="INVALID_CODE")
    return value


class DiscountService:
    def __init__(self, session, actor=None, clock=utcnow):
        self.session = session
        self.actor = actor
        self.clock = clock
        self.ledger = PaymentLedger(session)

    # ---------- applying codes to bookings ----------

    def find_applicable(self, code: str, partner_id: int, at: Optional[datetime] = None) -> DiscountCode:
        """Partner-specific codes win over a global code with the same text."""
        value = normalize_code(code)
        at = at or self.clock()
        discount = self.session.execute(
            select(DiscountCode)
            .where(
                DiscountCode.code == value,
                (DiscountCode.partner_id == partner_id) | DiscountCode.partner_id.is_(None),
            )
            .order_by(DiscountCode.partner_id.is_(None).asc())
            .limit(1)
        ).scalar_one_or_none()

        if discount is None:
            raise ValidationFailed("Unknown discount code", code="DISCOUNT_NOT_FOUND")
        if not discount.active:
            raise ValidationFailed("Discount code is not active", code="DISCOUNT_INACTIVE")
        if discount.valid_from and at < discount.valid_from:
            raise ValidationFailed("Discount code is not valid yet", code="DISCOUNT_NOT_YET_VALID")
        if discount.valid_until and at > discount.valid_until:
            raise ValidationFailed("Discount code has expired", code="DISCOUNT_EXPIRED")
        if discount.max_redemptions is not None and discount.redeemed_count >= discount.max_redemptions:
            raise ValidationFailed("Discount code is used up", code="DISCOUNT_EXHAUSTED")
        return discount

    def _editable_booking(self, booking_id: int) -> Booking:
        booking = self.session.execute(
            select(Booking).where(Booking.id == booking_id).with_for_update()
        ).scalar_one_or_none()
        if booking is None:
            raise NotFound("Booking not found", code="BOOKING_NOT_FOUND")
        if booking.status != BookingStatus.PENDING or self.ledger.is_booking_paid(booking.id):
            raise BookingNotEditable("Booking can no longer be changed")
        latest = self.ledger.latest_payment(booking.id)
        # an open checkout was created for the old deposit amount
        if latest is not None and latest.status in (PaymentStatus.CREATED, PaymentStatus.PENDING):
            raise BookingNotEditable("A payment is in progress for this booking", code="PAYMENT_IN_PROGRESS")
        return booking

    def _reprice(self, booking: Booking, discount: Optional[DiscountCode]) -> Booking:
        total = booking.total_amount_cents
        amount = pricing.discount_cents(total, discount)
        q = pricing.quote(total, booking.partner.fee_percent, amount)
        booking.discount_code_id = discount.id if discount else None
        booking.discount_amount_cents = q.discount_cents
        booking.deposit_amount_cents = q.deposit_cents
        booking.rest_amount_cents = q.rest_cents
        self.session.commit()
        return booking

    def apply_to_booking(self, booking_id: int, code: str) -> Booking:
        booking = self._editable_booking(booking_id)
        discount = self.find_applicable(code, booking.partner_id)
        return self._reprice(booking, discount)

    def remove_from_booking(self, booking_id: int) -> Booking:
        booking = self._editable_booking(booking_id)
        return self._reprice(booking, None)

    # ---------- management ----------

    def create(self, code: str, discount_type: str, percent=None, amount_cents=None,
               partner_id: Optional[int] = None, valid_from=None, valid_until=None,
               max_redemptions=None) -> DiscountCode:
        if not self.actor.is_admin:
            # partners only ever create codes for themselves
            partner_id = self.actor.partner_id
        elif partner_id is not None:
            self.actor.require_partner(partner_id)

        value = normalize_code(code)
        if discount_type == DiscountType.PERCENT:
            if not isinstance(percent, int) or isinstance(percent, bool) or not 1 <= percent <= 100:
                raise ValidationFailed("percent must be between 1 and 100", code="INVALID_DISCOUNT")
            amount_cents = None
        elif discount_type == DiscountType.FIXED:
            if not isinstance(amount_cents, int) or isinstance(amount_cents, bool) or amount_cents <= 0:
                raise ValidationFailed("amountCents must be a positive integer", code="INVALID_DISCOUNT")
            percent = None
        else:
            raise ValidationFailed("type must be PERCENT or FIXED", code="INVALID_DISCOUNT")

        if valid_from and valid_until and valid_until <= valid_from:
            raise ValidationFailed("validUntil must be after validFrom", code="INVALID_RANGE")
        if max_redemptions is not None and (not isinstance(max_redemptions, int) or max_redemptions < 1):
            raise ValidationFailed("maxRedemptions must be a positive integer", code="INVALID_DISCOUNT")

        clash = self.session.execute(
            select(DiscountCode.id).where(
                DiscountCode.code == value,
                DiscountCode.partner_id.is_(None) if partner_id is None else DiscountCode.partner_id == partner_id,
            )
        ).first()
        if clash:
            raise Conflict("Discount code already exists", code="DISCOUNT_CODE_EXISTS")

        discount = DiscountCode(
            code=value,
            partner_id=partner_id,
            type=discount_type,
            percent=percent,
            amount_cents=amount_cents,
            valid_from=valid_from,
            valid_until=valid_until,
            max_redemptions=max_redemptions,
            created_by_user_id=self.actor.user_id,
        )
        self.session.add(discount)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise Conflict("Discount code already exists", code="DISCOUNT_CODE_EXISTS")
        return discount

    def list_codes(self, partner_id: Optional[int] = None) -> list:
        q = select(DiscountCode)
        if not self.actor.is_admin:
            q = q.where(DiscountCode.partner_id == self.actor.partner_id)
        elif partner_id is not None:
            q = q.where(DiscountCode.partner_id == partner_id)
        return list(self.session.execute(q.order_by(DiscountCode.created_at.desc(), DiscountCode.id.desc())).scalars())

    def _owned(self, discount_id: int) -> Optional[DiscountCode]:
        discount = self.session.get(DiscountCode, discount_id)
        if discount is None:
            return None
        if discount.partner_id is None:
            if not self.actor.is_admin:
                raise NotFound("Discount code not found", code="DISCOUNT_NOT_FOUND")
        else:
            self.actor.require_partner(discount.partner_id)
        return discount

    def set_active(self, discount_id: int, active: bool) -> DiscountCode:
        discount = self._owned(discount_id)
        if discount is None:
            raise NotFound("Discount code not found", code="DISCOUNT_NOT_FOUND")
        discount.active = bool(active)
        self.session.commit()
        return discount

    def delete(self, discount_id: int) -> bool:
        """False when there was nothing to delete."""
        discount = self._owned(discount_id)
        if discount is None:
            return False
        in_use = self.session.execute(
            select(Booking.id).where(Booking.discount_code_id == discount.id).limit(1)
        ).first()
        if in_use:
            # bookings keep pointing at it; deactivate instead
            discount.active = False
        else:
            self.session.delete(discount)
        self.session.commit()
        return True


def serialize_discount(d: DiscountCode) -> dict:
    return {
        "id": d.id,
        "code": d.code,
        "partnerId": d.partner_id,
        "type": d.type,
        "percent": d.percent,
        "amountCents": d.amount_cents,
        "validFrom": d.valid_from.isoformat() if d.valid_from else None,
        "validUntil": d.valid_until.isoformat() if d.valid_until else None,
        "maxRedemptions": d.max_redemptions,
        "redeemedCount": d.redeemed_count,
        "active": d.active,
    }
