from models.db import db
from utils.clock import utcnow


class BookingStatus:
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"

    ALL = (PENDING, CONFIRMED, CANCELLED)


class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.Integer, primary_key=True)

    partner_id = db.Column(db.Integer, db.ForeignKey("partners.id"), nullable=False, index=True)
    slot_id = db.Column(db.Integer, db.ForeignKey("slots.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    status = db.Column(db.String(20), nullable=False, default=BookingStatus.PENDING, index=True)
    players_count = db.Column(db.Integer, nullable=False, default=1)

    # Amounts in cents. total is gross; deposit + rest == total - discount
    currency = db.Column(db.String(3), nullable=False, default="EUR")
    total_amount_cents = db.Column(db.Integer, nullable=False)
    discount_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    deposit_amount_cents = db.Column(db.Integer, nullable=False)
    rest_amount_cents = db.Column(db.Integer, nullable=False)
    discount_code_id = db.Column(db.Integer, db.ForeignKey("discount_codes.id"), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    confirmed_at = db.Column(db.DateTime, nullable=True)
    deposit_paid_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancel_reason = db.Column(db.String(120), nullable=True)

    partner = db.relationship("Partner")
    slot = db.relationship("Slot")
    customer = db.relationship("Customer")
    discount_code = db.relationship("DiscountCode")

    __table_args__ = (
        db.CheckConstraint("players_count >= 1 AND players_count <= 3", name="ck_booking_players"),
        db.CheckConstraint(
            "deposit_amount_cents >= 0 AND rest_amount_cents >= 0 AND discount_amount_cents >= 0",
            name="ck_booking_amounts",
        ),
        db.CheckConstraint("status IN ('PENDING', 'CONFIRMED', 'CANCELLED')", name="ck_booking_status"),
    )

    @property
    def net_amount_cents(self) -> int:
        return max(0, self.total_amount_cents - (self.discount_amount_cents or 0))
