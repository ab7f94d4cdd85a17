from models.db import db
from utils.clock import utcnow


class PaymentStatus:
    CREATED = "CREATED"
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
    REFUNDED = "REFUNDED"

    ALL = (CREATED, PENDING, PAID, FAILED, CANCELED, REFUNDED)
    # unpaid and not coming back
    TERMINAL_UNPAID = (FAILED, CANCELED)


class PaymentType:
    DEPOSIT = "DEPOSIT"


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.id"), nullable=False, index=True)

    type = db.Column(db.String(20), nullable=False, default=PaymentType.DEPOSIT)
    provider = db.Column(db.String(20), nullable=False, default="STRIPE")
    provider_payment_id = db.Column(db.String(255), nullable=True, unique=True, index=True)
    method = db.Column(db.String(40), nullable=True)

    status = db.Column(db.String(20), nullable=False, default=PaymentStatus.CREATED)
    amount_cents = db.Column(db.Integer, nullable=False)   # smallest unit
    currency = db.Column(db.String(3), nullable=False, default="EUR")

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    paid_at = db.Column(db.DateTime, nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)
    provider_refund_id = db.Column(db.String(255), nullable=True)

    booking = db.relationship("Booking", backref=db.backref("payments", lazy="select"))
