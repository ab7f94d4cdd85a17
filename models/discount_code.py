from models.db import db
from utils.clock import utcnow


class DiscountType:
    PERCENT = "PERCENT"
    FIXED = "FIXED"


class DiscountCode(db.Model):
    __tablename__ = "discount_codes"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False, index=True)  # stored upper-case
    partner_id = db.Column(db.Integer, db.ForeignKey("partners.id"), nullable=True, index=True)  # NULL = global

    type = db.Column(db.String(10), nullable=False)
    percent = db.Column(db.Integer, nullable=True)       # PERCENT: 1..100
    amount_cents = db.Column(db.Integer, nullable=True)  # FIXED: > 0

    valid_from = db.Column(db.DateTime, nullable=True)
    valid_until = db.Column(db.DateTime, nullable=True)
    max_redemptions = db.Column(db.Integer, nullable=True)
    redeemed_count = db.Column(db.Integer, nullable=False, default=0)
    active = db.Column(db.Boolean, nullable=False, default=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("partner_id", "code", name="uq_discount_partner_code"),
    )
