from models.db import db
from utils.clock import utcnow


class Partner(db.Model):
    __tablename__ = "partners"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    slug = db.Column(db.String(120), unique=True, nullable=False, index=True)
    email = db.Column(db.String(255), nullable=True)
    city = db.Column(db.String(120), nullable=True)

    # Pricing: one participant pays price_1pax_cents, two or more pay price_2plus_cents each
    price_1pax_cents = db.Column(db.Integer, nullable=False, default=0)
    price_2plus_cents = db.Column(db.Integer, nullable=False, default=0)
    fee_percent = db.Column(db.Integer, nullable=False, default=0)  # deposit share, 0..100

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        db.CheckConstraint("fee_percent >= 0 AND fee_percent <= 100", name="ck_partner_fee_percent"),
    )
