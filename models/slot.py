from models.db import db
from utils.clock import utcnow


class SlotStatus:
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    BOOKED = "BOOKED"

    ALL = (DRAFT, PUBLISHED, BOOKED)


class Slot(db.Model):
    __tablename__ = "slots"

    id = db.Column(db.Integer, primary_key=True)

    partner_id = db.Column(db.Integer, db.ForeignKey("partners.id"), nullable=False, index=True)
    start_time = db.Column(db.DateTime, nullable=False, index=True)
    end_time = db.Column(db.DateTime, nullable=True)

    status = db.Column(db.String(20), nullable=False, default=SlotStatus.DRAFT, index=True)
    published_at = db.Column(db.DateTime, nullable=True)
    booked_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    partner = db.relationship("Partner", lazy="joined")

    __table_args__ = (
        # One slot per partner per start time
        db.UniqueConstraint("partner_id", "start_time", name="uq_partner_slot_start"),
        db.CheckConstraint("status IN ('DRAFT', 'PUBLISHED', 'BOOKED')", name="ck_slot_status"),
    )

    def contains(self, moment) -> bool:
        if self.end_time is None:
            return moment == self.start_time
        return self.start_time <= moment < self.end_time
