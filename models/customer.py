from models.db import db
from utils.clock import utcnow


class Customer(db.Model):
    __tablename__ = "customers"

    id = db.Column(db.Integer, primary_key=True)
    # not unique: several people may book with the same address
    email = db.Column(db.String(255), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=True)
    phone = db.Column(db.String(30), nullable=True)
    locale = db.Column(db.String(5), nullable=False, default="nl")

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
