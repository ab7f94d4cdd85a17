import hashlib
import hmac
import json
import time
from dataclasses import replace
from datetime import timedelta

import pytest

from app import create_app
from config import Config
from models import db
from models.booking import Booking, BookingStatus
from models.customer import Customer
from models.partner import Partner
from models.payment import Payment, PaymentStatus
from models.slot import Slot, SlotStatus
from models.user import User
from security.password import hash_password
from services.errors import PaymentGatewayError
from services.payment_gateway import StripeGateway
from services.payment_ledger import ProviderPayment
from utils.clock import utcnow
from utils.seed import get_or_create_role, seed_roles

WEBHOOK_SECRET = "whsec_test_secret"
PASSWORD = "correct-horse-battery"


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SECRET_KEY = "test"
    BCRYPT_ROUNDS = 4
    STRIPE_SECRET_KEY = "sk_test_dummy"
    STRIPE_WEBHOOK_SECRET = WEBHOOK_SECRET
    MAINTENANCE_SECRET = "cron-secret"
    SMTP_HOST = None
    REFUND_LATE_PAYMENTS = True
    ALLOW_DRAFT_BOOKING = False


class FakeGateway(StripeGateway):
    """In-memory checkouts; webhook signature checks stay the real ones."""

    def __init__(self):
        super().__init__("sk_test_dummy", WEBHOOK_SECRET,
                         "http://test/pay/success?booking_id={BOOKING_ID}",
                         "http://test/pay/cancel?booking_id={BOOKING_ID}")
        self.checkouts = {}
        self.refunds = []
        self.fail_refunds = False
        self._seq = 0

    def create_checkout(self, booking_id, amount_cents, currency, description, customer_email=None):
        self._seq += 1
        checkout = ProviderPayment(
            provider_payment_id=f"cs_test_{self._seq}",
            status=PaymentStatus.PENDING,
            booking_id=booking_id,
            amount_cents=amount_cents,
            currency=currency,
            checkout_url=f"https://checkout.test/cs_test_{self._seq}",
        )
        self.checkouts[checkout.provider_payment_id] = checkout
        return checkout

    def set_status(self, provider_payment_id, status):
        checkout = replace(
            self.checkouts[provider_payment_id],
            status=status,
            paid_at=utcnow() if status == PaymentStatus.PAID else None,
        )
        self.checkouts[provider_payment_id] = checkout
        return checkout

    def fetch(self, provider_payment_id):
        return self.checkouts[provider_payment_id]

    def refund(self, provider_payment_id, amount_cents=None):
        if self.fail_refunds:
            raise PaymentGatewayError("Refund failed")
        self.refunds.append((provider_payment_id, amount_cents))
        return f"re_test_{len(self.refunds)}"


@pytest.fixture
def app():
    app = create_app(TestConfig)
    app.extensions["payment_gateway"] = FakeGateway()
    with app.app_context():
        db.create_all()
        seed_roles()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def gateway(app):
    return app.extensions["payment_gateway"]


# ---------- data helpers ----------

def future_hour(days=2, hour=18):
    base = utcnow() + timedelta(days=days)
    return base.replace(hour=hour, minute=0, second=0, microsecond=0)


def make_partner(slug="bos-en-hei", p1=2500, p2=1500, fee=30, active=True, email=None):
    partner = Partner(
        name=slug.replace("-", " ").title(),
        slug=slug,
        email=email,
        price_1pax_cents=p1,
        price_2plus_cents=p2,
        fee_percent=fee,
        is_active=active,
    )
    db.session.add(partner)
    db.session.commit()
    return partner


def make_slot(partner, start=None, status=SlotStatus.PUBLISHED, minutes=60):
    start = start or future_hour()
    slot = Slot(
        partner_id=partner.id,
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        status=status,
        published_at=utcnow() if status != SlotStatus.DRAFT else None,
    )
    db.session.add(slot)
    db.session.commit()
    return slot


def make_booking(slot, status=BookingStatus.PENDING, created_minutes_ago=0, players=1,
                 total=2500, deposit=750, email="anna@example.com"):
    """Inserts a booking directly, bypassing the reservation flow."""
    customer = Customer(email=email, name="Anna")
    db.session.add(customer)
    db.session.flush()
    booking = Booking(
        partner_id=slot.partner_id,
        slot_id=slot.id,
        customer_id=customer.id,
        status=status,
        players_count=players,
        total_amount_cents=total,
        discount_amount_cents=0,
        deposit_amount_cents=deposit,
        rest_amount_cents=total - deposit,
        created_at=utcnow() - timedelta(minutes=created_minutes_ago),
    )
    db.session.add(booking)
    db.session.commit()
    return booking


def add_payment(booking, status=PaymentStatus.PAID, provider_payment_id=None):
    payment = Payment(
        booking_id=booking.id,
        provider_payment_id=provider_payment_id or f"cs_manual_{booking.id}_{status}",
        status=status,
        amount_cents=booking.deposit_amount_cents,
        currency="EUR",
        paid_at=utcnow() if status == PaymentStatus.PAID else None,
    )
    db.session.add(payment)
    db.session.commit()
    return payment


def make_user(email, role, partner=None):
    user = User(
        email=email,
        password_hash=hash_password(PASSWORD, rounds=4),
        partner_id=partner.id if partner else None,
    )
    user.roles.append(get_or_create_role(role))
    db.session.add(user)
    db.session.commit()
    return user


def login(client, email):
    """Logs in and returns the CSRF header for follow-up writes."""
    resp = client.post("/auth/login", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 200, resp.get_json()
    return {"X-CSRF-Token": client.get_cookie("csrf_token").value}


def signed_webhook(event: dict, secret=WEBHOOK_SECRET):
    payload = json.dumps(event).encode("utf-8")
    ts = int(time.time())
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + payload, hashlib.sha256).hexdigest()
    return payload, {"Stripe-Signature": f"t={ts},v1={signature}", "Content-Type": "application/json"}
