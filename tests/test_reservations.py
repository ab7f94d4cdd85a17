import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from app import create_app
from conftest import TestConfig, future_hour, make_partner, make_slot
from models import db
from models.booking import Booking, BookingStatus
from models.customer import Customer
from models.slot import Slot, SlotStatus
from services import pricing
from services.errors import NotFound, PartnerUnavailable, SlotUnavailable, ValidationFailed
from services.reservations import BookingRequest, ReservationService
from utils.clock import utcnow


def request_for(partner, slot=None, **kw):
    data = dict(
        players_count=2,
        customer_email="Anna@Example.com ",
        customer_name="Anna",
        partner_slug=partner.slug,
        slot_id=slot.id if slot else None,
    )
    data.update(kw)
    return BookingRequest(**data)


def test_booking_holds_slot_and_stores_pricing(app):
    partner = make_partner(fee=30)
    slot = make_slot(partner)

    booking = ReservationService(db.session).create_booking(request_for(partner, slot))

    assert booking.status == BookingStatus.PENDING
    assert booking.total_amount_cents == 3000
    assert (booking.deposit_amount_cents, booking.rest_amount_cents) == (900, 2100)
    assert booking.customer.email == "anna@example.com"
    assert db.session.get(Slot, slot.id, populate_existing=True).status == SlotStatus.BOOKED


def test_second_booking_for_same_slot_is_refused(app):
    partner = make_partner()
    slot = make_slot(partner)
    service = ReservationService(db.session)
    service.create_booking(request_for(partner, slot))

    with pytest.raises(SlotUnavailable) as exc:
        service.create_booking(request_for(partner, slot, customer_email="bob@example.com"))
    assert exc.value.status_code == 409
    assert Booking.query.count() == 1


def test_stale_read_loses_the_compare_and_swap(app):
    """A request that read PUBLISHED before someone else booked must not double-book."""
    partner = make_partner()
    slot = make_slot(partner)
    assert slot.status == SlotStatus.PUBLISHED

    # another writer books the slot behind this session's back
    db.session.execute(
        update(Slot)
        .where(Slot.id == slot.id)
        .values(status=SlotStatus.BOOKED)
        .execution_options(synchronize_session=False)
    )
    assert slot.status == SlotStatus.PUBLISHED

    with pytest.raises(SlotUnavailable):
        ReservationService(db.session).create_booking(request_for(partner, slot))
    assert Booking.query.count() == 0


def test_constraint_failure_after_the_hold_is_not_reported_as_slot_taken(app, monkeypatch):
    partner = make_partner()
    slot = make_slot(partner)
    monkeypatch.setattr(pricing, "quote_for_partner",
                        lambda partner, players: pricing.Quote(3000, 0, 900, -1, 30))

    with pytest.raises(IntegrityError):
        ReservationService(db.session).create_booking(request_for(partner, slot))

    assert Booking.query.count() == 0
    assert db.session.get(Slot, slot.id, populate_existing=True).status == SlotStatus.PUBLISHED


@pytest.fixture
def file_app(tmp_path):
    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'bookings.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 30, "check_same_thread": False}}

    app = create_app(FileConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def test_concurrent_requests_book_a_slot_once(file_app):
    partner = make_partner()
    slot = make_slot(partner)
    slug, slot_id = partner.slug, slot.id
    db.session.close()

    workers = 6
    barrier = threading.Barrier(workers)

    def attempt(n):
        with file_app.app_context():
            req = BookingRequest(players_count=2, customer_email=f"player{n}@example.com",
                                 partner_slug=slug, slot_id=slot_id)
            barrier.wait()
            try:
                return ReservationService(db.session).create_booking(req).id
            except SlotUnavailable:
                return None
            finally:
                db.session.remove()

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(attempt, range(workers)))

    assert len([r for r in results if r is not None]) == 1
    assert Booking.query.filter(Booking.slot_id == slot_id).count() == 1
    assert db.session.get(Slot, slot_id).status == SlotStatus.BOOKED


def test_slot_resolved_by_time_inside_its_window(app):
    partner = make_partner()
    start = future_hour()
    slot = make_slot(partner, start, minutes=60)

    booking = ReservationService(db.session).create_booking(
        request_for(partner, start_time=start + timedelta(minutes=30))
    )
    assert booking.slot_id == slot.id


def test_time_outside_any_slot_is_not_found(app):
    partner = make_partner()
    start = future_hour()
    make_slot(partner, start, minutes=60)

    with pytest.raises(NotFound) as exc:
        ReservationService(db.session).create_booking(
            request_for(partner, start_time=start + timedelta(minutes=90))
        )
    assert exc.value.code == "SLOT_NOT_FOUND"


def test_past_slot_cannot_be_booked(app):
    partner = make_partner()
    slot = make_slot(partner, utcnow().replace(microsecond=0) - timedelta(hours=2))

    with pytest.raises(ValidationFailed) as exc:
        ReservationService(db.session).create_booking(request_for(partner, slot))
    assert exc.value.code == "SLOT_IN_PAST"


def test_draft_slot_needs_allow_draft_booking(app):
    partner = make_partner()
    slot = make_slot(partner, status=SlotStatus.DRAFT)

    with pytest.raises(SlotUnavailable):
        ReservationService(db.session).create_booking(request_for(partner, slot))

    booking = ReservationService(db.session, allow_draft_booking=True).create_booking(request_for(partner, slot))
    assert booking.status == BookingStatus.PENDING


def test_inactive_partner_is_rejected(app):
    partner = make_partner(active=False)
    slot = make_slot(partner)

    with pytest.raises(PartnerUnavailable):
        ReservationService(db.session).create_booking(request_for(partner, slot))


def test_slot_of_another_partner_is_not_found(app):
    partner = make_partner("own")
    other = make_partner("other")
    slot = make_slot(other)

    with pytest.raises(NotFound):
        ReservationService(db.session).create_booking(request_for(partner, slot))


@pytest.mark.parametrize("email", ["", "not-an-email", None])
def test_customer_email_is_required(app, email):
    partner = make_partner()
    slot = make_slot(partner)

    with pytest.raises(ValidationFailed) as exc:
        ReservationService(db.session).create_booking(request_for(partner, slot, customer_email=email))
    assert exc.value.code == "INVALID_EMAIL"


def test_returning_customer_is_reused(app):
    partner = make_partner()
    first = make_slot(partner, future_hour(hour=9))
    second = make_slot(partner, future_hour(hour=10))
    service = ReservationService(db.session)

    a = service.create_booking(request_for(partner, first))
    b = service.create_booking(request_for(partner, second, customer_email="anna@example.com"))

    assert a.customer_id == b.customer_id
    assert Customer.query.count() == 1


def test_missing_slot_reference_is_rejected(app):
    partner = make_partner()
    with pytest.raises(ValidationFailed) as exc:
        ReservationService(db.session).create_booking(request_for(partner))
    assert exc.value.code == "SLOT_REQUIRED"
