from datetime import time, timedelta

import pytest

from conftest import future_hour, make_booking, make_partner, make_slot
from models import db
from models.booking import BookingStatus
from models.slot import Slot, SlotStatus
from services.actor import ADMIN, PARTNER, Actor
from services.errors import Forbidden, ValidationFailed
from services.slot_lifecycle import SlotLifecycle
from utils.clock import utcnow


def partner_actor(partner):
    return Actor(role=PARTNER, user_id=1, partner_id=partner.id)


def status_of(slot_id):
    return db.session.get(Slot, slot_id, populate_existing=True).status


def test_publish_batch_skips_booked_slots(app):
    partner = make_partner()
    a = make_slot(partner, future_hour(hour=10), status=SlotStatus.DRAFT)
    b = make_slot(partner, future_hour(hour=11), status=SlotStatus.DRAFT)
    c = make_slot(partner, future_hour(hour=12), status=SlotStatus.BOOKED)

    result = SlotLifecycle(db.session, partner_actor(partner)).set_status([a.id, b.id, c.id], SlotStatus.PUBLISHED)

    assert result.updated == 2
    assert result.skipped_ids == [c.id]
    assert status_of(a.id) == SlotStatus.PUBLISHED
    assert status_of(b.id) == SlotStatus.PUBLISHED
    assert status_of(c.id) == SlotStatus.BOOKED


def test_booked_slot_is_never_unpublished(app):
    partner = make_partner()
    slot = make_slot(partner, status=SlotStatus.BOOKED)

    result = SlotLifecycle(db.session, partner_actor(partner)).set_status([slot.id], SlotStatus.DRAFT)

    assert result.updated == 0
    assert status_of(slot.id) == SlotStatus.BOOKED


def test_unpublish_clears_published_at(app):
    partner = make_partner()
    slot = make_slot(partner)

    SlotLifecycle(db.session, partner_actor(partner)).set_status([slot.id], SlotStatus.DRAFT)

    refreshed = db.session.get(Slot, slot.id, populate_existing=True)
    assert refreshed.status == SlotStatus.DRAFT
    assert refreshed.published_at is None


@pytest.mark.parametrize("status", ["BOOKED", "ARCHIVED", None])
def test_set_status_rejects_other_targets(app, status):
    partner = make_partner()
    slot = make_slot(partner, status=SlotStatus.DRAFT)

    with pytest.raises(ValidationFailed) as exc:
        SlotLifecycle(db.session, partner_actor(partner)).set_status([slot.id], status)
    assert exc.value.code == "INVALID_STATUS"


def test_partner_cannot_touch_another_partners_slots(app):
    own = make_partner("own")
    other = make_partner("other")
    slot = make_slot(other, status=SlotStatus.DRAFT)

    with pytest.raises(Forbidden):
        SlotLifecycle(db.session, partner_actor(own)).set_status([slot.id], SlotStatus.PUBLISHED)
    assert status_of(slot.id) == SlotStatus.DRAFT


def test_admin_may_manage_any_partner(app):
    partner = make_partner()
    slot = make_slot(partner, status=SlotStatus.DRAFT)

    result = SlotLifecycle(db.session, Actor(role=ADMIN, user_id=1)).set_status([slot.id], SlotStatus.PUBLISHED)
    assert result.updated == 1


def test_create_slot_is_idempotent_and_promotes_draft(app):
    partner = make_partner()
    lifecycle = SlotLifecycle(db.session, partner_actor(partner))
    start = future_hour()

    slot, created = lifecycle.create_slot(partner, start, 60)
    assert created is True
    assert slot.status == SlotStatus.DRAFT
    assert slot.end_time == start + timedelta(minutes=60)

    again, created = lifecycle.create_slot(partner, start, 60, publish=True)
    assert created is False
    assert again.id == slot.id
    assert again.status == SlotStatus.PUBLISHED
    assert Slot.query.count() == 1


def test_create_slot_rejects_past_and_bad_duration(app):
    partner = make_partner()
    lifecycle = SlotLifecycle(db.session, partner_actor(partner))

    with pytest.raises(ValidationFailed) as exc:
        lifecycle.create_slot(partner, utcnow() - timedelta(hours=1), 60)
    assert exc.value.code == "PAST_TIME"

    with pytest.raises(ValidationFailed) as exc:
        lifecycle.create_slot(partner, future_hour(), 0)
    assert exc.value.code == "INVALID_DURATION"


def test_series_creates_each_weekday_time_once(app):
    partner = make_partner()
    lifecycle = SlotLifecycle(db.session, partner_actor(partner))
    first = (utcnow() + timedelta(days=7)).date()
    last = first + timedelta(days=6)

    result = lifecycle.create_series(partner, first, last, [0, 2], [time(18, 0), time(19, 0)], 60, publish=True)
    assert result.created == 4
    assert Slot.query.filter_by(status=SlotStatus.PUBLISHED).count() == 4

    again = lifecycle.create_series(partner, first, last, [0, 2], [time(18, 0), time(19, 0)], 60)
    assert again.created == 0
    assert again.existing == 4


def test_series_rejects_inverted_range(app):
    partner = make_partner()
    day = (utcnow() + timedelta(days=3)).date()

    with pytest.raises(ValidationFailed) as exc:
        SlotLifecycle(db.session, partner_actor(partner)).create_series(
            partner, day, day - timedelta(days=1), [0], [time(9, 0)], 60,
        )
    assert exc.value.code == "INVALID_RANGE"


def test_delete_skips_booked_and_foreign_slots(app):
    partner = make_partner("own")
    other = make_partner("other")
    draft_id = make_slot(partner, future_hour(hour=9), status=SlotStatus.DRAFT).id
    booked_id = make_slot(partner, future_hour(hour=10), status=SlotStatus.BOOKED).id
    foreign_id = make_slot(other, future_hour(hour=9), status=SlotStatus.DRAFT).id

    result = SlotLifecycle(db.session, partner_actor(partner)).delete_slots(partner, [draft_id, booked_id, foreign_id])

    assert result.updated == 1
    assert sorted(result.skipped_ids) == sorted([booked_id, foreign_id])
    assert db.session.get(Slot, draft_id) is None
    assert status_of(foreign_id) == SlotStatus.DRAFT


def test_release_keeps_slot_held_by_another_active_booking(app):
    partner = make_partner()
    slot = make_slot(partner, status=SlotStatus.BOOKED)
    cancelled = make_booking(slot, status=BookingStatus.CANCELLED)
    make_booking(slot, status=BookingStatus.CONFIRMED, email="bob@example.com")

    lifecycle = SlotLifecycle(db.session, Actor.system())
    assert lifecycle.release(slot.id, cancelled.id) is False
    db.session.commit()
    assert status_of(slot.id) == SlotStatus.BOOKED


def test_reserve_is_compare_and_swap(app):
    partner = make_partner()
    slot = make_slot(partner)
    lifecycle = SlotLifecycle(db.session, Actor.system())

    assert lifecycle.reserve(slot.id) is True
    assert lifecycle.reserve(slot.id) is False
    db.session.commit()
    assert status_of(slot.id) == SlotStatus.BOOKED


def test_draft_slots_bookable_only_when_allowed(app):
    partner = make_partner()
    slot = make_slot(partner, status=SlotStatus.DRAFT)

    assert SlotLifecycle(db.session, Actor.system()).reserve(slot.id) is False
    assert SlotLifecycle(db.session, Actor.system(), allow_draft_booking=True).reserve(slot.id) is True
