from flask import Blueprint, request, jsonify, current_app, g

from models import db
from models.partner import Partner
from models.slot import Slot, SlotStatus
from security.rbac import require_roles
from services.errors import NotFound, PartnerUnavailable, ValidationFailed
from services.slot_lifecycle import SlotLifecycle
from utils.audit import log_event
from utils.clock import day_bounds, utcnow
from utils.params import (
    as_datetime, as_day, as_id_list, as_int, as_time, json_body, require_actor, resolve_partner_id,
)

slots_bp = Blueprint("slots", __name__)


def slot_view(s: Slot) -> dict:
    return {
        "id": s.id,
        "partnerId": s.partner_id,
        "startTime": s.start_time.isoformat(),
        "endTime": s.end_time.isoformat() if s.end_time else None,
        "status": s.status,
        "publishedAt": s.published_at.isoformat() if s.published_at else None,
    }


def _lifecycle(actor) -> SlotLifecycle:
    return SlotLifecycle(
        db.session, actor,
        allow_draft_booking=current_app.config.get("ALLOW_DRAFT_BOOKING", False),
    )


def _partner(partner_id: int) -> Partner:
    partner = db.session.get(Partner, partner_id)
    if partner is None:
        raise NotFound("Partner not found", code="PARTNER_NOT_FOUND")
    return partner


def _duration(data) -> int:
    duration = as_int(data.get("durationMinutes"), "durationMinutes", required=False)
    if duration is None:
        duration = current_app.config.get("DEFAULT_SLOT_DURATION_MINUTES", 60)
    return duration


# ---------- PARTNER/ADMIN: manage slots ----------
@slots_bp.post("/slots")
@require_roles("PARTNER")
def create_slot():
    actor = require_actor()
    data = json_body()
    partner = _partner(resolve_partner_id(actor, data.get("partnerId")))
    start = as_datetime(data.get("startTimeISO"), "startTimeISO")

    slot, created = _lifecycle(actor).create_slot(
        partner, start, _duration(data), publish=bool(data.get("publish")),
    )
    if created:
        log_event("SLOT_CREATE", user_id=g.user.id, entity="slot", entity_id=slot.id)
    return jsonify(ok=True, created=created, slot=slot_view(slot)), 201 if created else 200


@slots_bp.post("/slots/series")
@require_roles("PARTNER")
def create_series():
    actor = require_actor()
    data = json_body()
    partner = _partner(resolve_partner_id(actor, data.get("partnerId")))

    weekdays = data.get("weekdays")
    if not isinstance(weekdays, list) or not weekdays:
        raise ValidationFailed("weekdays must be a non-empty list (0=Monday)", code="INVALID_FIELD")
    weekdays = [as_int(d, "weekdays") for d in weekdays]
    if any(d < 0 or d > 6 for d in weekdays):
        raise ValidationFailed("weekdays must be between 0 (Monday) and 6 (Sunday)", code="INVALID_FIELD")

    times = data.get("times")
    if not isinstance(times, list) or not times:
        raise ValidationFailed("times must be a non-empty list of HH:MM", code="INVALID_FIELD")

    result = _lifecycle(actor).create_series(
        partner,
        as_day(data.get("startDate"), "startDate"),
        as_day(data.get("endDate"), "endDate"),
        weekdays,
        [as_time(t, "times") for t in times],
        _duration(data),
        publish=bool(data.get("publish")),
    )
    log_event("SLOT_SERIES_CREATE", user_id=g.user.id, entity="partner", entity_id=partner.id,
              metadata={"created": result.created, "existing": result.existing})
    return jsonify(ok=True, created=result.created, existing=result.existing,
                   skippedPast=result.skipped_past), 200


@slots_bp.post("/slots/update-status")
@require_roles("PARTNER")
def update_status():
    actor = require_actor()
    data = json_body()
    slot_ids = as_id_list(data.get("slotIds"), "slotIds")
    status = data.get("status")

    result = _lifecycle(actor).set_status(slot_ids, status)
    log_event("SLOT_STATUS_UPDATE", user_id=g.user.id, entity="slot",
              metadata={"status": status, "slot_ids": slot_ids, "updated": result.updated})
    return jsonify(ok=True, updated=result.updated, skipped=result.skipped_ids), 200


@slots_bp.post("/slots/delete")
@require_roles("PARTNER")
def delete_slots():
    actor = require_actor()
    data = json_body()
    partner = _partner(resolve_partner_id(actor, data.get("partnerId")))
    slot_ids = as_id_list(data.get("slotIds"), "slotIds")

    result = _lifecycle(actor).delete_slots(partner, slot_ids)
    if result.updated:
        log_event("SLOT_DELETE", user_id=g.user.id, entity="partner", entity_id=partner.id,
                  metadata={"deleted": result.updated})
    return jsonify(ok=True, deleted=result.updated, skipped=result.skipped_ids), 200


@slots_bp.get("/slots")
@require_roles("PARTNER")
def list_slots():
    actor = require_actor()
    partner_id = resolve_partner_id(actor, request.args.get("partnerId"))
    day = as_day(request.args.get("date") or utcnow().date().isoformat(), "date")
    status = request.args.get("status")
    if status and status not in SlotStatus.ALL:
        raise ValidationFailed("Unknown status", code="INVALID_STATUS")

    start, end = day_bounds(day)
    slots = _lifecycle(actor).list_for_day(partner_id, start, end, [status] if status else None)
    return jsonify(ok=True, date=day.isoformat(), slots=[slot_view(s) for s in slots]), 200


# ---------- PUBLIC: browse ----------
@slots_bp.get("/public/partners")
def public_partners():
    partners = Partner.query.filter_by(is_active=True).order_by(Partner.name.asc()).all()
    return jsonify(ok=True, partners=[
        {
            "id": p.id,
            "slug": p.slug,
            "name": p.name,
            "city": p.city,
            "price1paxCents": p.price_1pax_cents,
            "price2plusCents": p.price_2plus_cents,
        }
        for p in partners
    ]), 200


@slots_bp.get("/public/partners/<slug>/slots")
def public_slots(slug):
    partner = Partner.query.filter_by(slug=slug).first()
    if partner is None or not partner.is_active:
        raise PartnerUnavailable("Partner not found or inactive")

    day = as_day(request.args.get("date") or utcnow().date().isoformat(), "date")
    start, end = day_bounds(day)
    start = max(start, utcnow())

    slots = []
    if start < end:
        slots = Slot.query.filter(
            Slot.partner_id == partner.id,
            Slot.status == SlotStatus.PUBLISHED,
            Slot.start_time >= start,
            Slot.start_time < end,
        ).order_by(Slot.start_time.asc()).all()
    return jsonify(ok=True, date=day.isoformat(), slots=[slot_view(s) for s in slots]), 200
