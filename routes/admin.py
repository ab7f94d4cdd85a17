import re

from flask import Blueprint, jsonify, g, request
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from security.rbac import require_roles
from utils.audit import log_event
from models import db
from models.user import User, Role
from models.partner import Partner
from models.slot import Slot, SlotStatus
from models.booking import Booking, BookingStatus
from services.errors import Conflict, NotFound, ValidationFailed
from services.payment_ledger import PaymentLedger
from utils.clock import day_bounds
from utils.params import as_day, as_int, json_body, require_actor
from utils.roles import filter_role_names

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")

PARTNER_INT_FIELDS = {
    "price1PaxCents": "price_1pax_cents",
    "price2PlusCents": "price_2plus_cents",
    "feePercent": "fee_percent",
}
PARTNER_TEXT_FIELDS = {"name": "name", "email": "email", "city": "city"}


def slugify(value: str) -> str:
    value = re.sub(r"['\"]", "", (value or "").strip().lower())
    return re.sub(r"[^a-z0-9]+", "-", value).strip("-")


def partner_view(p: Partner) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "slug": p.slug,
        "email": p.email,
        "city": p.city,
        "isActive": p.is_active,
        "price1PaxCents": p.price_1pax_cents,
        "price2PlusCents": p.price_2plus_cents,
        "feePercent": p.fee_percent,
        "createdAt": p.created_at.isoformat(),
    }


def _apply_partner_fields(partner: Partner, data: dict) -> None:
    for key, attr in PARTNER_TEXT_FIELDS.items():
        if key in data:
            value = data[key]
            if value is not None and not isinstance(value, str):
                raise ValidationFailed(f"{key} must be a string", code="INVALID_FIELD")
            value = (value or "").strip() or None
            if key == "email" and value:
                value = value.lower()
            setattr(partner, attr, value)

    for key, attr in PARTNER_INT_FIELDS.items():
        if key in data:
            value = as_int(data[key], key)
            if value < 0:
                raise ValidationFailed(f"{key} must not be negative", code="INVALID_FIELD")
            setattr(partner, attr, value)

    if "isActive" in data:
        if not isinstance(data["isActive"], bool):
            raise ValidationFailed("isActive must be a boolean", code="INVALID_FIELD")
        partner.is_active = data["isActive"]

    if partner.fee_percent is not None and not 0 <= partner.fee_percent <= 100:
        raise ValidationFailed("feePercent must be between 0 and 100", code="INVALID_FIELD")
    if not partner.name or len(partner.name) < 2:
        raise ValidationFailed("name must be at least 2 characters", code="INVALID_FIELD")


def _scoped_partner_id():
    """PARTNER users see their own partner; admins may filter by ?partnerId."""
    actor = require_actor()
    if actor.is_admin:
        return as_int(request.args.get("partnerId"), "partnerId", required=False)
    return actor.partner_id


# ---------- dashboard / agenda ----------
@admin_bp.get("/dashboard")
@require_roles("PARTNER")
def dashboard():
    partner_id = _scoped_partner_id()

    slot_q = db.session.query(Slot.status, func.count(Slot.id)).group_by(Slot.status)
    booking_q = db.session.query(Booking.status, func.count(Booking.id)).group_by(Booking.status)
    if partner_id is not None:
        slot_q = slot_q.filter(Slot.partner_id == partner_id)
        booking_q = booking_q.filter(Booking.partner_id == partner_id)

    slots = {s: 0 for s in SlotStatus.ALL}
    slots.update(dict(slot_q.all()))
    bookings = {s: 0 for s in BookingStatus.ALL}
    bookings.update(dict(booking_q.all()))

    return jsonify(ok=True, partnerId=partner_id, slots=slots, bookings=bookings), 200


@admin_bp.get("/bookings")
@require_roles("PARTNER")
def agenda():
    partner_id = _scoped_partner_id()
    status = request.args.get("status")
    date_str = request.args.get("date")  # YYYY-MM-DD
    limit = max(1, min(request.args.get("limit", type=int) or 200, 500))

    q = Booking.query.join(Slot, Booking.slot_id == Slot.id)
    if partner_id is not None:
        q = q.filter(Booking.partner_id == partner_id)
    if status:
        if status not in BookingStatus.ALL:
            raise ValidationFailed("Unknown status", code="INVALID_STATUS")
        q = q.filter(Booking.status == status)
    if date_str:
        start, end = day_bounds(as_day(date_str, "date"))
        q = q.filter(Slot.start_time >= start, Slot.start_time < end)

    rows = q.order_by(Slot.start_time.asc()).limit(limit).all()
    ledger = PaymentLedger(db.session)
    out = []
    for b in rows:
        latest = ledger.latest_payment(b.id)
        out.append({
            "id": b.id,
            "partnerId": b.partner_id,
            "slotId": b.slot_id,
            "startTime": b.slot.start_time.isoformat(),
            "status": b.status,
            "playersCount": b.players_count,
            "customer": {"name": b.customer.name, "email": b.customer.email, "phone": b.customer.phone},
            "totalAmountCents": b.total_amount_cents,
            "discountAmountCents": b.discount_amount_cents,
            "depositAmountCents": b.deposit_amount_cents,
            "restAmountCents": b.rest_amount_cents,
            "paymentStatus": latest.status if latest else None,
            "createdAt": b.created_at.isoformat(),
        })
    return jsonify(ok=True, bookings=out), 200


# ---------- ADMIN: partners ----------
@admin_bp.get("/partners")
@require_roles("ADMIN")
def list_partners():
    rows = Partner.query.order_by(Partner.name.asc()).all()
    return jsonify(ok=True, partners=[partner_view(p) for p in rows]), 200


@admin_bp.post("/partners")
@require_roles("ADMIN")
def create_partner():
    data = json_body()
    slug = slugify(data.get("slug") or data.get("name") or "")
    if len(slug) < 2:
        raise ValidationFailed("slug must be at least 2 characters", code="INVALID_FIELD")

    partner = Partner(slug=slug, is_active=True)
    _apply_partner_fields(partner, data)
    db.session.add(partner)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise Conflict("Slug already in use", code="SLUG_TAKEN")

    log_event("PARTNER_CREATE", user_id=g.user.id, entity="partner", entity_id=partner.id)
    return jsonify(ok=True, partner=partner_view(partner)), 201


@admin_bp.patch("/partners/<int:partner_id>")
@require_roles("ADMIN")
def update_partner(partner_id: int):
    partner = db.session.get(Partner, partner_id)
    if partner is None:
        raise NotFound("Partner not found", code="PARTNER_NOT_FOUND")

    data = json_body()
    if "slug" in data:
        slug = slugify(data.get("slug"))
        if len(slug) < 2:
            raise ValidationFailed("slug must be at least 2 characters", code="INVALID_FIELD")
        partner.slug = slug
    _apply_partner_fields(partner, data)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise Conflict("Slug already in use", code="SLUG_TAKEN")

    log_event("PARTNER_UPDATE", user_id=g.user.id, entity="partner", entity_id=partner.id,
              metadata={"fields": sorted(data.keys())})
    return jsonify(ok=True, partner=partner_view(partner)), 200


# ---------- ADMIN: users ----------
@admin_bp.get("/users")
@require_roles("ADMIN")
def list_users():
    role_filter = (request.args.get("role") or "").strip().upper()
    q = User.query
    if role_filter:
        q = q.join(User.roles).filter(Role.name == role_filter)

    users = q.order_by(User.created_at.desc()).limit(200).all()
    return jsonify(ok=True, users=[
        {
            "id": u.id,
            "email": u.email,
            "fullName": u.full_name,
            "roles": filter_role_names(u.roles),
            "partnerId": u.partner_id,
            "createdAt": u.created_at.isoformat(),
        }
        for u in users
    ]), 200


@admin_bp.post("/users/<int:user_id>/roles")
@require_roles("ADMIN")
def update_user_roles(user_id: int):
    data = json_body()
    roles = data.get("roles")
    if not isinstance(roles, list) or not roles:
        raise ValidationFailed("roles must be a non-empty list", code="INVALID_FIELD")

    role_names = sorted({r.strip().upper() for r in roles if isinstance(r, str) and r.strip()})
    if not role_names:
        raise ValidationFailed("roles must include valid role names", code="INVALID_FIELD")

    user = db.session.get(User, user_id)
    if not user:
        raise NotFound("User not found", code="USER_NOT_FOUND")

    available_roles = Role.query.filter(Role.name.in_(role_names)).all()
    missing = set(role_names) - {r.name for r in available_roles}
    if missing:
        raise ValidationFailed("Unknown role(s)", code="UNKNOWN_ROLE", details={"missing": sorted(missing)})

    partner_id = as_int(data.get("partnerId"), "partnerId", required=False)
    if partner_id is not None:
        if db.session.get(Partner, partner_id) is None:
            raise NotFound("Partner not found", code="PARTNER_NOT_FOUND")
        user.partner_id = partner_id
    if "PARTNER" in role_names and not user.partner_id:
        raise ValidationFailed("PARTNER users need a partnerId", code="PARTNER_REQUIRED")

    if user.id == g.user.id and "ADMIN" not in role_names:
        raise ValidationFailed("Cannot remove your own ADMIN role", code="SELF_DEMOTION")

    user.roles = available_roles
    db.session.commit()

    log_event("ADMIN_UPDATE_ROLES", user_id=g.user.id, entity="user", entity_id=user.id,
              metadata={"roles": role_names, "partner_id": user.partner_id})
    return jsonify(ok=True, roles=filter_role_names(role_names), partnerId=user.partner_id), 200
