from flask import Blueprint, request, jsonify, current_app

from models import db
from services import pricing
from services.discounts import DiscountService
from services.errors import PartnerUnavailable, ValidationFailed
from services.payment_ledger import PaymentLedger, status_projection
from services.reservations import BookingRequest, ReservationService, booking_view
from utils.audit import log_event
from utils.params import as_datetime, as_int, json_body

booking_bp = Blueprint("booking", __name__, url_prefix="/booking")


def _reservations() -> ReservationService:
    return ReservationService(
        db.session,
        allow_draft_booking=current_app.config.get("ALLOW_DRAFT_BOOKING", False),
        currency=current_app.config.get("PAYMENT_CURRENCY", "EUR"),
    )


def _partner_ref(value):
    """partnerId may be the numeric id or the partner slug."""
    if isinstance(value, str) and value.strip() and not value.strip().isdigit():
        return None, value
    return as_int(value, "partnerId"), None


def _players(data) -> int:
    players = data.get("playersCount")
    if isinstance(players, str) and players.strip().isdigit():
        players = int(players)
    return pricing.validate_players(players)


# ---------- PUBLIC: quote ----------
@booking_bp.post("/price")
def price():
    data = json_body()
    partner_id, slug = _partner_ref(data.get("partnerId"))
    # accepted for time-dependent pricing; the price does not depend on it yet
    as_datetime(data.get("startTimeISO"), "startTimeISO")
    players = _players(data)

    partner = _reservations().find_partner(partner_id, slug)
    if partner is None or not partner.is_active:
        raise PartnerUnavailable("Partner not found or inactive")

    discount_amount = 0
    code = (data.get("discountCode") or "").strip()
    if code:
        discounts = DiscountService(db.session)
        discount = discounts.find_applicable(code, partner.id)
        total = pricing.total_cents(partner.price_1pax_cents, partner.price_2plus_cents, players)
        discount_amount = pricing.discount_cents(total, discount)

    quote = pricing.quote_for_partner(partner, players, discount_amount)
    resp = jsonify(
        ok=True,
        partner={"id": partner.id, "feePercent": partner.fee_percent},
        pricing=quote.to_dict(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp, 200


# ---------- PUBLIC: booking flow ----------
@booking_bp.post("/create")
def create_booking():
    data = json_body()
    partner_id, slug = _partner_ref(data.get("partnerId") or data.get("partnerSlug"))
    customer = data.get("customer") or {}
    if not isinstance(customer, dict):
        raise ValidationFailed("customer must be an object", code="INVALID_FIELD")

    req = BookingRequest(
        players_count=_players(data),
        customer_email=customer.get("email") or "",
        partner_id=partner_id,
        partner_slug=slug,
        customer_name=customer.get("name"),
        customer_phone=customer.get("phone"),
        locale=(data.get("locale") or "nl")[:5],
        slot_id=as_int(data.get("slotId"), "slotId", required=False),
        start_time=as_datetime(data.get("startTimeISO"), "startTimeISO", required=False),
    )
    booking = _reservations().create_booking(req)
    log_event("BOOKING_CREATE", entity="booking", entity_id=booking.id,
              metadata={"slot_id": booking.slot_id, "partner_id": booking.partner_id})
    return jsonify(ok=True, booking=booking_view(booking)), 201


@booking_bp.get("/<int:booking_id>")
def get_booking(booking_id):
    booking = _reservations().get(booking_id)
    return jsonify(ok=True, booking=booking_view(booking)), 200


@booking_bp.get("/<int:booking_id>/status")
def booking_status(booking_id):
    booking = _reservations().get(booking_id)
    resp = jsonify(status_projection(booking, PaymentLedger(db.session)))
    resp.headers["Cache-Control"] = "no-store"
    return resp, 200


@booking_bp.get("/status")
def booking_status_by_query():
    booking_id = as_int(request.args.get("bookingId"), "bookingId")
    return booking_status(booking_id)


@booking_bp.post("/<int:booking_id>/apply-discount")
def apply_discount(booking_id):
    data = json_body()
    code = data.get("code")
    if not isinstance(code, str) or not code.strip():
        raise ValidationFailed("code is required", code="MISSING_FIELD")

    booking = DiscountService(db.session).apply_to_booking(booking_id, code)
    log_event("BOOKING_DISCOUNT_APPLIED", entity="booking", entity_id=booking.id,
              metadata={"code": booking.discount_code.code if booking.discount_code else None})
    return jsonify(ok=True, booking=booking_view(booking)), 200


@booking_bp.post("/<int:booking_id>/remove-discount")
def remove_discount(booking_id):
    booking = DiscountService(db.session).remove_from_booking(booking_id)
    log_event("BOOKING_DISCOUNT_REMOVED", entity="booking", entity_id=booking.id)
    return jsonify(ok=True, booking=booking_view(booking)), 200


@booking_bp.post("/<int:booking_id>/cancel")
def cancel_booking(booking_id):
    result = _reservations().cancel(booking_id)
    log_event("BOOKING_CANCEL", entity="booking", entity_id=booking_id,
              metadata={"reason": result.reason})
    return jsonify(ok=True, changed=result.changed, reason=result.reason), 200
