from flask import Blueprint, jsonify, g, request

from models import db
from security.rbac import require_roles
from services.discounts import DiscountService, serialize_discount
from services.errors import ValidationFailed
from utils.audit import log_event
from utils.params import as_datetime, as_int, json_body, require_actor

discounts_bp = Blueprint("discounts", __name__, url_prefix="/discounts")


def _service() -> DiscountService:
    return DiscountService(db.session, require_actor())


@discounts_bp.get("")
@require_roles("PARTNER")
def list_discounts():
    partner_id = as_int(request.args.get("partnerId"), "partnerId", required=False)
    rows = _service().list_codes(partner_id)
    return jsonify(ok=True, discounts=[serialize_discount(d) for d in rows]), 200


@discounts_bp.post("")
@require_roles("PARTNER")
def create_discount():
    data = json_body()
    discount = _service().create(
        code=data.get("code"),
        discount_type=(data.get("type") or "").strip().upper(),
        percent=as_int(data.get("percent"), "percent", required=False),
        amount_cents=as_int(data.get("amountCents"), "amountCents", required=False),
        partner_id=as_int(data.get("partnerId"), "partnerId", required=False),
        valid_from=as_datetime(data.get("validFrom"), "validFrom", required=False),
        valid_until=as_datetime(data.get("validUntil"), "validUntil", required=False),
        max_redemptions=as_int(data.get("maxRedemptions"), "maxRedemptions", required=False),
    )
    log_event("DISCOUNT_CREATE", user_id=g.user.id, entity="discount_code", entity_id=discount.id,
              metadata={"code": discount.code, "partner_id": discount.partner_id})
    return jsonify(ok=True, discount=serialize_discount(discount)), 201


@discounts_bp.post("/<int:discount_id>/toggle")
@require_roles("PARTNER")
def toggle_discount(discount_id: int):
    data = json_body()
    active = data.get("active")
    if not isinstance(active, bool):
        raise ValidationFailed("active must be a boolean", code="INVALID_FIELD")

    discount = _service().set_active(discount_id, active)
    log_event("DISCOUNT_TOGGLE", user_id=g.user.id, entity="discount_code", entity_id=discount.id,
              metadata={"active": active})
    return jsonify(ok=True, discount=serialize_discount(discount)), 200


@discounts_bp.delete("/<int:discount_id>")
@require_roles("PARTNER")
def delete_discount(discount_id: int):
    deleted = _service().delete(discount_id)
    if deleted:
        log_event("DISCOUNT_DELETE", user_id=g.user.id, entity="discount_code", entity_id=discount_id)
    return jsonify(ok=True, deleted=deleted), 200
