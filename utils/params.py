"""Small request-body helpers shared by the blueprints. Failures raise ValidationFailed."""
from flask import g, request

from services.errors import Forbidden, Unauthorized, ValidationFailed
from utils.auth_context import current_actor
from utils.clock import parse_day, parse_hhmm, parse_iso


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationFailed("JSON object expected", code="INVALID_BODY")
    return data


def as_int(value, name: str, required: bool = True):
    """Accepts ints and numeric strings."""
    if value is None or value == "":
        if required:
            raise ValidationFailed(f"{name} is required", code="MISSING_FIELD")
        return None
    if isinstance(value, bool):
        raise ValidationFailed(f"{name} must be an integer", code="INVALID_FIELD")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValidationFailed(f"{name} must be an integer", code="INVALID_FIELD")


def as_id_list(value, name: str) -> list:
    if not isinstance(value, list) or not value:
        raise ValidationFailed(f"{name} must be a non-empty list", code="INVALID_FIELD")
    return [as_int(v, name) for v in value]


def as_datetime(value, name: str, required: bool = True):
    if not value:
        if required:
            raise ValidationFailed(f"{name} is required", code="MISSING_FIELD")
        return None
    try:
        return parse_iso(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{name} must be an ISO 8601 datetime", code="INVALID_DATETIME")


def as_day(value, name: str):
    if not isinstance(value, str):
        raise ValidationFailed(f"{name} must be YYYY-MM-DD", code="INVALID_DATE")
    try:
        return parse_day(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{name} must be YYYY-MM-DD", code="INVALID_DATE")


def as_time(value, name: str):
    if not isinstance(value, str):
        raise ValidationFailed(f"{name} must be HH:MM", code="INVALID_TIME")
    try:
        return parse_hhmm(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{name} must be HH:MM", code="INVALID_TIME")


def require_actor():
    """Actor of the logged-in partner/admin user."""
    actor = current_actor()
    if actor is None:
        if getattr(g, "user", None) is None:
            raise Unauthorized("Authentication required")
        raise Forbidden("Partner or admin role required")
    return actor


def resolve_partner_id(actor, requested) -> int:
    """Partners act on their own partner; admins name one explicitly."""
    partner_id = as_int(requested, "partnerId", required=actor.is_admin)
    if partner_id is None:
        partner_id = actor.partner_id
    actor.require_partner(partner_id)
    return partner_id
