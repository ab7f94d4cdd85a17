import secrets

from flask import Blueprint, request, jsonify, current_app, g

from models import db
from services.actor import Actor
from services.errors import Forbidden, Unauthorized
from services.reconciliation import BookingReconciler
from utils.audit import log_event
from utils.auth_context import current_actor

maintenance_bp = Blueprint("maintenance", __name__, url_prefix="/maintenance")

SECRET_HEADER = "X-Maintenance-Secret"


def _maintenance_actor() -> Actor:
    """Cron callers present the shared secret; people must be logged-in admins."""
    expected = current_app.config.get("MAINTENANCE_SECRET")
    given = request.headers.get(SECRET_HEADER)
    if given:
        if expected and secrets.compare_digest(given, expected):
            return Actor.system()
        raise Unauthorized("Invalid maintenance secret")

    actor = current_actor()
    if actor is None:
        if getattr(g, "user", None) is None:
            raise Unauthorized("Authentication required")
        raise Forbidden("Admin role required")
    if not actor.is_admin:
        raise Forbidden("Admin role required")
    return actor


@maintenance_bp.post("/reconcile-unpaid")
def reconcile_unpaid():
    actor = _maintenance_actor()
    summary = BookingReconciler(
        db.session, actor,
        ttl_minutes=current_app.config.get("UNPAID_BOOKING_TTL_MINUTES", 30),
    ).run()

    log_event("RECONCILE_UNPAID", user_id=actor.user_id, metadata=summary.to_dict())
    return jsonify(summary.to_dict()), 200
