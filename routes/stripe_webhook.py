from flask import Blueprint, request, jsonify, current_app

from services.errors import NotFound
from services.payment_gateway import get_gateway
from routes.payments import payment_service

webhook_bp = Blueprint("webhook", __name__, url_prefix="/webhooks")


@webhook_bp.post("/stripe")
def stripe_webhook():
    sig_header = request.headers.get("Stripe-Signature")
    # signature check needs the raw body
    event_type, update = get_gateway().parse_webhook(request.get_data(), sig_header)
    if update is None:
        return jsonify(received=True, handled=False), 200

    try:
        outcome = payment_service().apply_provider_update(update)
    except NotFound:
        # checkout not created by this service; acknowledge so Stripe stops retrying
        current_app.logger.warning("Webhook %s for unknown checkout %s", event_type, update.provider_payment_id)
        return jsonify(received=True, handled=False), 200

    return jsonify(received=True, handled=True, action=outcome.action), 200
