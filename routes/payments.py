from flask import Blueprint, jsonify, current_app

from models import db
from services.payment_gateway import get_gateway
from services.payments import PaymentService
from utils.params import as_int, json_body

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")


def payment_service() -> PaymentService:
    return PaymentService(
        db.session,
        get_gateway(),
        refund_late_payments=current_app.config.get("REFUND_LATE_PAYMENTS", True),
    )


@payments_bp.post("/start")
def start_payment():
    data = json_body()
    booking_id = as_int(data.get("bookingId"), "bookingId")

    payment, checkout_url = payment_service().start_deposit_payment(booking_id)
    return jsonify(
        ok=True,
        bookingId=booking_id,
        paymentId=payment.id,
        providerPaymentId=payment.provider_payment_id,
        checkoutUrl=checkout_url,
    ), 200


@payments_bp.post("/refresh")
def refresh_payment():
    data = json_body()
    booking_id = as_int(data.get("bookingId"), "bookingId")
    resp = jsonify(payment_service().refresh(booking_id))
    resp.headers["Cache-Control"] = "no-store"
    return resp, 200
