from html import escape

from flask import Blueprint, request, current_app

from services.errors import ServiceError
from routes.payments import payment_service

pay_pages_bp = Blueprint("pay_pages", __name__)

PAGE = """
    <html>
      <head><title>{title}</title></head>
      <body style="font-family: system-ui; max-width: 720px; margin: 40px auto;">
        <h1>{title}</h1>
        <p>{message}</p>
        <a href="{link}" style="display: inline-block; padding: 12px 18px; background: #0ea5e9; color: white; text-decoration: none; border-radius: 8px; font-weight: 600;">Back to booking</a>
      </body>
    </html>
"""


def _page(title: str, message: str, booking_id):
    base_url = current_app.config.get("FRONTEND_BASE_URL", "http://localhost:5173").rstrip("/")
    link = f"{base_url}/booking/{booking_id}" if booking_id else base_url
    return PAGE.format(title=escape(title), message=escape(message), link=escape(link))


@pay_pages_bp.get("/pay/success")
def pay_success():
    # Stripe redirects here; the webhook may not have arrived yet, so ask the gateway
    booking_id = request.args.get("booking_id", type=int)
    if not booking_id:
        return _page("Payment received", "Your booking will be confirmed shortly.", None), 200

    try:
        projection = payment_service().refresh(booking_id)
    except ServiceError as exc:
        current_app.logger.warning("Return page refresh for booking %s failed: %s", booking_id, exc.code)
        return _page("Payment received", "Your booking will be confirmed shortly.", booking_id), 200

    if projection["confirmed"]:
        return _page("Booking confirmed", "Your deposit was paid and your booking is confirmed.", booking_id), 200
    if projection["bookingStatus"] == "CANCELLED":
        return _page("Booking expired",
                     "Your reservation expired before the payment completed. Any deposit will be refunded.",
                     booking_id), 200
    return _page("Payment processing", "We are waiting for the payment provider. Check back in a minute.",
                 booking_id), 200


@pay_pages_bp.get("/pay/cancel")
def pay_cancel():
    booking_id = request.args.get("booking_id", type=int)
    return _page("Payment cancelled",
                 "No payment was taken. Your slot stays reserved for a short while if you want to try again.",
                 booking_id), 200
