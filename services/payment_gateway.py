"""
Stripe Checkout adapter.

The rest of the code only sees ``ProviderPayment`` values; the checkout
session id is the provider payment id. Nothing here touches the database.
"""
import json
from datetime import datetime, timedelta, timezone
from typing import Optional

import stripe
from flask import current_app

from models.payment import PaymentStatus
from services.errors import PaymentGatewayError, ValidationFailed
from services.payment_ledger import ProviderPayment

# Stripe refuses checkout expiries shorter than this
MIN_CHECKOUT_MINUTES = 30

HANDLED_EVENTS = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
)


def _field(obj, name, default=None):
    try:
        value = obj[name]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def map_checkout_status(checkout, event_type: Optional[str] = None) -> str:
    if event_type == "checkout.session.async_payment_failed":
        return PaymentStatus.FAILED
    status = _field(checkout, "status")
    payment_status = _field(checkout, "payment_status")
    if status == "expired":
        return PaymentStatus.CANCELED
    if status == "complete" and payment_status in ("paid", "no_payment_required"):
        return PaymentStatus.PAID
    return PaymentStatus.PENDING


def to_provider_payment(checkout, event_type: Optional[str] = None) -> ProviderPayment:
    metadata = _field(checkout, "metadata", {}) or {}
    booking_id = _field(metadata, "booking_id")
    methods = _field(checkout, "payment_method_types", []) or []
    status = map_checkout_status(checkout, event_type)
    currency = _field(checkout, "currency")
    return ProviderPayment(
        provider_payment_id=_field(checkout, "id"),
        status=status,
        booking_id=int(booking_id) if booking_id and str(booking_id).isdigit() else None,
        method=methods[0] if methods else None,
        amount_cents=_field(checkout, "amount_total"),
        currency=currency.upper() if currency else None,
        paid_at=datetime.now(timezone.utc).replace(tzinfo=None) if status == PaymentStatus.PAID else None,
        checkout_url=_field(checkout, "url"),
        provider_charge_id=_field(checkout, "payment_intent"),
    )


class StripeGateway:
    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str],
                 success_url: Optional[str], cancel_url: Optional[str]):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.success_url = success_url
        self.cancel_url = cancel_url

    def _require_key(self):
        if not self.api_key:
            raise PaymentGatewayError("Stripe secret key missing (STRIPE_SECRET_KEY)",
                                      code="PAYMENT_PROVIDER_NOT_CONFIGURED")

    def create_checkout(self, booking_id: int, amount_cents: int, currency: str,
                        description: str, customer_email: Optional[str] = None) -> ProviderPayment:
        self._require_key()
        if not self.success_url or not self.cancel_url:
            raise PaymentGatewayError("Stripe success/cancel URLs not configured",
                                      code="PAYMENT_PROVIDER_NOT_CONFIGURED")
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=MIN_CHECKOUT_MINUTES + 1)
        try:
            checkout = stripe.checkout.Session.create(
                api_key=self.api_key,
                mode="payment",
                line_items=[{
                    "price_data": {
                        "currency": currency.lower(),
                        "product_data": {"name": description},
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }],
                customer_email=customer_email or None,
                success_url=self.success_url.replace("{BOOKING_ID}", str(booking_id)),
                cancel_url=self.cancel_url.replace("{BOOKING_ID}", str(booking_id)),
                expires_at=int(expires_at.timestamp()),
                metadata={"booking_id": str(booking_id)},
            )
        except stripe.StripeError as exc:
            current_app.logger.warning("Stripe checkout creation failed for booking %s: %s", booking_id, exc)
            raise PaymentGatewayError("Could not create payment") from exc
        return to_provider_payment(checkout)

    def fetch(self, provider_payment_id: str) -> ProviderPayment:
        self._require_key()
        try:
            checkout = stripe.checkout.Session.retrieve(provider_payment_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            raise PaymentGatewayError("Could not fetch payment status") from exc
        return to_provider_payment(checkout)

    def refund(self, provider_payment_id: str, amount_cents: Optional[int] = None) -> str:
        """Refunds the charge behind a checkout session. Returns the refund id."""
        self._require_key()
        try:
            checkout = stripe.checkout.Session.retrieve(provider_payment_id, api_key=self.api_key)
            payment_intent = _field(checkout, "payment_intent")
            if not payment_intent:
                raise PaymentGatewayError("Checkout has no payment to refund", code="REFUND_NOT_POSSIBLE")
            params = {"payment_intent": payment_intent}
            if amount_cents:
                params["amount"] = amount_cents
            refund = stripe.Refund.create(api_key=self.api_key, **params)
        except stripe.StripeError as exc:
            raise PaymentGatewayError("Refund failed") from exc
        return refund["id"]

    def parse_webhook(self, payload: bytes, signature: Optional[str]):
        """
        Verifies the signature and returns (event_type, ProviderPayment or None).
        Events this service does not act on come back with None.
        """
        if not self.webhook_secret:
            raise PaymentGatewayError("Webhook secret not configured", code="PAYMENT_PROVIDER_NOT_CONFIGURED")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise ValidationFailed("Invalid webhook signature", code="INVALID_SIGNATURE") from exc

        event = json.loads(payload)
        event_type = event.get("type")
        if event_type not in HANDLED_EVENTS:
            return event_type, None
        checkout = (event.get("data") or {}).get("object") or {}
        return event_type, to_provider_payment(checkout, event_type)


def gateway_from_config(config) -> StripeGateway:
    return StripeGateway(
        api_key=config.get("STRIPE_SECRET_KEY"),
        webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
        success_url=config.get("STRIPE_SUCCESS_URL"),
        cancel_url=config.get("STRIPE_CANCEL_URL"),
    )


def get_gateway():
    return current_app.extensions["payment_gateway"]
