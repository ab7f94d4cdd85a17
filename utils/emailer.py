import smtplib
from email.message import EmailMessage

from flask import current_app


def send_email(to_email: str, subject: str, body: str):
    host = current_app.config.get("SMTP_HOST")
    port = current_app.config.get("SMTP_PORT", 587)
    username = current_app.config.get("SMTP_USERNAME")
    password = current_app.config.get("SMTP_PASSWORD")
    from_email = current_app.config.get("SMTP_FROM_EMAIL") or username
    use_tls = current_app.config.get("SMTP_USE_TLS", True)

    if not host or not from_email:
        return False, "Email not configured"
    if not to_email:
        return False, "No recipient"

    msg = EmailMessage()
    msg["From"] = from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    try:
        with smtplib.SMTP(host, port, timeout=10) as server:
            if use_tls:
                server.starttls()
            if username and password:
                server.login(username, password)
            server.send_message(msg)
        return True, None
    except (smtplib.SMTPException, OSError) as exc:
        return False, str(exc)


def _euros(cents: int) -> str:
    return f"{cents // 100},{cents % 100:02d}"


def booking_confirmation_messages(booking):
    """(recipient, subject, body) for the customer and the partner. Reads the booking's relations."""
    slot = booking.slot
    partner = booking.partner
    when = slot.start_time.strftime("%d-%m-%Y %H:%M") if slot else "-"
    currency = booking.currency

    customer_body = (
        f"Your booking #{booking.id} at {partner.name} is confirmed.\n\n"
        f"When: {when} (UTC)\n"
        f"Players: {booking.players_count}\n"
        f"Deposit paid: {currency} {_euros(booking.deposit_amount_cents)}\n"
        f"Still due on site: {currency} {_euros(booking.rest_amount_cents)}\n"
    )
    partner_body = (
        f"New confirmed booking #{booking.id}.\n\n"
        f"When: {when} (UTC)\n"
        f"Customer: {booking.customer.name or '-'} <{booking.customer.email}>\n"
        f"Players: {booking.players_count}\n"
        f"To collect on site: {currency} {_euros(booking.rest_amount_cents)}\n"
    )
    return [
        (booking.customer.email, f"Booking confirmed: {partner.name}", customer_body),
        (partner.email, f"New booking #{booking.id}", partner_body),
    ]


def send_messages(messages):
    """Sends prepared messages. Returns a list of (recipient, ok, error)."""
    results = []
    for to_email, subject, body in messages:
        ok, err = send_email(to_email, subject, body)
        results.append((to_email, ok, err))
    return results
