import pytest
from sqlalchemy import update

from conftest import add_payment, make_booking, make_partner, make_slot
from models import db
from models.audit_log import AuditLog
from models.booking import Booking, BookingStatus
from models.discount_code import DiscountCode
from models.payment import Payment, PaymentStatus
from models.slot import Slot, SlotStatus
from services.errors import Conflict, NotFound
from services.payment_ledger import ProviderPayment
from services.payments import PaymentAction, PaymentService


def reload(model, pk):
    return db.session.get(model, pk, populate_existing=True)


def service(gateway, **kw):
    kw.setdefault("notify", None)
    return PaymentService(db.session, gateway, **kw)


def pending_booking(deposit=750):
    partner = make_partner()
    slot = make_slot(partner, status=SlotStatus.BOOKED)
    return slot, make_booking(slot, deposit=deposit)


def test_start_creates_checkout_for_the_deposit(app, gateway):
    _, booking = pending_booking()

    payment, url = service(gateway).start_deposit_payment(booking.id)

    assert url == "https://checkout.test/cs_test_1"
    assert payment.amount_cents == 750
    assert payment.status == PaymentStatus.PENDING
    assert payment.provider_payment_id == "cs_test_1"
    assert AuditLog.query.filter_by(action="PAYMENT_SESSION_CREATED").count() == 1


def test_start_refuses_cancelled_or_paid_bookings(app, gateway):
    slot, paid = pending_booking()
    cancelled = make_booking(slot, status=BookingStatus.CANCELLED, email="bob@example.com")
    with pytest.raises(Conflict) as exc:
        service(gateway).start_deposit_payment(cancelled.id)
    assert exc.value.code == "BOOKING_NOT_PAYABLE"

    add_payment(paid, status=PaymentStatus.PAID)
    with pytest.raises(Conflict):
        service(gateway).start_deposit_payment(paid.id)

    with pytest.raises(NotFound):
        service(gateway).start_deposit_payment(9999)


def test_start_without_deposit_due_is_refused(app, gateway):
    _, booking = pending_booking(deposit=0)

    with pytest.raises(Conflict) as exc:
        service(gateway).start_deposit_payment(booking.id)
    assert exc.value.code == "NO_DEPOSIT_DUE"
    assert gateway.checkouts == {}


def test_paid_update_confirms_and_replay_is_harmless(app, gateway):
    slot, booking = pending_booking()
    payment, _ = service(gateway).start_deposit_payment(booking.id)
    paid = gateway.set_status(payment.provider_payment_id, PaymentStatus.PAID)

    first = service(gateway).apply_provider_update(paid)
    second = service(gateway).apply_provider_update(paid)

    assert first.action == PaymentAction.CONFIRMED
    assert second.action == PaymentAction.ALREADY_CONFIRMED
    refreshed = reload(Booking, booking.id)
    assert refreshed.status == BookingStatus.CONFIRMED
    assert refreshed.confirmed_at is not None
    assert refreshed.deposit_paid_at is not None
    assert reload(Slot, slot.id).status == SlotStatus.BOOKED
    assert AuditLog.query.filter_by(action="BOOKING_CONFIRMED").count() == 1


def test_confirmation_sends_notification_once(app, gateway):
    _, booking = pending_booking()
    payment, _ = service(gateway).start_deposit_payment(booking.id)
    paid = gateway.set_status(payment.provider_payment_id, PaymentStatus.PAID)
    sent = []

    def notify(messages):
        sent.append([to for to, _, _ in messages])
        return [(to, False, "Email not configured") for to, _, _ in messages]

    service(gateway, notify=notify).apply_provider_update(paid)
    service(gateway, notify=notify).apply_provider_update(paid)

    assert sent == [["anna@example.com", None]]


def test_confirmation_mail_is_sent_outside_a_transaction(app, gateway):
    _, booking = pending_booking()
    payment, _ = service(gateway).start_deposit_payment(booking.id)
    paid = gateway.set_status(payment.provider_payment_id, PaymentStatus.PAID)
    open_tx = []

    def notify(messages):
        open_tx.append(db.session().in_transaction())
        return []

    service(gateway, notify=notify).apply_provider_update(paid)

    assert open_tx == [False]


def test_late_payment_refund_runs_outside_a_transaction(app, gateway, monkeypatch):
    _, booking = pending_booking()
    payment, _ = service(gateway).start_deposit_payment(booking.id)
    db.session.execute(
        update(Booking).where(Booking.id == booking.id).values(status=BookingStatus.CANCELLED)
    )
    db.session.commit()
    open_tx = []
    refund = gateway.refund

    def tracking_refund(provider_payment_id, amount_cents=None):
        open_tx.append(db.session().in_transaction())
        return refund(provider_payment_id, amount_cents)

    monkeypatch.setattr(gateway, "refund", tracking_refund)

    outcome = service(gateway).apply_provider_update(
        gateway.set_status(payment.provider_payment_id, PaymentStatus.PAID)
    )

    assert outcome.action == PaymentAction.LATE_REFUNDED
    assert open_tx == [False]


def test_confirmation_redeems_the_discount_code(app, gateway):
    _, booking = pending_booking()
    code = DiscountCode(code="SUMMER", type="PERCENT", percent=10)
    db.session.add(code)
    db.session.commit()
    booking.discount_code_id = code.id
    db.session.commit()

    payment, _ = service(gateway).start_deposit_payment(booking.id)
    paid = gateway.set_status(payment.provider_payment_id, PaymentStatus.PAID)
    service(gateway).apply_provider_update(paid)
    service(gateway).apply_provider_update(paid)

    assert reload(DiscountCode, code.id).redeemed_count == 1


@pytest.mark.parametrize("status", [PaymentStatus.CANCELED, PaymentStatus.FAILED])
def test_terminal_unpaid_update_releases_the_hold(app, gateway, status):
    slot, booking = pending_booking()
    payment, _ = service(gateway).start_deposit_payment(booking.id)

    outcome = service(gateway).apply_provider_update(gateway.set_status(payment.provider_payment_id, status))

    assert outcome.action == PaymentAction.RELEASED
    assert reload(Booking, booking.id).status == BookingStatus.CANCELLED
    assert reload(Booking, booking.id).cancel_reason == f"PAYMENT_{status}"
    assert reload(Slot, slot.id).status == SlotStatus.PUBLISHED


def test_pending_update_only_records(app, gateway):
    _, booking = pending_booking()
    payment, _ = service(gateway).start_deposit_payment(booking.id)

    outcome = service(gateway).apply_provider_update(gateway.fetch(payment.provider_payment_id))

    assert outcome.action == PaymentAction.RECORDED
    assert outcome.booking_status == BookingStatus.PENDING


def test_failed_retry_does_not_undo_an_earlier_payment(app, gateway):
    _, booking = pending_booking()
    add_payment(booking, status=PaymentStatus.PAID, provider_payment_id="cs_first")
    db.session.execute(
        update(Booking).where(Booking.id == booking.id).values(status=BookingStatus.CONFIRMED)
    )
    db.session.commit()

    outcome = service(gateway).apply_provider_update(
        ProviderPayment(provider_payment_id="cs_retry", status=PaymentStatus.FAILED, booking_id=booking.id)
    )

    assert outcome.booking_status == BookingStatus.CONFIRMED
    assert reload(Booking, booking.id).status == BookingStatus.CONFIRMED


def test_paid_status_is_never_downgraded(app, gateway):
    _, booking = pending_booking()
    payment, _ = service(gateway).start_deposit_payment(booking.id)
    pid = payment.provider_payment_id
    service(gateway).apply_provider_update(gateway.set_status(pid, PaymentStatus.PAID))

    service(gateway).apply_provider_update(
        ProviderPayment(provider_payment_id=pid, status=PaymentStatus.CANCELED)
    )

    assert Payment.query.filter_by(provider_payment_id=pid).one().status == PaymentStatus.PAID
    assert reload(Booking, booking.id).status == BookingStatus.CONFIRMED


def test_late_payment_is_refunded_and_booking_stays_cancelled(app, gateway):
    slot, booking = pending_booking()
    payment, _ = service(gateway).start_deposit_payment(booking.id)
    db.session.execute(
        update(Booking).where(Booking.id == booking.id).values(status=BookingStatus.CANCELLED)
    )
    db.session.commit()

    outcome = service(gateway).apply_provider_update(
        gateway.set_status(payment.provider_payment_id, PaymentStatus.PAID)
    )

    assert outcome.action == PaymentAction.LATE_REFUNDED
    assert outcome.booking_status == BookingStatus.CANCELLED
    assert gateway.refunds == [(payment.provider_payment_id, 750)]
    stored = Payment.query.filter_by(provider_payment_id=payment.provider_payment_id).one()
    assert stored.status == PaymentStatus.REFUNDED
    assert stored.provider_refund_id == "re_test_1"
    assert AuditLog.query.filter_by(action="PAYMENT_LATE_REFUNDED").count() == 1


def test_late_payment_refund_failure_is_audited(app, gateway):
    _, booking = pending_booking()
    payment, _ = service(gateway).start_deposit_payment(booking.id)
    db.session.execute(
        update(Booking).where(Booking.id == booking.id).values(status=BookingStatus.CANCELLED)
    )
    db.session.commit()
    gateway.fail_refunds = True

    outcome = service(gateway).apply_provider_update(
        gateway.set_status(payment.provider_payment_id, PaymentStatus.PAID)
    )

    assert outcome.action == PaymentAction.LATE_REFUND_FAILED
    assert Payment.query.filter_by(provider_payment_id=payment.provider_payment_id).one().status == PaymentStatus.PAID
    assert AuditLog.query.filter_by(action="PAYMENT_LATE_REFUND_FAILED").count() == 1


def test_late_payment_is_only_recorded_when_refunds_are_off(app, gateway):
    _, booking = pending_booking()
    payment, _ = service(gateway).start_deposit_payment(booking.id)
    db.session.execute(
        update(Booking).where(Booking.id == booking.id).values(status=BookingStatus.CANCELLED)
    )
    db.session.commit()

    outcome = service(gateway, refund_late_payments=False).apply_provider_update(
        gateway.set_status(payment.provider_payment_id, PaymentStatus.PAID)
    )

    assert outcome.action == PaymentAction.LATE_RECORDED
    assert gateway.refunds == []


def test_unknown_payment_without_booking_is_not_found(app, gateway):
    with pytest.raises(NotFound) as exc:
        service(gateway).apply_provider_update(ProviderPayment(provider_payment_id="cs_nope", status="PAID"))
    assert exc.value.code == "PAYMENT_NOT_FOUND"


def test_refresh_pulls_status_from_gateway(app, gateway):
    _, booking = pending_booking()
    payment, _ = service(gateway).start_deposit_payment(booking.id)
    gateway.set_status(payment.provider_payment_id, PaymentStatus.PAID)

    view = service(gateway).refresh(booking.id)

    assert view["bookingStatus"] == BookingStatus.CONFIRMED
    assert view["confirmed"] is True
    assert view["paid"] is True
    assert view["paymentStatus"] == PaymentStatus.PAID
    assert view["payment"]["providerPaymentId"] == payment.provider_payment_id


def test_refresh_without_payment_just_reports(app, gateway):
    _, booking = pending_booking()

    view = service(gateway).refresh(booking.id)

    assert view["bookingStatus"] == BookingStatus.PENDING
    assert view["paid"] is False
    assert view["payment"] is None
