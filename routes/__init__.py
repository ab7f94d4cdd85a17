from routes.health import health_bp
from routes.auth import auth_bp
from routes.admin import admin_bp
from routes.audit_logs import audit_bp
from routes.slots import slots_bp
from routes.booking import booking_bp
from routes.discounts import discounts_bp
from routes.payments import payments_bp
from routes.pay_pages import pay_pages_bp
from routes.stripe_webhook import webhook_bp
from routes.maintenance import maintenance_bp

ALL_BLUEPRINTS = (
    health_bp,
    auth_bp,
    admin_bp,
    audit_bp,
    slots_bp,
    booking_bp,
    discounts_bp,
    payments_bp,
    pay_pages_bp,
    webhook_bp,
    maintenance_bp,
)
