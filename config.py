import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite file next to the app unless DATABASE_URL points elsewhere
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "slotbook.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Session cookie name for our auth token
    AUTH_COOKIE_NAME = "slotbook_session"

    # 8 hours session lifetime
    SESSION_LIFETIME_SECONDS = 8 * 60 * 60

    # Idle timeout: 20 minutes
    IDLE_TIMEOUT_SECONDS = 20 * 60

    # Session/cookie security defaults
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = _env_bool("SESSION_COOKIE_SECURE", "false")  # True behind HTTPS

    BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

    # Booking
    PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "EUR")
    UNPAID_BOOKING_TTL_MINUTES = int(os.getenv("UNPAID_BOOKING_TTL_MINUTES", "30"))
    ALLOW_DRAFT_BOOKING = _env_bool("ALLOW_DRAFT_BOOKING", "false")
    DEFAULT_SLOT_DURATION_MINUTES = int(os.getenv("DEFAULT_SLOT_DURATION_MINUTES", "60"))
    # Refund deposits that arrive after the hold was released
    REFUND_LATE_PAYMENTS = _env_bool("REFUND_LATE_PAYMENTS", "true")

    # Shared secret for the cron job calling /maintenance/reconcile-unpaid
    MAINTENANCE_SECRET = os.getenv("MAINTENANCE_SECRET")

    # Stripe; {BOOKING_ID} in the URLs is replaced per checkout
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_SUCCESS_URL = os.getenv(
        "STRIPE_SUCCESS_URL", "http://127.0.0.1:5002/pay/success?booking_id={BOOKING_ID}"
    )
    STRIPE_CANCEL_URL = os.getenv(
        "STRIPE_CANCEL_URL", "http://127.0.0.1:5002/pay/cancel?booking_id={BOOKING_ID}"
    )

    FRONTEND_BASE_URL = os.getenv("FRONTEND_BASE_URL", "http://localhost:5173")

    # Email (SMTP)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_USE_TLS = _env_bool("SMTP_USE_TLS", "true")

    # Basic app settings
    DEBUG = False
