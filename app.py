import logging

import click
from flask import Flask, request, g, jsonify
from flask_migrate import Migrate
from sqlalchemy import inspect
from werkzeug.exceptions import HTTPException

from config import Config
from routes import ALL_BLUEPRINTS

from models import db
from models.user import User
from models.partner import Partner
from services.actor import Actor
from services.errors import ServiceError
from services.payment_gateway import gateway_from_config
from services.reconciliation import BookingReconciler
from utils.seed import seed_roles, get_or_create_role
from utils.auth_context import load_current_user
from security.csrf import require_csrf
from security.password import hash_password

CSRF_EXEMPT_PATHS = {
    "/auth/login",
    "/health",
    "/webhooks/stripe",
}


def create_app(config_object=None):
    app = Flask(__name__)
    app.config.from_object(config_object or Config)
    app.logger.setLevel(logging.DEBUG if app.config.get("DEBUG") else logging.INFO)

    # Register routes
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    # Stripe adapter; tests swap in a fake
    app.extensions["payment_gateway"] = gateway_from_config(app.config)

    # Seed default roles once the schema exists (safe & idempotent)
    with app.app_context():
        if inspect(db.engine).has_table("roles"):
            seed_roles()

    @app.before_request
    def _load_user():
        load_current_user()

    @app.before_request
    def _csrf_protect():
        # Only protect state-changing requests
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            if request.path in CSRF_EXEMPT_PATHS:
                return None

            # Only enforce CSRF if user is already authenticated (cookie session)
            if getattr(g, "user", None) is not None:
                failure = require_csrf()
                if failure:
                    return failure

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        if resp.mimetype == "application/json":
            resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_error_handlers(app)
    register_cli(app)

    return app


def register_error_handlers(app):
    @app.errorhandler(ServiceError)
    def _service_error(exc: ServiceError):
        db.session.rollback()
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(HTTPException)
    def _http_error(exc: HTTPException):
        code = (exc.name or "error").upper().replace(" ", "_")
        return jsonify(ok=False, error=code, message=exc.description), exc.code

    @app.errorhandler(Exception)
    def _unexpected(exc: Exception):
        db.session.rollback()
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        body = {"ok": False, "error": "INTERNAL_ERROR"}
        if app.debug:
            body["message"] = str(exc)
        return jsonify(body), 500


#-------------------------
def register_cli(app):
    @app.cli.command("create-user")
    @click.argument("email")
    @click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
    @click.option("--role", type=click.Choice(["ADMIN", "PARTNER"]), default="PARTNER")
    @click.option("--partner", "partner_slug", help="Partner slug (required for PARTNER users)")
    @click.option("--name", "full_name", default=None)
    def create_user(email, password, role, partner_slug, full_name):
        """Create a login for an admin or a partner."""
        email = email.strip().lower()
        if User.query.filter_by(email=email).first():
            raise click.ClickException("User already exists")

        partner = None
        if role == "PARTNER":
            if not partner_slug:
                raise click.ClickException("--partner is required for PARTNER users")
            partner = Partner.query.filter_by(slug=partner_slug).first()
            if partner is None:
                raise click.ClickException(f"Partner {partner_slug} not found")

        try:
            pw_hash = hash_password(password, rounds=app.config.get("BCRYPT_ROUNDS", 12))
        except ValueError as exc:
            raise click.ClickException(str(exc))

        user = User(email=email, password_hash=pw_hash, full_name=full_name,
                    partner_id=partner.id if partner else None)
        user.roles.append(get_or_create_role(role))
        db.session.add(user)
        db.session.commit()
        click.echo(f"{user.email} created as {role}")

    @app.cli.command("make-admin")
    @click.argument("email")
    def make_admin(email):
        """Promote a user to ADMIN by email (bootstrap)."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            raise click.ClickException("User not found")

        admin_role = get_or_create_role("ADMIN")
        if admin_role not in user.roles:
            user.roles.append(admin_role)
        db.session.commit()

        click.echo(f"{user.email} promoted to ADMIN")

    @app.cli.command("reconcile-unpaid")
    @click.option("--ttl", "ttl_minutes", type=int, default=None, help="Override the unpaid TTL in minutes")
    def reconcile_unpaid(ttl_minutes):
        """Release slots held by bookings that were not paid in time."""
        ttl = ttl_minutes if ttl_minutes is not None else app.config.get("UNPAID_BOOKING_TTL_MINUTES", 30)
        summary = BookingReconciler(db.session, Actor.system(), ttl_minutes=ttl).run()
        click.echo(
            f"processed={summary.processed} released={summary.released} "
            f"skipped={summary.skipped} failed={summary.failed}"
        )

#-------------------------


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
