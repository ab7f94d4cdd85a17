from flask import Blueprint, request, jsonify, g

from models.user import User
from security.password import verify_password
from security.session import (
    cookie_name, create_session, revoke_session, revoke_all_sessions, set_session_cookie,
)
from security.csrf import issue_csrf_token, clear_csrf_token
from utils.audit import log_event
from utils.auth_context import login_required
from utils.roles import filter_role_names


auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


@auth_bp.post("/login")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    user = User.query.filter_by(email=email).first() if email else None
    if not user or not verify_password(password, user.password_hash):
        log_event("LOGIN_FAIL", user_id=user.id if user else None, metadata={"email": email})
        return jsonify(ok=False, error="INVALID_CREDENTIALS", message="Invalid credentials"), 401

    # Rotate: one live session per user
    revoked_count = revoke_all_sessions(user.id)
    raw_token = create_session(user.id)

    resp = jsonify(ok=True, user=_user_view(user))
    set_session_cookie(resp, raw_token)
    issue_csrf_token(resp)

    log_event("LOGIN_SUCCESS", user_id=user.id, metadata={"revoked_sessions": revoked_count})
    return resp, 200


def _user_view(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "fullName": user.full_name,
        "roles": filter_role_names(user.roles),
        "partnerId": user.partner_id,
    }


@auth_bp.get("/me")
@login_required
def me():
    return jsonify(ok=True, user=_user_view(g.user)), 200


@auth_bp.post("/logout")
@login_required
def logout():
    revoke_session(request.cookies.get(cookie_name()))
    log_event("LOGOUT", user_id=g.user.id)

    resp = jsonify(ok=True)
    resp.delete_cookie(cookie_name(), path="/")
    clear_csrf_token(resp)
    return resp, 200
