from functools import wraps
from flask import g, jsonify

# ADMIN passes every role check
SUPERUSER_ROLE = "ADMIN"

def require_roles(*role_names: str):
    """
    Usage: @require_roles("PARTNER")
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = getattr(g, "user", None)
            if user is None:
                return jsonify(ok=False, error="UNAUTHORIZED", message="Authentication required"), 401

            user_roles = {r.name for r in user.roles}
            if SUPERUSER_ROLE not in user_roles and not user_roles.intersection(set(role_names)):
                return jsonify(ok=False, error="FORBIDDEN", message="Forbidden"), 403

            # PARTNER accounts must be bound to a partner to act at all
            if SUPERUSER_ROLE not in user_roles and "PARTNER" in user_roles and not user.partner_id:
                return jsonify(ok=False, error="FORBIDDEN", message="Account has no partner"), 403

            return fn(*args, **kwargs)
        return wrapper
    return decorator
