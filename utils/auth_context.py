from functools import wraps
from flask import g, jsonify
from security.session import get_session_from_request
from models import db
from models.user import User
from services.actor import Actor

def load_current_user():
    g.actor = None
    sess = get_session_from_request()
    if not sess:
        g.user = None
        g.session = None
        return
    g.session = sess
    g.user = db.session.get(User, sess.user_id)
    g.actor = Actor.from_user(g.user)

def current_actor():
    """Actor for the logged-in user, or None for anonymous/roleless users."""
    return getattr(g, "actor", None)

def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "user", None) is None:
            return jsonify(ok=False, error="UNAUTHORIZED", message="Authentication required"), 401
        return fn(*args, **kwargs)
    return wrapper
