# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .extensions import db
from .models import User

ACTOR_HEADER = "X-User-Id"


def require_actor(f):
    """
    Resolve the acting user from the X-User-Id header.

    Sets g.current_user. Authentication itself happens upstream; this only
    identifies who is recorded on stock movements, sales and payments.

    Returns 401 if the header is missing, malformed, unknown or names an
    inactive user.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = (request.headers.get(ACTOR_HEADER) or "").strip()
        if not raw:
            return jsonify({"error": f"{ACTOR_HEADER} header required"}), 401
        if not raw.isdigit():
            return jsonify({"error": f"Invalid {ACTOR_HEADER} header"}), 401

        user = db.session.get(User, int(raw))
        if user is None or not user.is_active:
            return jsonify({"error": "Unknown or inactive user"}), 401

        g.current_user = user
        return f(*args, **kwargs)

    return decorated_function
