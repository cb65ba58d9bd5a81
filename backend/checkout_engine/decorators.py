# Overview: Request decorators for API routes.

import hmac
from functools import wraps
from flask import request, jsonify, current_app, g


def require_admin(f):
    """
    Require the admin bearer token.

    The admin interface (coupon, stock and order administration) is an
    external collaborator; it authenticates with a shared token:
        Authorization: Bearer <ADMIN_API_TOKEN>

    SECURITY: Returns 401 if the header is missing or the token does not match.
    Comparison is constant-time.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required", "code": "unauthorized"}), 401

        token = auth_header.split(" ", 1)[1].strip()
        expected = current_app.config.get("ADMIN_API_TOKEN") or ""

        if not expected or not hmac.compare_digest(token.encode(), expected.encode()):
            return jsonify({"error": "Invalid admin token", "code": "unauthorized"}), 401

        # Actor recorded on ledger movements and audit events
        g.actor = request.headers.get("X-Actor") or "admin"
        return f(*args, **kwargs)

    return decorated_function
