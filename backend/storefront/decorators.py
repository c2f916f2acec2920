# Overview: Request decorators for API routes.

import hmac
from functools import wraps

from flask import current_app, jsonify, request


def require_admin(f):
    """
    Require the admin bearer token.

    Compares the Authorization header against ADMIN_API_TOKEN. Returns 401
    when the header is missing or no token is configured, 403 on mismatch.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        expected = current_app.config.get("ADMIN_API_TOKEN")
        if not expected:
            current_app.logger.warning("ADMIN_API_TOKEN is not set; rejecting admin request to %s", request.path)
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1].strip()
        if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
            return jsonify({"error": "Forbidden"}), 403

        return f(*args, **kwargs)

    return decorated_function
