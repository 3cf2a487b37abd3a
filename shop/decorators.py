"""
Custom route decorators for access control.

- admin_token_required: the request must carry
  ``Authorization: Bearer <ADMIN_API_TOKEN>``. Used by the back-office
  order and stock routes.
"""

import hmac
import logging
from functools import wraps

from flask import current_app, jsonify, request

logger = logging.getLogger(__name__)


def _bearer_token():
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def admin_token_required(f):
    """Require the admin bearer token."""

    @wraps(f)
    def decorated(*args, **kwargs):
        expected = current_app.config.get("ADMIN_API_TOKEN")
        if not expected:
            logger.error("ADMIN_API_TOKEN is not configured; refusing admin request")
            return jsonify(ok=False, code="ADMIN_DISABLED", message="Admin API disabled"), 403

        token = _bearer_token()
        if not token or not hmac.compare_digest(token, expected):
            logger.warning(f"Rejected admin request to {request.path}")
            return jsonify(ok=False, code="UNAUTHORIZED", message="Invalid admin token"), 401

        return f(*args, **kwargs)

    return decorated
