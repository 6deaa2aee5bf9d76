# Overview: Request context decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

"""
Session authentication is handled in front of this service. The gateway
forwards the authenticated identity in headers:

- X-User-Id: staff member acting on stock and sales
- X-Customer-Id: storefront customer placing orders
"""


def _header_id(name: str) -> int | None:
    raw = (request.headers.get(name) or "").strip()
    if not raw.isdigit():
        return None
    return int(raw)


def require_actor(f):
    """
    Require an acting staff user.

    Sets g.actor_id. Returns 401 if the header is missing or malformed.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor_id = _header_id("X-User-Id")
        if actor_id is None:
            return jsonify({"error": "Authentication required"}), 401
        g.actor_id = actor_id
        return f(*args, **kwargs)

    return decorated_function


def require_customer(f):
    """
    Require an authenticated storefront customer.

    Sets g.customer_id. Returns 401 if the header is missing or malformed.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        customer_id = _header_id("X-Customer-Id")
        if customer_id is None:
            return jsonify({"error": "Authentication required"}), 401
        g.customer_id = customer_id
        return f(*args, **kwargs)

    return decorated_function
