# backend/retailpos/routes/orders.py
"""
Storefront order routes.

Customers place, list and cancel their own orders (X-Customer-Id).
Staff move orders through fulfilment (X-User-Id).
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import order_service
from ..validation import (
    NotFoundError,
    ValidationError,
    ORDER_STATUSES,
    validate_create_order,
    validate_order_status,
)
from ..decorators import require_actor, require_customer


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("")
@require_customer
def create_order_route():
    """
    Place an order. Prices come from the catalog.

    Request body:
    {
        "items": [{"product_id": 5, "quantity": 2}],
        "payment_method": "MOBILE_MONEY"
    }
    """
    payload = request.get_json(silent=True) or {}

    try:
        data = validate_create_order(payload)
        result = order_service.create_order(
            items=data["items"],
            payment_method=data["payment_method"],
            customer_id=g.customer_id,
        )
        return jsonify({
            "order": result["order"].to_dict(),
            "sale": result["sale"].to_dict(),
        }), 201

    except ValidationError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("")
@require_customer
def list_orders_route():
    status = request.args.get("status")
    if status is not None and status.upper() not in ORDER_STATUSES:
        return jsonify({"error": f"status must be one of: {', '.join(ORDER_STATUSES)}"}), 400

    orders = order_service.get_customer_orders(
        g.customer_id,
        status=status.upper() if status else None,
    )
    return jsonify({"orders": [o.to_dict() for o in orders]}), 200


@orders_bp.get("/<int:order_id>")
@require_customer
def get_order_route(order_id: int):
    try:
        order = order_service.get_customer_order(g.customer_id, order_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"order": order.to_dict()}), 200


@orders_bp.post("/<int:order_id>/cancel")
@require_customer
def cancel_order_route(order_id: int):
    try:
        order_service.get_customer_order(g.customer_id, order_id)
        order = order_service.cancel_order(order_id)
        return jsonify({"order": order.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.patch("/<int:order_id>/status")
@require_actor
def update_order_status_route(order_id: int):
    """
    Staff status change.

    Request body:
    {
        "status": "PROCESSING"
    }
    """
    payload = request.get_json(silent=True) or {}

    try:
        status = validate_order_status(payload)
        order = order_service.update_order_status(order_id, status, actor_id=g.actor_id)
        return jsonify({"order": order.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500
