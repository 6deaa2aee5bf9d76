# backend/retailpos/routes/sales.py
"""Sales API routes: counter sales, refunds, returns and exchanges."""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import sales_service, return_service
from ..validation import (
    NotFoundError,
    ValidationError,
    validate_create_sale,
    validate_exchange,
)
from ..decorators import require_actor


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


@sales_bp.get("")
@require_actor
def list_sales_route():
    branch_id = request.args.get("branch_id", type=int)
    sales = sales_service.get_sales(branch_id=branch_id)
    return jsonify({"sales": [s.to_dict() for s in sales]}), 200


@sales_bp.get("/today")
@require_actor
def today_sales_route():
    branch_id = request.args.get("branch_id", type=int)
    sales = sales_service.get_today_sales(branch_id=branch_id)
    return jsonify({"sales": [s.to_dict(include_items=False) for s in sales]}), 200


@sales_bp.get("/recent-items")
@require_actor
def recent_sale_items_route():
    branch_id = request.args.get("branch_id", type=int)
    if branch_id is None:
        return jsonify({"error": "branch_id required"}), 400
    return jsonify({"items": sales_service.get_recent_sale_item_prices(branch_id)}), 200


@sales_bp.get("/<int:sale_id>")
@require_actor
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(sale_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"sale": sale.to_dict()}), 200


@sales_bp.post("")
@require_actor
def create_sale_route():
    """
    Create a completed counter sale.

    Request body:
    {
        "branch_id": 1,
        "customer_id": null,
        "payment_method": "CASH",
        "items": [{"product_id": 5, "quantity": 2, "price": "19.99"}]
    }
    """
    payload = request.get_json(silent=True) or {}

    try:
        data = validate_create_sale(payload)
        sale = sales_service.create_sale(
            branch_id=data["branch_id"],
            customer_id=data["customer_id"],
            payment_method=data["payment_method"],
            items=data["items"],
            actor_id=g.actor_id,
        )
        return jsonify({"sale": sale.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/refund")
@require_actor
def refund_sale_route(sale_id: int):
    try:
        sale = sales_service.refund_sale(sale_id, g.actor_id)
        return jsonify({"sale": sale.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to refund sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/exchange")
@require_actor
def exchange_sale_route(sale_id: int):
    """
    Return and/or exchange items from a previous sale.

    Request body:
    {
        "branch_id": 1,
        "customer_id": null,
        "returned_items": [{"product_id": 5, "quantity": 1}],
        "exchanged_items": [{"product_id": 7, "quantity": 1, "price": "24.50"}]
    }
    """
    payload = request.get_json(silent=True) or {}

    try:
        data = validate_exchange(payload)
        sale = return_service.create_exchange_or_return_sale(
            original_sale_id=sale_id,
            branch_id=data["branch_id"],
            customer_id=data["customer_id"],
            returned_items=data["returned_items"],
            exchanged_items=data["exchanged_items"],
            actor_id=g.actor_id,
        )
        return jsonify({"sale": sale.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to process return/exchange")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/<int:sale_id>/settlements")
@require_actor
def list_settlements_route(sale_id: int):
    try:
        sales_service.get_sale(sale_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404

    settlements = return_service.get_settlements(sale_id)
    return jsonify({"sales": [s.to_dict() for s in settlements]}), 200
