# backend/retailpos/routes/stock.py
"""
Stock ledger routes.

All routes require an acting staff user (X-User-Id).
"""
from flask import Blueprint, request, jsonify, g, current_app

from ..services import stock_service, branch_service
from ..validation import (
    ConflictError,
    NotFoundError,
    ValidationError,
    validate_create_stock,
    validate_adjust_stock,
)
from ..decorators import require_actor


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


@stock_bp.post("")
@require_actor
def create_stock_route():
    """
    Open stock for a product at a branch.

    Request body:
    {
        "product_id": 1,
        "branch_id": 2,
        "quantity": 10
    }

    Returns:
        201: Stock created
        400: Invalid input
        404: Product or branch not found
        409: Stock already exists for the pair
    """
    payload = request.get_json(silent=True) or {}

    try:
        data = validate_create_stock(payload)
        stock = stock_service.create_stock(
            product_id=data["product_id"],
            branch_id=data["branch_id"],
            quantity=data["quantity"],
            actor_id=g.actor_id,
        )
        return jsonify({"stock": stock.to_dict()}), 201

    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except ValidationError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to create stock")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.post("/adjust")
@require_actor
def adjust_stock_route():
    """
    Adjust stock (corrections, damage).

    Request body:
    {
        "product_id": 1,
        "branch_id": 2,
        "quantity_change": -3,
        "reason": "Broken in transit"
    }
    """
    payload = request.get_json(silent=True) or {}

    try:
        data = validate_adjust_stock(payload)
        result = stock_service.adjust_stock(
            product_id=data["product_id"],
            branch_id=data["branch_id"],
            quantity_change=data["quantity_change"],
            reason=data["reason"],
            actor_id=g.actor_id,
        )
        return jsonify(result), 200

    except ValidationError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.get("/branch/<int:branch_id>")
@require_actor
def list_branch_stock_route(branch_id: int):
    try:
        branch_service.get_branch(branch_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404

    stocks = stock_service.get_stock_by_branch(branch_id)
    return jsonify({"stocks": [s.to_dict(include_product=True) for s in stocks]}), 200


@stock_bp.get("/branch/<int:branch_id>/movements")
@require_actor
def list_branch_movements_route(branch_id: int):
    try:
        branch_service.get_branch(branch_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404

    limit = request.args.get("limit", type=int)
    movements = stock_service.get_stock_movements(branch_id, limit=limit)
    return jsonify({"movements": [m.to_dict(include_product=True) for m in movements]}), 200
