# Overview: Admin routes for manually recorded point-of-sale orders.

from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_admin
from ..services import order_service
from ..services.order_service import OrderError, OrderNotFoundError
from ..validation import ValidationError

in_person_bp = Blueprint("in_person", __name__, url_prefix="/api/admin/in-person-sales")


@in_person_bp.get("")
@require_admin
def list_sales_route():
    limit = min(request.args.get("limit", 25, type=int), 200)
    sales = order_service.list_in_person_sales(limit=limit)
    return jsonify({"orders": [s.to_dict() for s in sales]}), 200


@in_person_bp.post("")
@require_admin
def create_sale_route():
    """Body: {customerName, customerEmail?, customerLocation?, items: [{productId, quantity, size?, color?}]}"""
    try:
        order = order_service.create_in_person_sale(request.get_json(silent=True))
        return jsonify({"order": order.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except OrderError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to create in-person sale")
        return jsonify({"error": "Failed to create sale"}), 500


@in_person_bp.put("/<int:order_id>")
@require_admin
def update_sale_route(order_id: int):
    try:
        order = order_service.update_in_person_sale(order_id, request.get_json(silent=True))
        return jsonify({"order": order.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except OrderNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except OrderError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to update in-person sale %s", order_id)
        return jsonify({"error": "Failed to update sale"}), 500


@in_person_bp.delete("/<int:order_id>")
@require_admin
def delete_sale_route(order_id: int):
    try:
        report = order_service.delete_in_person_sale(order_id)
        return jsonify({"success": True, "compensation": report.to_dict()}), 200

    except OrderNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to delete in-person sale %s", order_id)
        return jsonify({"error": "Failed to delete sale"}), 500
