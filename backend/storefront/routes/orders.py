# Overview: Admin order routes: listing, status/tracking updates and compensating deletes.

from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_admin
from ..services import order_service
from ..services.order_service import InvalidTransitionError, OrderError, OrderNotFoundError
from ..validation import ValidationError

orders_bp = Blueprint("orders", __name__, url_prefix="/api/admin/orders")


@orders_bp.get("")
@require_admin
def list_orders_route():
    try:
        orders = order_service.list_orders(
            status=request.args.get("status"),
            include_in_person=request.args.get("include_in_person", "true").lower() == "true",
            limit=min(request.args.get("limit", 100, type=int), 500),
            offset=max(request.args.get("offset", 0, type=int), 0),
        )
        return jsonify({"orders": [o.to_dict() for o in orders]}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/profits")
@require_admin
def profits_route():
    try:
        return jsonify(order_service.profit_summary()), 200
    except Exception:
        current_app.logger.exception("Failed to calculate order profits")
        return jsonify({"error": "Failed to calculate profits"}), 500


@orders_bp.get("/<int:order_id>")
@require_admin
def get_order_route(order_id: int):
    try:
        return jsonify({"order": order_service.get_order(order_id).to_dict()}), 200
    except OrderNotFoundError as e:
        return jsonify({"error": str(e)}), 404


@orders_bp.patch("/<int:order_id>")
@require_admin
def update_order_route(order_id: int):
    """
    Body: {"status": "SHIPPED", "trackingNumber": "..."}; either key may be omitted.
    """
    data = request.get_json(silent=True) or {}
    tracking_number = data.get("trackingNumber")
    if tracking_number is not None and not isinstance(tracking_number, str):
        return jsonify({"error": "trackingNumber must be a string"}), 400

    try:
        order = order_service.update_order_status(order_id, data.get("status"), tracking_number)
        return jsonify({"order": order.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except OrderNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except InvalidTransitionError as e:
        return jsonify({"error": str(e), "details": e.details}), 409
    except OrderError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to update order %s", order_id)
        return jsonify({"error": "Failed to update order"}), 500


@orders_bp.delete("/<int:order_id>")
@require_admin
def delete_order_route(order_id: int):
    try:
        report = order_service.delete_order(order_id)
        return jsonify({"success": True, "compensation": report.to_dict()}), 200

    except OrderNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to delete order %s", order_id)
        return jsonify({"error": "Failed to delete order"}), 500
