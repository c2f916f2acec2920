# Overview: Admin inventory routes: variant stock edits and reservation release.

from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_admin
from ..services import inventory_service
from ..services.inventory_service import InventoryError, InventoryNotFoundError

inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/admin/inventory")


@inventory_bp.get("")
@require_admin
def list_inventory_route():
    return jsonify({"inventory": inventory_service.list_inventory()}), 200


@inventory_bp.patch("")
@require_admin
def update_variant_stock_route():
    """Body: {"variantId": 12, "stock": 4}; the parent product total is resynced."""
    data = request.get_json(silent=True) or {}
    variant_id = data.get("variantId")
    if not isinstance(variant_id, int) or isinstance(variant_id, bool) or "stock" not in data:
        return jsonify({"error": "variantId and stock are required"}), 400

    try:
        variant = inventory_service.set_variant_stock(variant_id, data["stock"])
        return jsonify({"variant": variant.to_dict(), "product": variant.product.to_dict()}), 200

    except InventoryNotFoundError as e:
        return jsonify({"error": str(e), "details": e.details}), 404
    except InventoryError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to update variant %s stock", variant_id)
        return jsonify({"error": "Failed to update inventory"}), 500


@inventory_bp.post("/<int:product_id>/release")
@require_admin
def release_reserved_route(product_id: int):
    try:
        released = inventory_service.release_reserved(product_id)
        return jsonify({"product_id": product_id, "released": released}), 200

    except InventoryNotFoundError as e:
        return jsonify({"error": str(e), "details": e.details}), 404
    except Exception:
        current_app.logger.exception("Failed to release reserved stock for product %s", product_id)
        return jsonify({"error": "Failed to release reserved stock"}), 500
