from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_admin
from ..services import promotions_service
from ..validation import ConflictError, ValidationError, parse_money

promotions_bp = Blueprint("promotions", __name__, url_prefix="/api")


@promotions_bp.post("/promocodes/validate")
def validate_promo_code():
    data = request.get_json(silent=True) or {}
    code = data.get("code")
    if not code or not isinstance(code, str):
        return jsonify({"error": "code is required"}), 400
    try:
        subtotal = parse_money(data.get("subtotal"), "subtotal")
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    promo, result = promotions_service.validate_code_for_subtotal(code, subtotal)
    body = result.to_dict()
    if result.valid:
        body["promo"] = {
            "id": promo.id,
            "code": promo.code,
            "discount_type": promo.discount_type,
            "amount": float(promo.amount),
        }
    return jsonify(body), 200


@promotions_bp.get("/admin/promocodes")
@require_admin
def list_promo_codes():
    active_only = request.args.get("active_only", "false").lower() == "true"
    return jsonify({"promo_codes": promotions_service.list_promo_codes(active_only)}), 200


@promotions_bp.post("/admin/promocodes")
@require_admin
def create_promo_code():
    try:
        promo = promotions_service.create_promo_code(request.get_json(silent=True) or {})
        return jsonify({"promo_code": promo.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to create promo code")
        return jsonify({"error": "Failed to create promo code"}), 500


@promotions_bp.patch("/admin/promocodes/<int:promo_id>")
@require_admin
def update_promo_code(promo_id: int):
    try:
        promo = promotions_service.update_promo_code(promo_id, request.get_json(silent=True) or {})
        if not promo:
            return jsonify({"error": "Not found"}), 404
        return jsonify({"promo_code": promo.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to update promo code %s", promo_id)
        return jsonify({"error": "Failed to update promo code"}), 500


@promotions_bp.delete("/admin/promocodes/<int:promo_id>")
@require_admin
def delete_promo_code(promo_id: int):
    if not promotions_service.delete_promo_code(promo_id):
        return jsonify({"error": "Not found"}), 404
    return jsonify({"success": True}), 200
