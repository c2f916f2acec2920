from flask import Blueprint, jsonify, request

from ..services import currency_service, geolocation_service

currency_bp = Blueprint("currency", __name__, url_prefix="/api/currency")


@currency_bp.get("/rates")
def rates():
    snapshot = currency_service.get_rates()
    body = snapshot.to_dict()
    body["base"] = currency_service.base_currency()
    return jsonify(body), 200


@currency_bp.get("/detect")
def detect():
    """?ip= overrides the caller address; otherwise X-Forwarded-For, then the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    ip = request.args.get("ip") or forwarded or request.remote_addr
    return jsonify({"currency": geolocation_service.detect_currency(ip)}), 200
