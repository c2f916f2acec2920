# Overview: Storefront checkout routes: open a gateway session and confirm it after redirect.

from flask import Blueprint, current_app, jsonify, request

from ..services import checkout_service, order_service
from ..services.checkout_service import CheckoutError
from ..services.checkout_session import SessionPayloadError
from ..services.payment_gateway import PaymentGatewayError, StripeClient
from ..validation import ValidationError

checkout_bp = Blueprint("checkout", __name__, url_prefix="/api")

SYNC_LATER_MESSAGE = "We couldn't confirm your order just now. It has been paid and we'll sync it shortly."
PAID_STATUSES = {"paid", "no_payment_required"}


@checkout_bp.post("/checkout/session")
def create_checkout_session_route():
    try:
        result = checkout_service.create_checkout_session(request.get_json(silent=True))
        return jsonify(result), 200

    except (ValidationError, CheckoutError) as e:
        return jsonify({"error": str(e), "details": getattr(e, "details", {})}), 400
    except PaymentGatewayError as e:
        return jsonify({"error": "Failed to create checkout session", "details": e.details}), 502
    except Exception:
        current_app.logger.exception("Failed to create checkout session")
        return jsonify({"error": "Failed to create checkout session"}), 500


@checkout_bp.post("/orders/confirm")
def confirm_order_route():
    """
    Called by the storefront after the gateway redirects back.

    Races the webhook for the same payment; materialization is idempotent so
    whichever arrives second gets created=false.
    """
    data = request.get_json(silent=True) or {}
    session_id = data.get("sessionId")
    if not session_id or not isinstance(session_id, str):
        return jsonify({"error": "sessionId is required"}), 400

    try:
        session = StripeClient.from_app().retrieve_checkout_session(session_id)
    except PaymentGatewayError:
        current_app.logger.exception("Failed to retrieve checkout session %s", session_id)
        return jsonify({"error": SYNC_LATER_MESSAGE}), 502

    payment_status = session.get("payment_status")
    if payment_status and payment_status not in PAID_STATUSES:
        return jsonify({"error": "Payment has not completed", "payment_status": payment_status}), 409

    try:
        result = order_service.create_order_from_session(session)
        return jsonify({
            "success": True,
            "created": result.created,
            "orderId": result.order.id,
        }), 200

    except SessionPayloadError as e:
        current_app.logger.error("Checkout session %s has malformed metadata: %s", session_id, e)
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Order confirmation failed for session %s", session_id)
        return jsonify({"error": SYNC_LATER_MESSAGE}), 500
