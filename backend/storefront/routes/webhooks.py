# Overview: Payment gateway webhook receiver.

from flask import Blueprint, current_app, jsonify, request

from ..services import order_service
from ..services.checkout_session import SessionPayloadError
from ..services.payment_gateway import WebhookSignatureError, verify_webhook_signature

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")

HANDLED_EVENTS = {"checkout.session.completed"}


@webhooks_bp.post("/stripe")
def stripe_webhook():
    payload = request.get_data()
    try:
        event = verify_webhook_signature(
            payload,
            request.headers.get("Stripe-Signature"),
            current_app.config.get("STRIPE_WEBHOOK_SECRET"),
        )
    except WebhookSignatureError as e:
        current_app.logger.warning("Webhook signature verification failed: %s", e)
        return jsonify({"error": "Invalid signature"}), 400

    event_type = event.get("type")
    if event_type not in HANDLED_EVENTS:
        return jsonify({"received": True}), 200

    session = (event.get("data") or {}).get("object")
    try:
        result = order_service.create_order_from_session(session)
    except SessionPayloadError as e:
        current_app.logger.error("Webhook %s carried a malformed session: %s", event.get("id"), e)
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        # 5xx makes the gateway redeliver; materialization is idempotent
        current_app.logger.exception("Webhook handler failed for event %s", event.get("id"))
        return jsonify({"error": "Webhook handler failed"}), 500

    current_app.logger.info(
        "Order %s %s for %s",
        result.order.id,
        "created" if result.created else "already recorded",
        result.order.email or "guest checkout",
    )
    return jsonify({"received": True, "created": result.created, "orderId": result.order.id}), 200
