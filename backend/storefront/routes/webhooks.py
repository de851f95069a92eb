# Overview: Flask API routes for provider webhooks; authenticates and acknowledges provider events.

"""
Provider webhook endpoints.

Providers retry until they get a 2xx, so:
- a bad signature is a 400 (never retried into success)
- unknown payment refs, replays and irrelevant event types get 200
- only unexpected failures return 500, so the provider redelivers
"""

from flask import Blueprint, request, jsonify, current_app

from ..providers import WebhookSignatureError
from ..services import payment_service
from ..services.payment_service import PaymentError


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/payments/webhook")


def _handle(provider_name: str):
    try:
        ack = payment_service.handle_webhook(
            provider_name,
            request.get_data(cache=False),
            request.headers,
        )
        return jsonify(ack), 200
    except WebhookSignatureError as e:
        current_app.logger.warning("Rejected %s webhook: %s", provider_name, e)
        return jsonify({"error": str(e)}), 400
    except PaymentError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to process %s webhook", provider_name)
        return jsonify({"error": "Internal server error"}), 500


@webhooks_bp.post("/stripe")
def stripe_webhook_route():
    return _handle("stripe")


@webhooks_bp.post("/paypack")
def paypack_webhook_route():
    return _handle("paypack")
