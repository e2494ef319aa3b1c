from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from kombu.exceptions import OperationalError as BrokerUnavailable

from stockyard.services.engine_context import current_engine
from stockyard.services.payment_events import payload_hash, process_webhook_event
from stockyard.utils.observability import get_request_id

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")


def _rejected(code: str, message: str, status: int):
    body = {"ok": False, "error": code, "message": message, "status": status}
    rid = get_request_id()
    if rid:
        body["trace_id"] = rid
    return jsonify(body), status


@webhooks_bp.post("/stripe")
def stripe_webhook():
    ctx = current_engine()
    provider = ctx.payments()
    raw = request.get_data() or b""
    signature = request.headers.get("Stripe-Signature")
    try:
        event = provider.parse_webhook(raw, signature)
    except PermissionError:
        current_app.logger.warning("stripe_webhook_bad_signature request_id=%s", get_request_id())
        return _rejected("INVALID_SIGNATURE", "Webhook signature verification failed", 400)
    except ValueError:
        return _rejected("INVALID_PAYLOAD", "Webhook payload could not be parsed", 400)

    body_hash = payload_hash(raw)
    if ctx.settings.stripe_webhook_queue:
        try:
            from stockyard.tasks.order_tasks import process_stripe_webhook_task

            process_stripe_webhook_task.delay(
                event_id=event.id,
                event_type=event.type,
                data=event.data,
                body_hash=body_hash,
                trace_id=get_request_id(),
            )
            return jsonify({"ok": True, "queued": True, "event_id": event.id, "trace_id": get_request_id()}), 200
        except BrokerUnavailable:
            current_app.logger.warning("stripe_webhook_queue_unavailable event_id=%s; processing inline", event.id)

    result = process_webhook_event(ctx, event, request_id=get_request_id(), body_hash=body_hash)
    return jsonify(result), 200
