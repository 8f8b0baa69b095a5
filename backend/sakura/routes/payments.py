# Overview: Flask API routes for payments operations; parses input and returns JSON responses.

# backend/sakura/routes/payments.py
"""
Payment API Routes

DESIGN:
- Open a payment attempt for an order (supersedes earlier pending attempts)
- Gateway webhooks reconcile attempts; replays are acknowledged with 200
- Refunds are cumulative; cancellation only before the payment settles

SECURITY:
- Webhooks must carry an HMAC-SHA256 signature of the JSON body in the
  X-Signature header when the gateway has a secret configured
- Rejected callbacks are logged and answered 400 without touching state
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import payment_service
from ..validation import (
    ValidationError,
    NotFoundError,
    ConflictError,
    parse_positive_int,
    require_fields,
)


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")

SIGNATURE_HEADER = "X-Signature"


# =============================================================================
# PAYMENT ATTEMPTS
# =============================================================================

@payments_bp.post("")
def record_payment_route():
    """
    Open a payment attempt.

    Request body:
    {
        "order_id": 12,
        "payment_method": "VNPAY",
        "amount": "450000",  (optional, defaults to the order total)
        "currency": "VND",  (optional, must match the order)
        "description": "...",  (optional)
        "actor_id": 7  (optional)
    }

    Returns:
        201: {"transaction_id": "PAY...", "payment": {...}}
        400: Invalid input, order already paid or closed
        404: Order not found
    """
    try:
        data = require_fields(request.get_json(silent=True), "order_id", "payment_method")
        user_id = data.get("actor_id")
        transaction_id = payment_service.record_payment_attempt(
            parse_positive_int(data["order_id"], field="order_id"),
            data["payment_method"],
            data.get("amount"),
            currency=data.get("currency"),
            user_id=parse_positive_int(user_id, field="actor_id") if user_id is not None else None,
            description=data.get("description"),
        )
        payment = payment_service.get_payment(transaction_id)
        return jsonify({"transaction_id": transaction_id, "payment": payment.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to record payment attempt")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# GATEWAY CALLBACKS
# =============================================================================

def _callback_response(outcome):
    return jsonify(outcome.to_dict()), (200 if outcome.accepted else 400)


@payments_bp.post("/webhooks/<gateway>")
def gateway_webhook_route(gateway: str):
    """
    Gateway notification.

    Request body (gateway-neutral shape):
    {
        "transaction_id": "PAY17000000001234",  (or "external_id")
        "external_id": "GW-998877",
        "status": "SUCCESS",
        ...any gateway fields (covered by the signature)
    }
    Header: X-Signature: hex(HMAC-SHA256(secret, canonical JSON body))
    """
    try:
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            current_app.logger.warning("Payment webhook from %s with malformed body", gateway)
            return jsonify({"accepted": False, "reason": "malformed payload"}), 400

        outcome = payment_service.apply_gateway_callback(
            payload.get("status"),
            payload,
            transaction_id=payload.get("transaction_id"),
            external_id=payload.get("external_id"),
            signature=request.headers.get(SIGNATURE_HEADER),
            gateway=gateway,
        )
        return _callback_response(outcome)

    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to process %s webhook", gateway)
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/<transaction_id>/status")
def update_payment_status_route(transaction_id: str):
    """
    Staff-side status report (e.g. bank transfer seen on the statement).

    Body: {"status": "PAID", "external_id": "...", "note": "..."}
    """
    try:
        data = require_fields(request.get_json(silent=True), "status")
        payload = {"source": "staff", "message": data.get("note")}
        outcome = payment_service.apply_gateway_callback(
            data["status"],
            payload,
            transaction_id=transaction_id,
            external_id=data.get("external_id"),
        )
        return _callback_response(outcome)

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to update payment %s", transaction_id)
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# REFUNDS & CANCELLATION
# =============================================================================

@payments_bp.post("/<transaction_id>/refund")
def refund_payment_route(transaction_id: str):
    """Body: {"amount": "100000", "reason": "...", "actor_id": 3}"""
    try:
        data = require_fields(request.get_json(silent=True), "amount")
        user_id = data.get("actor_id")
        txn = payment_service.refund_payment(
            transaction_id,
            data.get("amount"),
            reason=data.get("reason"),
            user_id=parse_positive_int(user_id, field="actor_id") if user_id is not None else None,
        )
        return jsonify({"payment": txn.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to refund payment %s", transaction_id)
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/<transaction_id>/cancel")
def cancel_payment_route(transaction_id: str):
    try:
        data = request.get_json(silent=True) or {}
        txn = payment_service.cancel_payment(transaction_id, reason=data.get("reason"))
        return jsonify({"payment": txn.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to cancel payment %s", transaction_id)
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# QUERIES
# =============================================================================

@payments_bp.get("/fee")
def payment_fee_route():
    """Query params: method, amount."""
    try:
        method = request.args.get("method")
        amount = request.args.get("amount")
        if not method or amount is None:
            return jsonify({"error": "method and amount required"}), 400
        fee = payment_service.calculate_payment_fee(method, amount)
        return jsonify({"method": method.upper(), "amount": amount, "fee": str(fee)}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to calculate payment fee")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/stats")
def payment_stats_route():
    try:
        return jsonify(payment_service.get_payment_stats()), 200

    except Exception:
        current_app.logger.exception("Failed to compute payment stats")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/orders/<int:order_id>")
def order_payments_route(order_id: int):
    try:
        payments = payment_service.get_order_payments(order_id)
        return jsonify({"order_id": order_id, "payments": [p.to_dict() for p in payments]}), 200

    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to list order payments")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/<transaction_id>")
def get_payment_route(transaction_id: str):
    try:
        return jsonify({"payment": payment_service.get_payment(transaction_id).to_dict()}), 200

    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to get payment")
        return jsonify({"error": "Internal server error"}), 500
