# Overview: Flask API routes for order operations; parses input and returns JSON responses.

# backend/sakura/routes/orders.py
"""
Order API Routes

DESIGN:
- Checkout creates a PENDING order, reserves stock, optionally applies a coupon
- Status workflow endpoints (confirm, process, ship, deliver, cancel, return, refund)
- Coupon application/removal and fee edits while the order is still open
- Illegal transitions and rejected coupons answer 422 with the reason

The acting user is passed as "actor_id" in the body (authentication is handled
upstream).
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import order_service
from ..validation import (
    ValidationError,
    NotFoundError,
    ConflictError,
    OperationCancelled,
    parse_int,
    parse_positive_int,
    parse_optional_datetime,
    require_fields,
)


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _actor(data: dict | None):
    if not data or data.get("actor_id") is None:
        return None
    return parse_positive_int(data["actor_id"], field="actor_id")


def _transition_response(result):
    body = {
        "success": result.success,
        "old_status": result.old_status,
        "new_status": result.new_status,
        "failure_reason": result.failure_reason,
        "order": result.order.to_dict(include_items=False),
    }
    return jsonify(body), (200 if result.success else 422)


def _run_transition(label: str, func, *args, **kwargs):
    try:
        if kwargs.get("actor_id") is not None:
            kwargs["actor_id"] = parse_positive_int(kwargs["actor_id"], field="actor_id")
        return _transition_response(func(*args, **kwargs))

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except OperationCancelled as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to %s order", label)
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# CHECKOUT
# =============================================================================

@orders_bp.post("")
def create_order_route():
    """
    Create an order from cart lines.

    Request body:
    {
        "user_id": 7,
        "items": [{"product_id": 1, "variant_id": null, "quantity": 2}],
        "receiver_name": "...",
        "receiver_phone": "...",
        "shipping_address": "...",
        "shipping_fee": "30000",  (optional)
        "coupon_code": "SAVE10"  (optional)
    }

    A coupon that cannot be applied does not fail the checkout; the response
    carries "coupon_failure_reason".

    Returns:
        201: Order created
        400: Invalid input or insufficient stock
        404: Unknown product
    """
    try:
        data = require_fields(
            request.get_json(silent=True), "user_id", "items", "receiver_name", "receiver_phone", "shipping_address"
        )
        optional = {
            key: data[key]
            for key in (
                "receiver_email",
                "billing_address",
                "delivery_method",
                "shipping_fee",
                "tax_amount",
                "discount_amount",
                "gift_wrap_fee",
                "coupon_code",
                "currency",
                "customer_notes",
                "is_gift",
                "gift_message",
                "gift_wrap_requested",
                "is_urgent",
                "requires_signature",
                "is_insured",
            )
            if data.get(key) is not None
        }
        if data.get("estimated_delivery_date") is not None:
            optional["estimated_delivery_date"] = parse_optional_datetime(
                data["estimated_delivery_date"], field="estimated_delivery_date"
            )

        result = order_service.create_order(
            parse_positive_int(data["user_id"], field="user_id"),
            data["items"],
            receiver_name=data["receiver_name"],
            receiver_phone=data["receiver_phone"],
            shipping_address=data["shipping_address"],
            actor_id=_actor(data),
            **optional,
        )
        return jsonify({
            "order": result.order.to_dict(),
            "coupon_applied": result.coupon_applied,
            "coupon_failure_reason": result.coupon_failure_reason,
        }), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# STATUS WORKFLOW
# =============================================================================

@orders_bp.post("/<int:order_id>/status")
def transition_status_route(order_id: int):
    """
    Generic transition.

    Request body:
    {
        "status": "CONFIRMED",
        "note": "...",  (optional)
        "actor_id": 3  (optional)
    }
    """
    data = request.get_json(silent=True) or {}
    if not data.get("status"):
        return jsonify({"error": "status required"}), 400
    return _run_transition(
        "transition",
        order_service.transition_order_status,
        order_id,
        data["status"],
        note=data.get("note"),
        actor_id=data.get("actor_id"),
    )


@orders_bp.post("/<int:order_id>/confirm")
def confirm_order_route(order_id: int):
    data = request.get_json(silent=True) or {}
    return _run_transition("confirm", order_service.confirm_order, order_id, actor_id=data.get("actor_id"))


@orders_bp.post("/<int:order_id>/process")
def process_order_route(order_id: int):
    data = request.get_json(silent=True) or {}
    return _run_transition("process", order_service.process_order, order_id, actor_id=data.get("actor_id"))


@orders_bp.post("/<int:order_id>/ship")
def ship_order_route(order_id: int):
    """Body: {"tracking_number": "...", "carrier": "...", "actor_id": 3}"""
    data = request.get_json(silent=True) or {}
    return _run_transition(
        "ship",
        order_service.ship_order,
        order_id,
        tracking_number=data.get("tracking_number"),
        carrier=data.get("carrier"),
        actor_id=data.get("actor_id"),
    )


@orders_bp.post("/<int:order_id>/out-for-delivery")
def out_for_delivery_route(order_id: int):
    data = request.get_json(silent=True) or {}
    return _run_transition(
        "dispatch", order_service.mark_out_for_delivery, order_id, actor_id=data.get("actor_id"),
    )


@orders_bp.post("/<int:order_id>/deliver")
def deliver_order_route(order_id: int):
    data = request.get_json(silent=True) or {}
    return _run_transition("deliver", order_service.deliver_order, order_id, actor_id=data.get("actor_id"))


@orders_bp.post("/<int:order_id>/cancel")
def cancel_order_route(order_id: int):
    """Body: {"reason": "...", "actor_id": 3}"""
    data = request.get_json(silent=True) or {}
    return _run_transition(
        "cancel", order_service.cancel_order, order_id, reason=data.get("reason"), actor_id=data.get("actor_id"),
    )


@orders_bp.post("/<int:order_id>/return")
def return_order_route(order_id: int):
    """Only within the return window after delivery."""
    data = request.get_json(silent=True) or {}
    return _run_transition(
        "return", order_service.return_order, order_id, reason=data.get("reason"), actor_id=data.get("actor_id"),
    )


@orders_bp.post("/<int:order_id>/refund")
def refund_order_route(order_id: int):
    data = request.get_json(silent=True) or {}
    return _run_transition("refund", order_service.refund_order, order_id, actor_id=data.get("actor_id"))


# =============================================================================
# COUPONS & FEES
# =============================================================================

@orders_bp.post("/<int:order_id>/coupon")
def apply_coupon_route(order_id: int):
    """
    Apply a coupon to an open order.

    Returns:
        200: Applied
        422: Coupon rejected (reason in "failure_reason"); order unchanged
    """
    try:
        data = require_fields(request.get_json(silent=True), "code")
        result = order_service.apply_coupon_to_order(order_id, data["code"])
        return jsonify({
            "success": result.success,
            "failure_reason": result.failure_reason,
            "discount_amount": str(result.discount_amount),
            "order": result.order.to_dict(include_items=False),
        }), (200 if result.success else 422)

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to apply coupon to order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.delete("/<int:order_id>/coupon")
def remove_coupon_route(order_id: int):
    try:
        order = order_service.remove_coupon_from_order(order_id)
        return jsonify({"order": order.to_dict(include_items=False)}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to remove coupon from order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.patch("/<int:order_id>/fees")
def update_fees_route(order_id: int):
    """Body: any of shipping_fee, tax_amount, discount_amount, gift_wrap_fee."""
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.update_order_fees(
            order_id,
            shipping_fee=data.get("shipping_fee"),
            tax_amount=data.get("tax_amount"),
            discount_amount=data.get("discount_amount"),
            gift_wrap_fee=data.get("gift_wrap_fee"),
        )
        return jsonify({"order": order.to_dict(include_items=False)}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to update fees for order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# QUERIES
# =============================================================================

@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    try:
        return jsonify({"order": order_service.get_order(order_id).to_dict()}), 200

    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to get order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/number/<order_number>")
def get_order_by_number_route(order_number: str):
    try:
        return jsonify({"order": order_service.get_order_by_number(order_number).to_dict()}), 200

    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to get order by number")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>/history")
def order_history_route(order_id: int):
    try:
        history = order_service.get_order_status_history(order_id)
        return jsonify({"order_id": order_id, "history": [h.to_dict() for h in history]}), 200

    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to get order history")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/user/<int:user_id>")
def list_user_orders_route(user_id: int):
    """Query params: status, limit."""
    try:
        limit = request.args.get("limit")
        orders = order_service.list_user_orders(
            user_id,
            status=request.args.get("status"),
            limit=parse_positive_int(limit, field="limit") if limit is not None else None,
        )
        return jsonify({"orders": [o.to_dict(include_items=False) for o in orders]}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list user orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/stats")
def order_stats_route():
    """Query params: user_id (optional)."""
    try:
        user_id = request.args.get("user_id")
        stats = order_service.get_order_stats(parse_int(user_id, field="user_id") if user_id is not None else None)
        return jsonify(stats), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to compute order stats")
        return jsonify({"error": "Internal server error"}), 500
