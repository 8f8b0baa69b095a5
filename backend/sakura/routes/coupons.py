# Overview: Flask API routes for coupon operations; parses input and returns JSON responses.

# backend/sakura/routes/coupons.py
"""
Coupon API Routes

DESIGN:
- Validate a code against an order amount without consuming a use
- Create, edit, activate and deactivate coupons
- List active, expired and soon-to-expire coupons
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import coupon_service
from ..validation import (
    ValidationError,
    NotFoundError,
    ConflictError,
    parse_money,
    parse_int,
    parse_bool,
    parse_optional_datetime,
    require_fields,
)


coupons_bp = Blueprint("coupons", __name__, url_prefix="/api/coupons")


def _coupon_fields(data: dict) -> dict:
    fields = {}
    for key in ("name", "description", "coupon_type"):
        if key in data:
            fields[key] = data[key]
    for key in ("is_active", "is_public"):
        if key in data:
            fields[key] = parse_bool(data[key], field=key)
    if "coupon_type" in fields and isinstance(fields["coupon_type"], str):
        fields["coupon_type"] = fields["coupon_type"].strip().upper()
    if "value" in data:
        fields["value"] = parse_money(data["value"], field="value")
    for key in ("min_order_amount", "max_discount_amount"):
        if key in data:
            fields[key] = parse_money(data[key], field=key, optional=True)
    if "usage_limit" in data:
        fields["usage_limit"] = parse_int(data["usage_limit"], field="usage_limit") if data["usage_limit"] is not None else None
    for key in ("start_date", "end_date"):
        if key in data:
            fields[key] = parse_optional_datetime(data[key], field=key)
    return fields


# =============================================================================
# VALIDATION
# =============================================================================

@coupons_bp.post("/validate")
def validate_coupon_route():
    """
    Check a coupon against an order amount. Does not consume a use.

    Request body:
    {
        "code": "SAVE10",
        "order_amount": "500000"
    }

    Returns:
        200: {"is_valid": ..., "reason": ..., "discount_amount": ..., "final_amount": ...}
        400: Invalid input
    """
    try:
        data = require_fields(request.get_json(silent=True), "code", "order_amount")
        result = coupon_service.validate_coupon_for_order(data["code"], data["order_amount"])
        return jsonify(result.to_dict()), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to validate coupon")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ADMINISTRATION
# =============================================================================

@coupons_bp.post("")
def create_coupon_route():
    """
    Create a coupon.

    Request body:
    {
        "code": "SAVE10",
        "name": "10% off",
        "coupon_type": "PERCENTAGE",
        "value": "10",
        "max_discount_amount": "40000",  (optional)
        "min_order_amount": "100000",  (optional)
        "usage_limit": 100,  (optional)
        "start_date": "2026-01-01T00:00:00Z",
        "end_date": "2026-12-31T23:59:59Z"
    }
    """
    try:
        data = require_fields(
            request.get_json(silent=True), "code", "name", "coupon_type", "value", "start_date", "end_date"
        )
        fields = _coupon_fields(data)
        coupon = coupon_service.create_coupon(code=data["code"], **fields)
        return jsonify({"coupon": coupon.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to create coupon")
        return jsonify({"error": "Internal server error"}), 500


@coupons_bp.patch("/<int:coupon_id>")
def update_coupon_route(coupon_id: int):
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or not data:
            return jsonify({"error": "JSON body required"}), 400
        coupon = coupon_service.update_coupon(coupon_id, **_coupon_fields(data))
        return jsonify({"coupon": coupon.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to update coupon")
        return jsonify({"error": "Internal server error"}), 500


@coupons_bp.post("/<int:coupon_id>/activate")
def activate_coupon_route(coupon_id: int):
    return _set_active(coupon_id, True)


@coupons_bp.post("/<int:coupon_id>/deactivate")
def deactivate_coupon_route(coupon_id: int):
    return _set_active(coupon_id, False)


def _set_active(coupon_id: int, is_active: bool):
    try:
        coupon = coupon_service.set_coupon_active(coupon_id, is_active)
        return jsonify({"coupon": coupon.to_dict()}), 200

    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to change coupon %s active flag", coupon_id)
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# QUERIES
# =============================================================================

@coupons_bp.get("")
def list_coupons_route():
    """
    Query params:
    - active_only: only currently usable coupons (default: false)
    - search: substring of code or name
    """
    try:
        active_only = request.args.get("active_only", "false").lower() == "true"
        coupons = coupon_service.list_coupons(active_only=active_only, search=request.args.get("search"))
        return jsonify({"coupons": [c.to_dict() for c in coupons]}), 200

    except Exception:
        current_app.logger.exception("Failed to list coupons")
        return jsonify({"error": "Internal server error"}), 500


@coupons_bp.get("/<int:coupon_id>")
def get_coupon_route(coupon_id: int):
    try:
        return jsonify({"coupon": coupon_service.get_coupon(coupon_id).to_dict()}), 200

    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to get coupon")
        return jsonify({"error": "Internal server error"}), 500


@coupons_bp.get("/code/<code>")
def get_coupon_by_code_route(code: str):
    try:
        coupon = coupon_service.get_coupon_by_code(code)
        if coupon is None:
            return jsonify({"error": f"coupon {code} not found"}), 404
        return jsonify({"coupon": coupon.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to get coupon by code")
        return jsonify({"error": "Internal server error"}), 500


@coupons_bp.get("/expired")
def expired_coupons_route():
    try:
        coupons = coupon_service.get_expired_coupons()
        return jsonify({"coupons": [c.to_dict() for c in coupons]}), 200

    except Exception:
        current_app.logger.exception("Failed to list expired coupons")
        return jsonify({"error": "Internal server error"}), 500


@coupons_bp.get("/expiring")
def expiring_coupons_route():
    """Query params: days (default 7)."""
    try:
        days = parse_int(request.args.get("days", "7"), field="days")
        coupons = coupon_service.get_expiring_coupons(days)
        return jsonify({"days": days, "coupons": [c.to_dict() for c in coupons]}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list expiring coupons")
        return jsonify({"error": "Internal server error"}), 500


@coupons_bp.get("/stats")
def coupon_stats_route():
    try:
        return jsonify(coupon_service.get_coupon_stats()), 200

    except Exception:
        current_app.logger.exception("Failed to compute coupon stats")
        return jsonify({"error": "Internal server error"}), 500
