# Overview: Flask API routes for inventory operations; parses input and returns JSON responses.

# backend/sakura/routes/inventory.py
"""
Inventory API Routes

DESIGN:
- Every stock change is a log entry; there is no endpoint that writes stock directly
- Corrections are compensating ADJUSTMENT entries
- Reconcile compares the live stock column with the replayed log
"""

from flask import Blueprint, request, jsonify, current_app

from ..extensions import db
from ..models import Product
from ..services import inventory_service
from ..validation import (
    ValidationError,
    NotFoundError,
    ConflictError,
    parse_choice,
    parse_int,
    parse_positive_int,
    parse_optional_datetime,
    require_fields,
)
from ..models.constants import INVENTORY_ACTIONS


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _optional_int(value, field: str):
    return parse_positive_int(value, field=field) if value is not None else None


# =============================================================================
# CATALOG
# =============================================================================

@inventory_bp.post("/products")
def create_product_route():
    """
    Body: {"sku": "...", "name": "...", "price": "120000", "opening_stock": 100}
    """
    try:
        data = require_fields(request.get_json(silent=True), "sku", "name", "price")
        product = inventory_service.create_product(
            data["sku"],
            data["name"],
            data["price"],
            opening_stock=parse_int(data.get("opening_stock", 0), field="opening_stock"),
            main_image=data.get("main_image"),
            user_id=_optional_int(data.get("actor_id"), "actor_id"),
        )
        return jsonify({"product": product.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to create product")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/products/<int:product_id>/variants")
def create_variant_route(product_id: int):
    try:
        data = require_fields(request.get_json(silent=True), "sku", "name", "price")
        variant = inventory_service.create_variant(
            product_id,
            data["sku"],
            data["name"],
            data["price"],
            opening_stock=parse_int(data.get("opening_stock", 0), field="opening_stock"),
            user_id=_optional_int(data.get("actor_id"), "actor_id"),
        )
        return jsonify({"variant": variant.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to create variant")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/products/<int:product_id>")
def get_product_route(product_id: int):
    product = db.session.get(Product, product_id)
    if product is None:
        return jsonify({"error": f"product {product_id} not found"}), 404
    body = product.to_dict()
    body["variants"] = [v.to_dict() for v in product.variants]
    return jsonify({"product": body}), 200


# =============================================================================
# ADJUSTMENTS
# =============================================================================

@inventory_bp.post("/adjustments")
def append_adjustment_route():
    """
    Append one stock movement.

    Request body:
    {
        "product_id": 1,
        "variant_id": null,
        "action": "DAMAGE",
        "quantity_delta": -1,
        "reason": "Broken in warehouse",
        "reference_type": "MANUAL",  (optional)
        "reference_id": 42,  (optional)
        "batch_number": "...", "expiry_date": "...", "location": "...",
        "notes": "...", "unit_cost": "...", "unit_price": "...",  (optional)
        "actor_id": 3  (optional)
    }

    Returns:
        201: {"new_stock": 96}
        400: Bad action, zero or wrong-signed delta, insufficient stock
        404: Unknown product/variant
    """
    try:
        data = require_fields(request.get_json(silent=True), "product_id", "action", "quantity_delta")
        details = {
            key: data[key]
            for key in ("batch_number", "location", "notes", "unit_cost", "unit_price")
            if data.get(key) is not None
        }
        if data.get("expiry_date") is not None:
            details["expiry_date"] = parse_optional_datetime(data["expiry_date"], field="expiry_date")

        product_id = parse_positive_int(data["product_id"], field="product_id")
        new_stock = inventory_service.append_inventory_adjustment(
            product_id,
            _optional_int(data.get("variant_id"), "variant_id"),
            parse_choice(data["action"], INVENTORY_ACTIONS, field="action"),
            parse_int(data["quantity_delta"], field="quantity_delta"),
            reason=data.get("reason"),
            reference_type=data.get("reference_type"),
            reference_id=_optional_int(data.get("reference_id"), "reference_id"),
            user_id=_optional_int(data.get("actor_id"), "actor_id"),
            **details,
        )
        return jsonify({"product_id": product_id, "new_stock": new_stock}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to append inventory adjustment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# QUERIES
# =============================================================================

@inventory_bp.get("/products/<int:product_id>/logs")
def list_logs_route(product_id: int):
    """Query params: variant_id, limit."""
    try:
        variant_id = request.args.get("variant_id")
        limit = request.args.get("limit")
        logs = inventory_service.list_inventory_logs(
            product_id,
            _optional_int(variant_id, "variant_id"),
            _optional_int(limit, "limit"),
        )
        return jsonify({"product_id": product_id, "logs": [log.to_dict() for log in logs]}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list inventory logs")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/products/<int:product_id>/reconcile")
def reconcile_route(product_id: int):
    try:
        variant_id = request.args.get("variant_id")
        summary = inventory_service.reconcile_stock(product_id, _optional_int(variant_id, "variant_id"))
        return jsonify(summary), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to reconcile stock")
        return jsonify({"error": "Internal server error"}), 500
