# Overview: Service-layer operations for the inventory adjustment log; stock changes and their audit rows.

from __future__ import annotations

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Product, ProductVariant, InventoryLog
from ..models.constants import (
    INVENTORY_ACTIONS,
    INVENTORY_INBOUND_ACTIONS,
    INVENTORY_OUTBOUND_ACTIONS,
    INV_PURCHASE,
)
from ..validation import ValidationError, NotFoundError, to_money
from .concurrency import lock_for_update, run_with_retry
"""
Inventory Log Invariants (authoritative)

Stock model:
- Product.stock (or ProductVariant.stock for variant lines) is the live
  running total, kept for fast reads.
- Every change to it appends exactly one InventoryLog row in the SAME DB
  transaction. There is no code path that writes stock without a log row.
- Replaying quantity deltas in creation order from zero reproduces the
  live stock.

Sign rules:
- Inbound actions (PURCHASE, RETURN, FOUND, RELEASED) carry a positive delta.
- Outbound actions (SALE, DAMAGE, LOST, EXPIRED, RESERVED, PROMOTION, SAMPLE)
  carry a negative delta.
- ADJUSTMENT, TRANSFER, QUALITY_CHECK accept either sign.
- A zero delta is rejected; stock may never go below zero.

Audit:
- Log rows are append-only. A mistake is corrected by a compensating
  ADJUSTMENT entry, never by editing history.
"""


def _validate_action_delta(action: str, quantity_delta: int) -> None:
    if action not in INVENTORY_ACTIONS:
        raise ValidationError(f"Invalid inventory action '{action}'")
    if isinstance(quantity_delta, bool) or not isinstance(quantity_delta, int):
        raise ValidationError("quantity_delta must be an integer")
    if quantity_delta == 0:
        raise ValidationError("quantity_delta cannot be zero")
    if action in INVENTORY_INBOUND_ACTIONS and quantity_delta < 0:
        raise ValidationError(f"{action} requires a positive quantity")
    if action in INVENTORY_OUTBOUND_ACTIONS and quantity_delta > 0:
        raise ValidationError(f"{action} requires a negative quantity")


def _stock_holder(product_id: int, variant_id: int | None, *, lock: bool = False):
    """Return the row whose stock column an entry moves (variant when given)."""
    if variant_id is not None:
        query = db.session.query(ProductVariant).filter_by(id=variant_id)
        if lock:
            query = lock_for_update(query)
        variant = query.first()
        if variant is None or variant.product_id != product_id:
            raise NotFoundError(f"variant {variant_id} of product {product_id} not found")
        return variant

    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None:
        raise NotFoundError(f"product {product_id} not found")
    return product


def _append_log(
    *,
    product_id: int,
    variant_id: int | None,
    action: str,
    quantity_delta: int,
    reason: str | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    user_id: int | None = None,
    holder=None,
    batch_number: str | None = None,
    expiry_date=None,
    location: str | None = None,
    notes: str | None = None,
    unit_cost=None,
    unit_price=None,
) -> InventoryLog:
    """
    Move stock and append the matching log row without committing.

    Used inside larger units of work (checkout, cancellation, return) so the
    stock change commits or rolls back together with the order change.
    """
    _validate_action_delta(action, quantity_delta)

    if holder is None:
        holder = _stock_holder(product_id, variant_id, lock=True)

    previous_stock = int(holder.stock or 0)
    new_stock = previous_stock + quantity_delta
    if new_stock < 0:
        raise ValidationError(
            f"Insufficient stock for product {product_id}"
            + (f" variant {variant_id}" if variant_id is not None else "")
            + f": have {previous_stock}, need {-quantity_delta}"
        )

    holder.stock = new_stock

    unit_cost = to_money(unit_cost, field="unit_cost") if unit_cost is not None else None
    unit_price = to_money(unit_price, field="unit_price") if unit_price is not None else None
    units = abs(quantity_delta)

    entry = InventoryLog(
        product_id=product_id,
        variant_id=variant_id,
        action=action,
        quantity=quantity_delta,
        previous_stock=previous_stock,
        new_stock=new_stock,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
        batch_number=batch_number,
        expiry_date=expiry_date,
        location=location,
        notes=notes,
        unit_cost=unit_cost,
        total_cost=unit_cost * units if unit_cost is not None else None,
        unit_price=unit_price,
        total_value=unit_price * units if unit_price is not None else None,
        user_id=user_id,
    )
    db.session.add(entry)
    return entry


def append_inventory_adjustment(
    product_id: int,
    variant_id: int | None,
    action: str,
    quantity_delta: int,
    reason: str | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    user_id: int | None = None,
    **details,
) -> int:
    """
    Record one stock movement and return the resulting stock level.

    Rejects unknown actions, zero deltas, deltas whose sign contradicts the
    action, and movements that would take stock below zero. The stock column
    and the log row commit together.

    details: optional batch_number, expiry_date, location, notes, unit_cost,
    unit_price.
    """
    def _op():
        entry = _append_log(
            product_id=product_id,
            variant_id=variant_id,
            action=action,
            quantity_delta=quantity_delta,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            user_id=user_id,
            **details,
        )
        db.session.commit()
        return entry.new_stock

    return run_with_retry(_op)


def create_product(
    sku: str,
    name: str,
    price,
    *,
    opening_stock: int = 0,
    main_image: str | None = None,
    user_id: int | None = None,
) -> Product:
    """
    Create a catalog product. Opening stock is booked as a PURCHASE entry so
    the log replays to the live level from the first row.
    """
    if not sku or not name:
        raise ValidationError("sku and name required")
    price = to_money(price, field="price")
    if price < 0:
        raise ValidationError("price cannot be negative")
    if opening_stock < 0:
        raise ValidationError("opening_stock cannot be negative")

    def _op():
        if db.session.query(Product).filter_by(sku=sku).first() is not None:
            raise ValidationError(f"SKU '{sku}' already exists")
        product = Product(sku=sku, name=name, price=price, stock=0, main_image=main_image)
        db.session.add(product)
        db.session.flush()
        if opening_stock:
            _append_log(
                product_id=product.id,
                variant_id=None,
                action=INV_PURCHASE,
                quantity_delta=opening_stock,
                reason="Opening stock",
                reference_type="MANUAL",
                user_id=user_id,
                holder=product,
            )
        db.session.commit()
        return product

    return run_with_retry(_op)


def create_variant(
    product_id: int,
    sku: str,
    name: str,
    price,
    *,
    opening_stock: int = 0,
    user_id: int | None = None,
) -> ProductVariant:
    price = to_money(price, field="price")
    if price < 0:
        raise ValidationError("price cannot be negative")
    if opening_stock < 0:
        raise ValidationError("opening_stock cannot be negative")

    def _op():
        if db.session.get(Product, product_id) is None:
            raise NotFoundError(f"product {product_id} not found")
        if db.session.query(ProductVariant).filter_by(sku=sku).first() is not None:
            raise ValidationError(f"SKU '{sku}' already exists")
        variant = ProductVariant(product_id=product_id, sku=sku, name=name, price=price, stock=0)
        db.session.add(variant)
        db.session.flush()
        if opening_stock:
            _append_log(
                product_id=product_id,
                variant_id=variant.id,
                action=INV_PURCHASE,
                quantity_delta=opening_stock,
                reason="Opening stock",
                reference_type="MANUAL",
                user_id=user_id,
                holder=variant,
            )
        db.session.commit()
        return variant

    return run_with_retry(_op)


def list_inventory_logs(product_id: int, variant_id: int | None = None, limit: int | None = None) -> list[InventoryLog]:
    """Log entries for one stock holder, oldest first."""
    q = db.session.query(InventoryLog).filter(InventoryLog.product_id == product_id)
    if variant_id is None:
        q = q.filter(InventoryLog.variant_id.is_(None))
    else:
        q = q.filter(InventoryLog.variant_id == variant_id)
    q = q.order_by(InventoryLog.id.asc())
    if limit is not None:
        q = q.limit(limit)
    return q.all()


def list_reference_logs(reference_type: str, reference_id: int) -> list[InventoryLog]:
    return (
        db.session.query(InventoryLog)
        .filter_by(reference_type=reference_type, reference_id=reference_id)
        .order_by(InventoryLog.id.asc())
        .all()
    )


def replay_stock(product_id: int, variant_id: int | None = None) -> int:
    """
    Rebuild stock from the log alone: sum of deltas from zero.

    Log rows are only ever inserted, so id order is creation order.
    """
    q = db.session.query(func.coalesce(func.sum(InventoryLog.quantity), 0)).filter(
        InventoryLog.product_id == product_id
    )
    if variant_id is None:
        q = q.filter(InventoryLog.variant_id.is_(None))
    else:
        q = q.filter(InventoryLog.variant_id == variant_id)
    return int(q.scalar() or 0)


def reconcile_stock(product_id: int, variant_id: int | None = None) -> dict:
    """
    Compare the live stock column with the replayed log.

    Drift means some writer bypassed the log; it is reported, not repaired.
    Fix it with a compensating ADJUSTMENT entry.
    """
    holder = _stock_holder(product_id, variant_id)
    live = int(holder.stock or 0)
    replayed = replay_stock(product_id, variant_id)
    drift = live - replayed
    if drift:
        current_app.logger.warning(
            "Inventory drift product=%s variant=%s live=%s replayed=%s",
            product_id, variant_id, live, replayed,
        )
    return {
        "product_id": product_id,
        "variant_id": variant_id,
        "live_stock": live,
        "replayed_stock": replayed,
        "drift": drift,
        "consistent": drift == 0,
    }
