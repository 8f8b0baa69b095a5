# Overview: Service-layer operations for orders; checkout, status workflow, coupons, and fees.

"""
Order Workflow Service

WHY: The order is the aggregate every other workflow hangs off. Checkout
creates it, staff and customers move it through the status machine, coupons
and fees change its totals, and stock is reserved or given back as it moves.

DESIGN PRINCIPLES:
- One DB transaction per operation. Stock log rows, coupon usage, status
  history and order columns commit together or not at all.
- Illegal transitions and unusable coupons are expected outcomes, returned
  as result objects (success=False, reason). Malformed input raises
  ValidationError; missing rows raise NotFoundError.
- Totals are recomputed from lines after every mutation, never patched.

CONCURRENCY:
- The order row is read with SELECT ... FOR UPDATE and carries a version
  column, so two staff members moving the same order cannot both win.
- Coupon usage is a compare-and-swap on the coupon version column. When a
  checkout or apply_coupon_to_order loses the race, run_with_retry rolls the
  whole unit back and re-runs it against fresh rows.
- Checkout and coupon application request SERIALIZABLE isolation.
- A Cancellation token is checked immediately before commit.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import (
    Coupon,
    Order,
    OrderItem,
    OrderStatusHistory,
    Product,
    ProductVariant,
    generate_order_number,
)
from ..models.constants import (
    ORDER_PENDING,
    ORDER_CONFIRMED,
    ORDER_PROCESSING,
    ORDER_SHIPPED,
    ORDER_OUT_FOR_DELIVERY,
    ORDER_DELIVERED,
    ORDER_CANCELLED,
    ORDER_RETURNED,
    ORDER_REFUNDED,
    ORDER_STATUSES,
    DELIVERY_METHODS,
    DELIVERY_STANDARD,
    COUPON_NOT_FOUND,
    COUPON_LIMIT_REACHED,
    INV_RESERVED,
    INV_RELEASED,
    INV_RETURN,
    PAYMENT_PENDING,
)
from ..time_utils import utcnow
from ..validation import (
    ValidationError,
    NotFoundError,
    parse_choice,
    parse_money,
    parse_positive_int,
    ZERO,
)
from .concurrency import Cancellation, begin_serializable, check_cancelled, lock_for_update, run_with_retry
from .inventory_service import _append_log

ORDER_REFERENCE = "ORDER"
COUPON_EDITABLE_STATUSES = (ORDER_PENDING, ORDER_CONFIRMED)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class TransitionResult:
    success: bool
    order: Order
    old_status: str
    new_status: str
    failure_reason: str | None = None


@dataclass(frozen=True)
class CouponApplication:
    success: bool
    order: Order
    failure_reason: str | None = None
    discount_amount: Decimal = ZERO


@dataclass(frozen=True)
class CheckoutResult:
    order: Order
    coupon_applied: bool = False
    coupon_failure_reason: str | None = None


# =============================================================================
# LOOKUPS
# =============================================================================

def _load_order(order_id: int, *, lock: bool = False) -> Order:
    query = db.session.query(Order).filter_by(id=order_id)
    if lock:
        query = lock_for_update(query)
    order = query.populate_existing().first()
    if order is None:
        raise NotFoundError(f"order {order_id} not found")
    return order


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"order {order_id} not found")
    return order


def get_order_by_number(order_number: str) -> Order:
    number = (order_number or "").strip()
    if number.upper().startswith("ORD-"):
        number = number[4:]
    order = db.session.query(Order).filter_by(order_number=number).first()
    if order is None:
        raise NotFoundError(f"order {order_number} not found")
    return order


def list_user_orders(user_id: int, status: str | None = None, limit: int | None = None) -> list[Order]:
    q = db.session.query(Order).filter(Order.user_id == user_id)
    if status is not None:
        q = q.filter(Order.status == parse_choice(status, ORDER_STATUSES, field="status"))
    q = q.order_by(Order.order_date.desc(), Order.id.desc())
    if limit is not None:
        q = q.limit(limit)
    return q.all()


def get_order_status_history(order_id: int) -> list[OrderStatusHistory]:
    get_order(order_id)
    return (
        db.session.query(OrderStatusHistory)
        .filter_by(order_id=order_id)
        .order_by(OrderStatusHistory.id.asc())
        .all()
    )


def get_order_stats(user_id: int | None = None) -> dict:
    q = db.session.query(Order.status, func.count(Order.id), func.coalesce(func.sum(Order.total_amount), 0))
    if user_id is not None:
        q = q.filter(Order.user_id == user_id)
    rows = q.group_by(Order.status).all()

    by_status = {status: 0 for status in ORDER_STATUSES}
    total_orders = 0
    revenue = ZERO
    for status, count, amount in rows:
        by_status[status] = int(count)
        total_orders += int(count)
        if status == ORDER_DELIVERED:
            revenue += Decimal(str(amount))

    return {
        "total_orders": total_orders,
        "by_status": by_status,
        "delivered_revenue": str(revenue.quantize(Decimal("0.01"))),
    }


# =============================================================================
# CHECKOUT
# =============================================================================

def _unique_order_number() -> str:
    for _ in range(5):
        number = generate_order_number()
        if db.session.query(Order.id).filter_by(order_number=number).first() is None:
            return number
    raise ValidationError("could not allocate an order number, please retry")


def _normalize_lines(items) -> list[dict]:
    if not isinstance(items, (list, tuple)) or not items:
        raise ValidationError("order must contain at least one item")
    lines = []
    for index, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        if raw.get("product_id") is None:
            raise ValidationError(f"items[{index}].product_id required")
        variant_id = raw.get("variant_id")
        lines.append({
            "product_id": parse_positive_int(raw.get("product_id"), field=f"items[{index}].product_id"),
            "variant_id": (
                parse_positive_int(variant_id, field=f"items[{index}].variant_id") if variant_id is not None else None
            ),
            "quantity": parse_positive_int(raw.get("quantity"), field=f"items[{index}].quantity"),
            "attributes": raw.get("attributes"),
        })
    return lines


def _build_item(line: dict) -> tuple[OrderItem, object]:
    """Snapshot one line and return it with the row whose stock it reserves."""
    product = lock_for_update(db.session.query(Product).filter_by(id=line["product_id"])).first()
    if product is None:
        raise NotFoundError(f"product {line['product_id']} not found")
    if not product.is_active:
        raise ValidationError(f"product {product.sku} is not available")

    variant = None
    if line["variant_id"] is not None:
        variant = lock_for_update(db.session.query(ProductVariant).filter_by(id=line["variant_id"])).first()
        if variant is None or variant.product_id != product.id:
            raise NotFoundError(f"variant {line['variant_id']} of product {product.id} not found")
        if not variant.is_active:
            raise ValidationError(f"variant {variant.sku} is not available")

    item = OrderItem.from_snapshot(product, line["quantity"], variant=variant, attributes=line["attributes"])
    return item, (variant if variant is not None else product)


def create_order(
    user_id: int,
    items,
    *,
    receiver_name: str,
    receiver_phone: str,
    shipping_address: str,
    receiver_email: str | None = None,
    billing_address: str | None = None,
    delivery_method: str = DELIVERY_STANDARD,
    shipping_fee=ZERO,
    tax_amount=ZERO,
    discount_amount=ZERO,
    gift_wrap_fee=ZERO,
    coupon_code: str | None = None,
    currency: str | None = None,
    customer_notes: str | None = None,
    is_gift: bool = False,
    gift_message: str | None = None,
    gift_wrap_requested: bool = False,
    is_urgent: bool = False,
    requires_signature: bool = False,
    is_insured: bool = False,
    estimated_delivery_date: datetime | None = None,
    actor_id: int | None = None,
    cancel: Cancellation | None = None,
) -> CheckoutResult:
    """
    Checkout: turn cart lines into a PENDING order.

    Steps (one transaction):
    1. Snapshot every line from the live catalog.
    2. Reserve stock for each line (RESERVED log entries, negative deltas).
    3. Compute totals and write the creation history row.
    4. Optionally apply coupon_code. An unusable coupon does NOT fail the
       checkout: the order is created without it and the reason is returned
       in CheckoutResult.coupon_failure_reason.

    Raises:
        ValidationError: malformed lines, inactive product, insufficient stock
        NotFoundError: unknown product or variant
    """
    if not receiver_name or not receiver_phone or not shipping_address:
        raise ValidationError("receiver_name, receiver_phone and shipping_address required")
    lines = _normalize_lines(items)
    delivery_method = parse_choice(delivery_method, DELIVERY_METHODS, field="delivery_method")
    fees = {
        "shipping_fee": parse_money(shipping_fee, field="shipping_fee"),
        "tax_amount": parse_money(tax_amount, field="tax_amount"),
        "discount_amount": parse_money(discount_amount, field="discount_amount"),
        "gift_wrap_fee": parse_money(gift_wrap_fee, field="gift_wrap_fee"),
    }
    code = coupon_code.strip().upper() if isinstance(coupon_code, str) and coupon_code.strip() else None

    def _op():
        begin_serializable()
        now = utcnow()

        order = Order(
            user_id=user_id,
            order_number=_unique_order_number(),
            currency=currency or current_app.config.get("DEFAULT_CURRENCY", "VND"),
            status=ORDER_PENDING,
            payment_status=PAYMENT_PENDING,
            paid_amount=ZERO,
            refunded_amount=ZERO,
            subtotal=ZERO,
            coupon_discount=ZERO,
            total_amount=ZERO,
            receiver_name=receiver_name,
            receiver_phone=receiver_phone,
            receiver_email=receiver_email,
            shipping_address=shipping_address,
            billing_address=billing_address or shipping_address,
            delivery_method=delivery_method,
            estimated_delivery_date=estimated_delivery_date,
            order_date=now,
            customer_notes=customer_notes,
            is_gift=bool(is_gift),
            gift_message=gift_message,
            gift_wrap_requested=bool(gift_wrap_requested),
            is_urgent=bool(is_urgent),
            requires_signature=bool(requires_signature),
            is_insured=bool(is_insured),
            **fees,
        )

        holders = []
        for line in lines:
            item, holder = _build_item(line)
            order.items.append(item)
            holders.append((item, holder))

        order.calculate_totals()
        order.status_history.append(
            OrderStatusHistory(
                old_status=ORDER_PENDING,
                new_status=ORDER_PENDING,
                notes="Order created",
                created_by=actor_id if actor_id is not None else user_id,
                created_at=now,
            )
        )
        db.session.add(order)
        db.session.flush()

        for item, holder in holders:
            _append_log(
                product_id=item.product_id,
                variant_id=item.variant_id,
                action=INV_RESERVED,
                quantity_delta=-item.quantity,
                reason=f"Reserved for order {order.order_number}",
                reference_type=ORDER_REFERENCE,
                reference_id=order.id,
                user_id=actor_id if actor_id is not None else user_id,
                holder=holder,
                unit_price=item.unit_price,
            )

        coupon_applied = False
        failure_reason = None
        if code is not None:
            coupon = db.session.query(Coupon).filter_by(code=code).populate_existing().first()
            if coupon is None:
                failure_reason = COUPON_NOT_FOUND
            else:
                failure_reason = order.apply_coupon(coupon, now)
                if failure_reason is None and not coupon.try_increment_usage():
                    order.remove_coupon()
                    failure_reason = COUPON_LIMIT_REACHED
                coupon_applied = failure_reason is None
            if failure_reason is not None:
                current_app.logger.info(
                    "Checkout for user %s proceeds without coupon %s: %s", user_id, code, failure_reason,
                )

        check_cancelled(cancel)
        db.session.commit()
        return CheckoutResult(order=order, coupon_applied=coupon_applied, coupon_failure_reason=failure_reason)

    return run_with_retry(_op)


# =============================================================================
# STATUS WORKFLOW
# =============================================================================

def _release_stock(order: Order, action: str, reason: str, actor_id: int | None) -> None:
    for item in order.items:
        _append_log(
            product_id=item.product_id,
            variant_id=item.variant_id,
            action=action,
            quantity_delta=item.quantity,
            reason=reason,
            reference_type=ORDER_REFERENCE,
            reference_id=order.id,
            user_id=actor_id,
            unit_price=item.unit_price,
        )


def _release_coupon(order: Order) -> None:
    if order.coupon_id is None:
        return
    coupon = db.session.query(Coupon).filter_by(id=order.coupon_id).populate_existing().first()
    if coupon is not None:
        coupon.decrement_usage()


def _apply_side_effects(order: Order, new_status: str, actor_id: int | None) -> None:
    if new_status == ORDER_CANCELLED:
        _release_stock(order, INV_RELEASED, f"Order {order.order_number} cancelled", actor_id)
        _release_coupon(order)
    elif new_status == ORDER_RETURNED:
        _release_stock(order, INV_RETURN, f"Order {order.order_number} returned", actor_id)


def _transition(
    order_id: int,
    target_status: str,
    *,
    note: str | None = None,
    actor_id: int | None = None,
    cancel: Cancellation | None = None,
    updates: dict | None = None,
    precondition=None,
) -> TransitionResult:
    target_status = parse_choice(target_status, ORDER_STATUSES, field="status")

    def _op():
        order = _load_order(order_id, lock=True)
        old_status = order.status

        failure = None
        if not order.can_transition_to(target_status):
            failure = f"cannot transition from {old_status} to {target_status}"
        elif precondition is not None:
            failure = precondition(order)
        if failure is not None:
            db.session.rollback()
            return TransitionResult(False, order, old_status, old_status, failure)

        for field, value in (updates or {}).items():
            setattr(order, field, value)
        order.apply_status(target_status, note=note, actor_id=actor_id)
        _apply_side_effects(order, target_status, actor_id)

        check_cancelled(cancel)
        db.session.commit()
        current_app.logger.info("Order %s: %s -> %s", order.order_number, old_status, target_status)
        return TransitionResult(True, order, old_status, target_status)

    return run_with_retry(_op)


def transition_order_status(
    order_id: int,
    target_status: str,
    note: str | None = None,
    actor_id: int | None = None,
    cancel: Cancellation | None = None,
) -> TransitionResult:
    """
    Move an order along the status machine.

    On success the status, its *_date stamp, and one history row are written
    together with the side effects of the target status:
    - CANCELLED gives reserved stock back (RELEASED entries) and releases the
      coupon use.
    - RETURNED restocks the lines (RETURN entries).

    An illegal pair returns success=False with "cannot transition from X to Y"
    and writes nothing.

    Raises:
        ValidationError: target_status is not a known status
        NotFoundError: order does not exist
    """
    return _transition(order_id, target_status, note=note, actor_id=actor_id, cancel=cancel)


def confirm_order(order_id: int, actor_id: int | None = None, note: str | None = None) -> TransitionResult:
    return _transition(order_id, ORDER_CONFIRMED, note=note or "Order confirmed", actor_id=actor_id)


def process_order(order_id: int, actor_id: int | None = None, note: str | None = None) -> TransitionResult:
    return _transition(order_id, ORDER_PROCESSING, note=note or "Order is being prepared", actor_id=actor_id)


def ship_order(
    order_id: int,
    tracking_number: str | None = None,
    carrier: str | None = None,
    actor_id: int | None = None,
) -> TransitionResult:
    updates = {}
    if tracking_number:
        updates["tracking_number"] = tracking_number
    if carrier:
        updates["shipping_carrier"] = carrier
    note = f"Shipped via {carrier}, tracking {tracking_number}" if tracking_number else "Order shipped"
    return _transition(order_id, ORDER_SHIPPED, note=note, actor_id=actor_id, updates=updates)


def mark_out_for_delivery(order_id: int, actor_id: int | None = None) -> TransitionResult:
    return _transition(order_id, ORDER_OUT_FOR_DELIVERY, note="Out for delivery", actor_id=actor_id)


def deliver_order(order_id: int, actor_id: int | None = None) -> TransitionResult:
    return _transition(order_id, ORDER_DELIVERED, note="Order delivered", actor_id=actor_id)


def cancel_order(
    order_id: int,
    reason: str | None = None,
    actor_id: int | None = None,
    cancel: Cancellation | None = None,
) -> TransitionResult:
    return _transition(
        order_id,
        ORDER_CANCELLED,
        note=reason or "Order cancelled",
        actor_id=actor_id,
        cancel=cancel,
        updates={"cancel_reason": reason},
    )


def _returnable(order: Order) -> str | None:
    if not order.can_return:
        return "return window has closed"
    return None


def return_order(order_id: int, reason: str | None = None, actor_id: int | None = None) -> TransitionResult:
    """DELIVERED -> RETURNED, only inside the configured return window."""
    return _transition(
        order_id,
        ORDER_RETURNED,
        note=reason or "Order returned",
        actor_id=actor_id,
        updates={"return_reason": reason},
        precondition=_returnable,
    )


def refund_order(order_id: int, actor_id: int | None = None, note: str | None = None) -> TransitionResult:
    return _transition(order_id, ORDER_REFUNDED, note=note or "Order refunded", actor_id=actor_id)


# =============================================================================
# COUPONS & FEES
# =============================================================================

def apply_coupon_to_order(
    order_id: int,
    code: str,
    cancel: Cancellation | None = None,
    now: datetime | None = None,
) -> CouponApplication:
    """
    Apply a coupon to an existing order in two phases.

    Phase 1 validates the coupon against the order's current subtotal and
    recomputes the totals in memory. Phase 2 consumes one coupon use. Both
    commit together; if the use cannot be consumed (limit reached, or lost to
    a concurrent checkout and still exhausted on retry) everything rolls back
    and success=False.

    Only PENDING and CONFIRMED orders accept coupons. A coupon already on the
    order is replaced and its use given back in the same transaction.
    Re-applying the coupon that is already on the order is a no-op success.
    """
    if not isinstance(code, str) or not code.strip():
        raise ValidationError("coupon code is required")
    normalized = code.strip().upper()

    def _op():
        begin_serializable()
        order = _load_order(order_id, lock=True)

        if order.status not in COUPON_EDITABLE_STATUSES:
            db.session.rollback()
            return CouponApplication(False, order, f"cannot apply coupon to order in status {order.status}")

        coupon = db.session.query(Coupon).filter_by(code=normalized).populate_existing().first()
        if coupon is None:
            db.session.rollback()
            return CouponApplication(False, order, COUPON_NOT_FOUND)

        if order.coupon_id == coupon.id:
            db.session.rollback()
            return CouponApplication(True, order, None, Decimal(order.coupon_discount))

        if order.coupon_id is not None:
            _release_coupon(order)
            order.remove_coupon()

        reason = order.apply_coupon(coupon, now)
        if reason is None and not coupon.try_increment_usage():
            reason = COUPON_LIMIT_REACHED
        if reason is not None:
            db.session.rollback()
            current_app.logger.info("Coupon %s not applied to order %s: %s", normalized, order_id, reason)
            return CouponApplication(False, order, reason)

        check_cancelled(cancel)
        db.session.commit()
        return CouponApplication(True, order, None, Decimal(order.coupon_discount))

    return run_with_retry(_op)


def remove_coupon_from_order(order_id: int) -> Order:
    def _op():
        order = _load_order(order_id, lock=True)
        if order.status not in COUPON_EDITABLE_STATUSES:
            raise ValidationError(f"cannot remove coupon from order in status {order.status}")
        if order.coupon_id is None:
            db.session.rollback()
            return order
        _release_coupon(order)
        order.remove_coupon()
        db.session.commit()
        return order

    return run_with_retry(_op)


def update_order_fees(
    order_id: int,
    shipping_fee=None,
    tax_amount=None,
    discount_amount=None,
    gift_wrap_fee=None,
) -> Order:
    """
    Change order-level fees and recompute totals.

    The applied coupon's discount is recomputed against the new figures (a
    free-shipping coupon follows the new shipping fee) without consuming
    another use.
    """
    changes = {
        field: parse_money(value, field=field)
        for field, value in (
            ("shipping_fee", shipping_fee),
            ("tax_amount", tax_amount),
            ("discount_amount", discount_amount),
            ("gift_wrap_fee", gift_wrap_fee),
        )
        if value is not None
    }
    if not changes:
        raise ValidationError("no fee changes given")

    def _op():
        order = _load_order(order_id, lock=True)
        if order.status not in COUPON_EDITABLE_STATUSES:
            raise ValidationError(f"cannot change fees of order in status {order.status}")
        for field, value in changes.items():
            setattr(order, field, value)
        if order.coupon_id is not None and order.coupon is not None:
            order.subtotal = order.compute_subtotal()
            order.coupon_discount = order.coupon.calculate_discount(order.subtotal, Decimal(order.shipping_fee))
        order.calculate_totals()
        db.session.commit()
        return order

    return run_with_retry(_op)
