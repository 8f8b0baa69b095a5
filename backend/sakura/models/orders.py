from __future__ import annotations

import json
import random
from datetime import datetime
from decimal import Decimal

from flask import current_app, has_app_context

from ..extensions import db
from ..time_utils import to_utc_z, utcnow, days_between
from .append_only import append_only
from .constants import (
    ORDER_PENDING,
    ORDER_CONFIRMED,
    ORDER_PROCESSING,
    ORDER_SHIPPED,
    ORDER_OUT_FOR_DELIVERY,
    ORDER_DELIVERED,
    ORDER_CANCELLED,
    ORDER_RETURNED,
    ORDER_REFUNDED,
    ORDER_TRANSITIONS,
    ORDER_STATUS_DATE_FIELDS,
    PAYMENT_PENDING,
    PAYMENT_PAID,
    DELIVERY_STANDARD,
)

ZERO = Decimal("0.00")
DEFAULT_RETURN_WINDOW_DAYS = 30


def _dec(value) -> Decimal:
    return Decimal(value) if value is not None else ZERO


def _money(value):
    return str(value) if value is not None else None


def generate_order_number(now: datetime | None = None) -> str:
    """Timestamp + 3 random digits. Practically unique; the service retries on collision."""
    now = now or utcnow()
    return f"{now:%Y%m%d%H%M%S}{random.randint(100, 999)}"


class IllegalTransitionError(ValueError):
    """Raised when apply_status is called with a pair outside the adjacency table."""


class Order(db.Model):
    """
    Order aggregate: line items, totals, status machine, status history.

    TOTALS INVARIANT:
        total_amount = max(0, subtotal + shipping_fee + tax_amount + gift_wrap_fee
                              - discount_amount - coupon_discount)
        subtotal     = sum(item.total_price for item in items)
    Both are recomputed by calculate_totals() after every item, fee, or coupon
    change; they are never trusted from a cached value.

    STATUS MACHINE: see constants.ORDER_TRANSITIONS. Every accepted transition
    writes the status, stamps the matching *_date column, and appends exactly
    one OrderStatusHistory row.

    PAYMENT AXIS: payment_status is independent of status and is driven by
    payment_service (gateway callbacks, refunds).
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_user_status", "user_id", "status"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    order_number = db.Column(db.String(20), nullable=False, unique=True)

    # Pricing
    subtotal = db.Column(db.Numeric(18, 2), nullable=False, default=ZERO)
    shipping_fee = db.Column(db.Numeric(18, 2), nullable=False, default=ZERO)
    tax_amount = db.Column(db.Numeric(18, 2), nullable=False, default=ZERO)
    discount_amount = db.Column(db.Numeric(18, 2), nullable=False, default=ZERO)
    gift_wrap_fee = db.Column(db.Numeric(18, 2), nullable=False, default=ZERO)
    total_amount = db.Column(db.Numeric(18, 2), nullable=False, default=ZERO)
    currency = db.Column(db.String(3), nullable=False, default="VND")

    # Status axes
    status = db.Column(db.String(32), nullable=False, default=ORDER_PENDING, index=True)
    payment_status = db.Column(db.String(32), nullable=False, default=PAYMENT_PENDING, index=True)
    paid_amount = db.Column(db.Numeric(18, 2), nullable=False, default=ZERO)
    refunded_amount = db.Column(db.Numeric(18, 2), nullable=False, default=ZERO)

    # Receiver snapshot
    receiver_name = db.Column(db.String(100), nullable=False)
    receiver_phone = db.Column(db.String(20), nullable=False)
    receiver_email = db.Column(db.String(255), nullable=True)
    shipping_address = db.Column(db.Text, nullable=False)
    billing_address = db.Column(db.Text, nullable=True)

    # Delivery
    delivery_method = db.Column(db.String(32), nullable=False, default=DELIVERY_STANDARD)
    estimated_delivery_date = db.Column(db.DateTime(timezone=True), nullable=True)
    tracking_number = db.Column(db.String(100), nullable=True)
    shipping_carrier = db.Column(db.String(255), nullable=True)

    # Coupon (all set together or all cleared)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupons.id"), nullable=True, index=True)
    coupon_code = db.Column(db.String(50), nullable=True)
    coupon_discount = db.Column(db.Numeric(18, 2), nullable=False, default=ZERO)

    # Important dates
    order_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    confirmed_date = db.Column(db.DateTime(timezone=True), nullable=True)
    processing_date = db.Column(db.DateTime(timezone=True), nullable=True)
    shipped_date = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_date = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_date = db.Column(db.DateTime(timezone=True), nullable=True)
    returned_date = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_date = db.Column(db.DateTime(timezone=True), nullable=True)

    # Notes & flags
    customer_notes = db.Column(db.Text, nullable=True)
    admin_notes = db.Column(db.Text, nullable=True)
    cancel_reason = db.Column(db.Text, nullable=True)
    return_reason = db.Column(db.Text, nullable=True)
    is_gift = db.Column(db.Boolean, nullable=False, default=False)
    gift_message = db.Column(db.Text, nullable=True)
    gift_wrap_requested = db.Column(db.Boolean, nullable=False, default=False)
    is_urgent = db.Column(db.Boolean, nullable=False, default=False)
    requires_signature = db.Column(db.Boolean, nullable=False, default=False)
    is_insured = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
        lazy=True,
    )
    status_history = db.relationship(
        "OrderStatusHistory",
        back_populates="order",
        order_by="OrderStatusHistory.id",
        lazy=True,
    )
    coupon = db.relationship("Coupon")
    __mapper_args__ = {"version_id_col": version_id}

    # -------------------------------------------------------------------------
    # Totals
    # -------------------------------------------------------------------------

    def compute_subtotal(self) -> Decimal:
        return sum((_dec(item.total_price) for item in self.items), ZERO)

    def calculate_totals(self) -> Decimal:
        self.subtotal = self.compute_subtotal()
        total = (
            _dec(self.subtotal)
            + _dec(self.shipping_fee)
            + _dec(self.tax_amount)
            + _dec(self.gift_wrap_fee)
            - _dec(self.discount_amount)
            - _dec(self.coupon_discount)
        )
        self.total_amount = max(total, ZERO)
        return self.total_amount

    # -------------------------------------------------------------------------
    # Status machine
    # -------------------------------------------------------------------------

    def can_transition_to(self, new_status: str) -> bool:
        return new_status in ORDER_TRANSITIONS.get(self.status, frozenset())

    def apply_status(
        self,
        new_status: str,
        *,
        note: str | None = None,
        actor_id: int | None = None,
        now: datetime | None = None,
    ) -> "OrderStatusHistory":
        if not self.can_transition_to(new_status):
            raise IllegalTransitionError(f"cannot transition from {self.status} to {new_status}")

        now = now or utcnow()
        old_status = self.status
        self.status = new_status

        date_field = ORDER_STATUS_DATE_FIELDS.get(new_status)
        if date_field:
            setattr(self, date_field, now)

        entry = OrderStatusHistory(
            old_status=old_status,
            new_status=new_status,
            notes=note,
            created_by=actor_id,
            created_at=now,
        )
        self.status_history.append(entry)
        return entry

    # -------------------------------------------------------------------------
    # Coupon
    # -------------------------------------------------------------------------

    def apply_coupon(self, coupon, now: datetime | None = None) -> str | None:
        """
        Validate coupon against a freshly computed subtotal, then store the
        discount and recalculate totals.

        Returns None on success or the rejection reason; on rejection nothing
        but the recomputed subtotal is touched. Usage accounting is the
        caller's second phase.
        """
        self.subtotal = self.compute_subtotal()
        reason = coupon.invalid_reason(self.subtotal, now)
        if reason is not None:
            return reason

        self.coupon_id = coupon.id
        self.coupon_code = coupon.code
        self.coupon_discount = coupon.calculate_discount(self.subtotal, _dec(self.shipping_fee))
        self.calculate_totals()
        return None

    def remove_coupon(self) -> None:
        self.coupon_id = None
        self.coupon_code = None
        self.coupon_discount = ZERO
        self.calculate_totals()

    # -------------------------------------------------------------------------
    # Derived state (never stored)
    # -------------------------------------------------------------------------

    @property
    def can_cancel(self) -> bool:
        return self.status in (ORDER_PENDING, ORDER_CONFIRMED)

    @property
    def can_ship(self) -> bool:
        return self.status in (ORDER_CONFIRMED, ORDER_PROCESSING)

    @property
    def can_deliver(self) -> bool:
        return self.status in (ORDER_SHIPPED, ORDER_OUT_FOR_DELIVERY)

    def can_return_at(self, now: datetime | None = None, window_days: int | None = None) -> bool:
        if self.status != ORDER_DELIVERED or self.delivered_date is None:
            return False
        if window_days is None:
            window_days = DEFAULT_RETURN_WINDOW_DAYS
            if has_app_context():
                window_days = current_app.config.get("ORDER_RETURN_WINDOW_DAYS", DEFAULT_RETURN_WINDOW_DAYS)
        return days_between(self.delivered_date, now or utcnow()) <= window_days

    @property
    def can_return(self) -> bool:
        return self.can_return_at()

    @property
    def is_completed(self) -> bool:
        return self.status == ORDER_DELIVERED

    @property
    def is_cancelled(self) -> bool:
        return self.status == ORDER_CANCELLED

    @property
    def is_returned(self) -> bool:
        return self.status == ORDER_RETURNED

    @property
    def is_refunded(self) -> bool:
        return self.status == ORDER_REFUNDED

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PAYMENT_PAID

    @property
    def total_items(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def unique_items(self) -> int:
        return len(self.items)

    @property
    def formatted_order_number(self) -> str:
        return f"ORD-{self.order_number}"

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "order_number": self.order_number,
            "formatted_order_number": self.formatted_order_number,
            "subtotal": _money(self.subtotal),
            "shipping_fee": _money(self.shipping_fee),
            "tax_amount": _money(self.tax_amount),
            "discount_amount": _money(self.discount_amount),
            "gift_wrap_fee": _money(self.gift_wrap_fee),
            "coupon_id": self.coupon_id,
            "coupon_code": self.coupon_code,
            "coupon_discount": _money(self.coupon_discount),
            "total_amount": _money(self.total_amount),
            "currency": self.currency,
            "status": self.status,
            "payment_status": self.payment_status,
            "paid_amount": _money(self.paid_amount),
            "refunded_amount": _money(self.refunded_amount),
            "receiver_name": self.receiver_name,
            "receiver_phone": self.receiver_phone,
            "receiver_email": self.receiver_email,
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "delivery_method": self.delivery_method,
            "estimated_delivery_date": to_utc_z(self.estimated_delivery_date),
            "tracking_number": self.tracking_number,
            "shipping_carrier": self.shipping_carrier,
            "order_date": to_utc_z(self.order_date),
            "confirmed_date": to_utc_z(self.confirmed_date),
            "processing_date": to_utc_z(self.processing_date),
            "shipped_date": to_utc_z(self.shipped_date),
            "delivered_date": to_utc_z(self.delivered_date),
            "cancelled_date": to_utc_z(self.cancelled_date),
            "returned_date": to_utc_z(self.returned_date),
            "refunded_date": to_utc_z(self.refunded_date),
            "customer_notes": self.customer_notes,
            "cancel_reason": self.cancel_reason,
            "return_reason": self.return_reason,
            "is_gift": self.is_gift,
            "gift_message": self.gift_message,
            "gift_wrap_requested": self.gift_wrap_requested,
            "is_urgent": self.is_urgent,
            "requires_signature": self.requires_signature,
            "is_insured": self.is_insured,
            "can_cancel": self.can_cancel,
            "can_ship": self.can_ship,
            "can_deliver": self.can_deliver,
            "can_return": self.can_return,
            "is_paid": self.is_paid,
            "total_items": self.total_items,
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """
    One order line with a value copy of the catalog data at purchase time.

    Later product edits never alter these columns.
    INVARIANT: total_price = unit_price * quantity (recomputed eagerly).
    """
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(18, 2), nullable=False)
    total_price = db.Column(db.Numeric(18, 2), nullable=False)

    # Snapshot
    product_name = db.Column(db.String(500), nullable=False)
    product_sku = db.Column(db.String(100), nullable=False)
    product_image = db.Column(db.String(500), nullable=True)
    variant_name = db.Column(db.String(255), nullable=True)
    variant_sku = db.Column(db.String(100), nullable=True)
    product_attributes = db.Column(db.Text, nullable=True)  # JSON snapshot of custom options

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", back_populates="items")

    @classmethod
    def from_snapshot(cls, product, quantity: int, variant=None, attributes: dict | None = None) -> "OrderItem":
        item = cls(
            product_id=product.id,
            variant_id=variant.id if variant is not None else None,
            quantity=quantity,
            unit_price=Decimal(variant.price if variant is not None else product.price),
            product_name=product.name,
            product_sku=product.sku,
            product_image=product.main_image,
            variant_name=variant.name if variant is not None else None,
            variant_sku=variant.sku if variant is not None else None,
            product_attributes=json.dumps(attributes, sort_keys=True) if attributes else None,
        )
        item.calculate_total()
        return item

    def calculate_total(self) -> Decimal:
        self.total_price = _dec(self.unit_price) * int(self.quantity or 0)
        return self.total_price

    @property
    def display_name(self) -> str:
        return f"{self.product_name} - {self.variant_name}" if self.variant_name else self.product_name

    @property
    def display_sku(self) -> str:
        return self.variant_sku or self.product_sku

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "unit_price": _money(self.unit_price),
            "total_price": _money(self.total_price),
            "product_name": self.product_name,
            "product_sku": self.product_sku,
            "product_image": self.product_image,
            "variant_name": self.variant_name,
            "variant_sku": self.variant_sku,
            "display_name": self.display_name,
            "display_sku": self.display_sku,
            "product_attributes": json.loads(self.product_attributes) if self.product_attributes else None,
        }


@append_only
class OrderStatusHistory(db.Model):
    """
    Immutable audit trail of order status changes.

    One row per accepted transition (plus the creation row written at
    checkout). Never edited or pruned.
    """
    __tablename__ = "order_status_history"
    __table_args__ = (
        db.Index("ix_order_status_history_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    old_status = db.Column(db.String(32), nullable=False)
    new_status = db.Column(db.String(32), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    order = db.relationship("Order", back_populates="status_history")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
