from __future__ import annotations

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from ..extensions import db
from ..time_utils import to_utc_z, utcnow
from .constants import (
    COUPON_PERCENTAGE,
    COUPON_FIXED_AMOUNT,
    COUPON_FREE_SHIPPING,
    COUPON_INACTIVE,
    COUPON_NOT_STARTED,
    COUPON_EXPIRED,
    COUPON_LIMIT_REACHED,
    COUPON_MIN_ORDER_NOT_MET,
)

_CENT = Decimal("0.01")
_ZERO = Decimal("0.00")


class CouponUsageLimitError(RuntimeError):
    """Raised by Coupon.increment_usage when the usage limit is already reached."""


class Coupon(db.Model):
    """
    Named discount rule with usage accounting.

    CONCURRENCY:
    version_id is the optimistic-concurrency token. Every flush of a changed
    coupon runs UPDATE ... WHERE id = :id AND version_id = :seen, so two
    checkouts that both read used_count = limit - 1 cannot both commit an
    increment: the second one gets StaleDataError and must re-read.

    INVARIANT: used_count <= usage_limit whenever usage_limit is set.
    """
    __tablename__ = "coupons"
    __table_args__ = (
        db.Index("ix_coupons_active_window", "is_active", "start_date", "end_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Stored upper-case; lookups are case-insensitive
    code = db.Column(db.String(50), nullable=False, unique=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)

    coupon_type = db.Column(db.String(32), nullable=False)
    # Percent for PERCENTAGE, currency amount for FIXED_AMOUNT
    value = db.Column(db.Numeric(18, 2), nullable=False, default=0)

    min_order_amount = db.Column(db.Numeric(18, 2), nullable=True)
    max_discount_amount = db.Column(db.Numeric(18, 2), nullable=True)

    usage_limit = db.Column(db.Integer, nullable=True)
    used_count = db.Column(db.Integer, nullable=False, default=0)

    start_date = db.Column(db.DateTime(timezone=True), nullable=False)
    end_date = db.Column(db.DateTime(timezone=True), nullable=False)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    is_public = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    # -------------------------------------------------------------------------
    # Validation (pure, fails closed)
    # -------------------------------------------------------------------------

    def invalid_reason(self, order_amount: Decimal | None = None, now: datetime | None = None) -> str | None:
        """Return the first failed usability rule, or None when the coupon is usable."""
        now = now or utcnow()
        if not self.is_active:
            return COUPON_INACTIVE
        if self.start_date is not None and now < self.start_date:
            return COUPON_NOT_STARTED
        if self.end_date is not None and now > self.end_date:
            return COUPON_EXPIRED
        if self.usage_limit is not None and (self.used_count or 0) >= self.usage_limit:
            return COUPON_LIMIT_REACHED
        if (
            order_amount is not None
            and self.min_order_amount is not None
            and Decimal(order_amount) < self.min_order_amount
        ):
            return COUPON_MIN_ORDER_NOT_MET
        return None

    def is_valid_for_order(self, order_amount: Decimal, now: datetime | None = None) -> bool:
        try:
            return self.invalid_reason(order_amount, now) is None
        except (TypeError, ArithmeticError):
            return False

    @property
    def is_usable(self) -> bool:
        return self.invalid_reason() is None

    @property
    def status_label(self) -> str:
        reason = self.invalid_reason()
        return {
            None: "active",
            COUPON_NOT_STARTED: "scheduled",
            COUPON_EXPIRED: "expired",
            COUPON_LIMIT_REACHED: "exhausted",
        }.get(reason, "inactive")

    # -------------------------------------------------------------------------
    # Usage accounting (in-memory; persisted with the version check on flush)
    # -------------------------------------------------------------------------

    def try_increment_usage(self) -> bool:
        if self.usage_limit is not None and (self.used_count or 0) >= self.usage_limit:
            return False
        self.used_count = (self.used_count or 0) + 1
        return True

    def increment_usage(self) -> None:
        if not self.try_increment_usage():
            raise CouponUsageLimitError(f"coupon {self.code} usage limit reached")

    def decrement_usage(self) -> None:
        if (self.used_count or 0) > 0:
            self.used_count -= 1

    # -------------------------------------------------------------------------
    # Discount
    # -------------------------------------------------------------------------

    def calculate_discount(self, subtotal: Decimal, shipping_fee: Decimal = _ZERO) -> Decimal:
        subtotal = Decimal(subtotal)
        if self.coupon_type == COUPON_PERCENTAGE:
            discount = subtotal * Decimal(self.value) / Decimal(100)
            if self.max_discount_amount is not None:
                discount = min(discount, Decimal(self.max_discount_amount))
        elif self.coupon_type == COUPON_FIXED_AMOUNT:
            discount = min(Decimal(self.value), subtotal)
        elif self.coupon_type == COUPON_FREE_SHIPPING:
            discount = Decimal(shipping_fee)
        else:
            discount = _ZERO
        return max(discount, _ZERO).quantize(_CENT, rounding=ROUND_HALF_UP)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "coupon_type": self.coupon_type,
            "value": str(self.value) if self.value is not None else None,
            "min_order_amount": str(self.min_order_amount) if self.min_order_amount is not None else None,
            "max_discount_amount": str(self.max_discount_amount) if self.max_discount_amount is not None else None,
            "usage_limit": self.usage_limit,
            "used_count": self.used_count,
            "remaining_uses": (self.usage_limit - self.used_count) if self.usage_limit is not None else None,
            "start_date": to_utc_z(self.start_date),
            "end_date": to_utc_z(self.end_date),
            "is_active": self.is_active,
            "is_public": self.is_public,
            "status": self.status_label,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
