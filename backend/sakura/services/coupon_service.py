# Overview: Service-layer operations for coupons; validation, usage accounting, and administration.

"""
Coupon Ledger Service

WHY: A coupon is a shared, rate-limited resource. Many checkouts may try to
consume the last remaining use at the same instant, so usage accounting must
be a compare-and-swap on the persisted counter, not a read-modify-write.

DESIGN PRINCIPLES:
- Validation is pure and fails closed: any rule failing means "not usable".
- used_count only moves through try_increment_usage / decrement paths here,
  each flushed under the coupon's version_id check.
- A lost race re-reads the coupon and re-checks the limit; it never blindly
  increments twice.
- Codes are unique case-insensitively (stored upper-case).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Coupon
from ..models.constants import (
    COUPON_TYPES,
    COUPON_PERCENTAGE,
    COUPON_NOT_FOUND,
)
from ..time_utils import utcnow
from ..validation import ValidationError, NotFoundError, parse_bool, to_money, ZERO
from .concurrency import run_with_retry


@dataclass(frozen=True)
class CouponValidation:
    is_valid: bool
    reason: str | None
    discount_amount: Decimal
    final_amount: Decimal
    coupon: Coupon | None = None

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "reason": self.reason,
            "discount_amount": str(self.discount_amount),
            "final_amount": str(self.final_amount),
            "coupon": self.coupon.to_dict() if self.coupon is not None else None,
        }


def normalize_code(code: str | None) -> str:
    if not isinstance(code, str) or not code.strip():
        raise ValidationError("coupon code is required")
    return code.strip().upper()


def get_coupon_by_code(code: str) -> Coupon | None:
    return db.session.query(Coupon).filter(Coupon.code == normalize_code(code)).first()


def get_coupon(coupon_id: int) -> Coupon:
    coupon = db.session.get(Coupon, coupon_id)
    if coupon is None:
        raise NotFoundError(f"coupon {coupon_id} not found")
    return coupon


# =============================================================================
# VALIDATION
# =============================================================================

def validate_coupon_for_order(code: str, order_amount, now: datetime | None = None) -> CouponValidation:
    """
    Check a code against an order amount without consuming a use.

    Returns a CouponValidation; never raises for an unusable coupon.
    """
    order_amount = to_money(order_amount, field="order_amount")
    coupon = get_coupon_by_code(code)
    if coupon is None:
        return CouponValidation(False, COUPON_NOT_FOUND, ZERO, order_amount)

    try:
        reason = coupon.invalid_reason(order_amount, now)
    except (TypeError, ArithmeticError):
        current_app.logger.exception("Coupon %s failed validation", coupon.code)
        reason = "invalid"
    if reason is not None:
        current_app.logger.info("Coupon %s rejected: %s", coupon.code, reason)
        return CouponValidation(False, reason, ZERO, order_amount, coupon)

    discount = coupon.calculate_discount(order_amount)
    return CouponValidation(True, None, discount, max(order_amount - discount, ZERO), coupon)


# =============================================================================
# USAGE ACCOUNTING
# =============================================================================

def try_increment_usage(coupon_id: int) -> bool:
    """
    Atomically consume one use. False when the limit is already reached.

    CONCURRENCY: the UPDATE carries the version seen at read time. If another
    writer got there first the flush raises StaleDataError, run_with_retry
    rolls back, and _op re-reads the fresh count before deciding again.
    """
    def _op():
        coupon = db.session.get(Coupon, coupon_id, populate_existing=True)
        if coupon is None:
            raise NotFoundError(f"coupon {coupon_id} not found")
        if not coupon.try_increment_usage():
            db.session.rollback()
            return False
        db.session.commit()
        return True

    return run_with_retry(_op)


def increment_usage(coupon_id: int) -> None:
    if not try_increment_usage(coupon_id):
        raise ValidationError(f"coupon {coupon_id} usage limit reached")


def revert_coupon_usage(code: str) -> bool:
    """Give back one use (floored at zero). False when the code is unknown."""
    normalized = normalize_code(code)

    def _op():
        coupon = db.session.query(Coupon).filter(Coupon.code == normalized).populate_existing().first()
        if coupon is None:
            return False
        coupon.decrement_usage()
        db.session.commit()
        return True

    return run_with_retry(_op)


# =============================================================================
# ADMINISTRATION
# =============================================================================

def _check_coupon_rules(
    coupon_type: str,
    value: Decimal,
    min_order_amount: Decimal | None,
    max_discount_amount: Decimal | None,
    usage_limit: int | None,
    start_date: datetime,
    end_date: datetime,
) -> None:
    if coupon_type not in COUPON_TYPES:
        raise ValidationError(f"Invalid coupon_type '{coupon_type}'")
    if value < 0:
        raise ValidationError("value cannot be negative")
    if coupon_type == COUPON_PERCENTAGE and value > 100:
        raise ValidationError("percentage value cannot exceed 100")
    if min_order_amount is not None and min_order_amount < 0:
        raise ValidationError("min_order_amount cannot be negative")
    if max_discount_amount is not None and max_discount_amount < 0:
        raise ValidationError("max_discount_amount cannot be negative")
    if usage_limit is not None and usage_limit < 0:
        raise ValidationError("usage_limit cannot be negative")
    if start_date is None or end_date is None:
        raise ValidationError("start_date and end_date are required")
    if end_date <= start_date:
        raise ValidationError("end_date must be after start_date")


def create_coupon(
    *,
    code: str,
    name: str,
    coupon_type: str,
    value,
    start_date: datetime,
    end_date: datetime,
    description: str | None = None,
    min_order_amount=None,
    max_discount_amount=None,
    usage_limit: int | None = None,
    is_active: bool = True,
    is_public: bool = True,
) -> Coupon:
    code = normalize_code(code)
    if not name:
        raise ValidationError("name is required")
    value = to_money(value, field="value")
    min_order_amount = to_money(min_order_amount, field="min_order_amount") if min_order_amount is not None else None
    max_discount_amount = (
        to_money(max_discount_amount, field="max_discount_amount") if max_discount_amount is not None else None
    )
    _check_coupon_rules(coupon_type, value, min_order_amount, max_discount_amount, usage_limit, start_date, end_date)
    is_active = parse_bool(is_active, field="is_active")
    is_public = parse_bool(is_public, field="is_public")

    def _op():
        if db.session.query(Coupon).filter(Coupon.code == code).first() is not None:
            raise ValidationError(f"Coupon code '{code}' already exists")
        coupon = Coupon(
            code=code,
            name=name,
            description=description,
            coupon_type=coupon_type,
            value=value,
            min_order_amount=min_order_amount,
            max_discount_amount=max_discount_amount,
            usage_limit=usage_limit,
            used_count=0,
            start_date=start_date,
            end_date=end_date,
            is_active=is_active,
            is_public=is_public,
        )
        db.session.add(coupon)
        try:
            db.session.flush()
        except IntegrityError:
            # Lost a race with a concurrent create of the same code
            db.session.rollback()
            raise ValidationError(f"Coupon code '{code}' already exists")
        db.session.commit()
        return coupon

    return run_with_retry(_op)


_UPDATABLE_FIELDS = (
    "name",
    "description",
    "coupon_type",
    "value",
    "min_order_amount",
    "max_discount_amount",
    "usage_limit",
    "start_date",
    "end_date",
    "is_active",
    "is_public",
)
_MONEY_FIELDS = {"value", "min_order_amount", "max_discount_amount"}


def update_coupon(coupon_id: int, **changes) -> Coupon:
    """
    Edit coupon terms. used_count is not editable here.

    A usage_limit below the current used_count is rejected so the counter
    invariant holds.
    """
    unknown = set(changes) - set(_UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
    for field in _MONEY_FIELDS & set(changes):
        if changes[field] is not None:
            changes[field] = to_money(changes[field], field=field)
    for field in ("is_active", "is_public"):
        if field in changes:
            changes[field] = parse_bool(changes[field], field=field)

    def _op():
        coupon = get_coupon(coupon_id)
        merged = {field: changes.get(field, getattr(coupon, field)) for field in _UPDATABLE_FIELDS}
        _check_coupon_rules(
            merged["coupon_type"],
            Decimal(merged["value"]),
            merged["min_order_amount"],
            merged["max_discount_amount"],
            merged["usage_limit"],
            merged["start_date"],
            merged["end_date"],
        )
        if merged["usage_limit"] is not None and merged["usage_limit"] < coupon.used_count:
            raise ValidationError("usage_limit cannot be below used_count")
        for field, value in changes.items():
            setattr(coupon, field, value)
        db.session.commit()
        return coupon

    return run_with_retry(_op)


def set_coupon_active(coupon_id: int, is_active: bool) -> Coupon:
    def _op():
        coupon = get_coupon(coupon_id)
        coupon.is_active = bool(is_active)
        db.session.commit()
        return coupon

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def list_coupons(active_only: bool = False, search: str | None = None) -> list[Coupon]:
    q = db.session.query(Coupon)
    if active_only:
        now = utcnow()
        q = q.filter(
            Coupon.is_active.is_(True),
            Coupon.start_date <= now,
            Coupon.end_date >= now,
            or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
        )
    if search:
        pattern = f"%{search.strip()}%"
        q = q.filter(or_(Coupon.code.ilike(pattern), Coupon.name.ilike(pattern)))
    return q.order_by(Coupon.created_at.desc(), Coupon.id.desc()).all()


def get_expired_coupons(now: datetime | None = None) -> list[Coupon]:
    now = now or utcnow()
    return db.session.query(Coupon).filter(Coupon.end_date < now).order_by(Coupon.end_date.desc()).all()


def get_expiring_coupons(days: int = 7, now: datetime | None = None) -> list[Coupon]:
    """Active coupons whose end date falls within the next `days` days."""
    if days < 0:
        raise ValidationError("days cannot be negative")
    now = now or utcnow()
    return (
        db.session.query(Coupon)
        .filter(
            Coupon.is_active.is_(True),
            Coupon.end_date >= now,
            Coupon.end_date <= now + timedelta(days=days),
        )
        .order_by(Coupon.end_date.asc())
        .all()
    )


def get_coupon_stats(now: datetime | None = None) -> dict:
    now = now or utcnow()
    total = db.session.query(func.count(Coupon.id)).scalar() or 0
    active = (
        db.session.query(func.count(Coupon.id))
        .filter(Coupon.is_active.is_(True), Coupon.start_date <= now, Coupon.end_date >= now)
        .scalar()
        or 0
    )
    expired = db.session.query(func.count(Coupon.id)).filter(Coupon.end_date < now).scalar() or 0
    exhausted = (
        db.session.query(func.count(Coupon.id))
        .filter(Coupon.usage_limit.isnot(None), Coupon.used_count >= Coupon.usage_limit)
        .scalar()
        or 0
    )
    total_uses = db.session.query(func.coalesce(func.sum(Coupon.used_count), 0)).scalar() or 0
    return {
        "total": int(total),
        "active": int(active),
        "expired": int(expired),
        "exhausted": int(exhausted),
        "inactive": int(total) - int(active),
        "total_uses": int(total_uses),
    }
