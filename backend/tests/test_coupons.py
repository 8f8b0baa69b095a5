"""
Coupon ledger tests: usability rules, discount math, usage accounting, admin.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from sakura.extensions import db
from sakura.models import Coupon, CouponUsageLimitError
from sakura.models.constants import (
    COUPON_FIXED_AMOUNT,
    COUPON_FREE_SHIPPING,
    COUPON_BUY_X_GET_Y,
    COUPON_PERCENTAGE,
)
from sakura.services import coupon_service
from sakura.time_utils import utcnow
from sakura.validation import ValidationError, NotFoundError


def _coupon(**fields):
    now = utcnow()
    base = dict(
        code="UNIT",
        name="Unit",
        coupon_type=COUPON_PERCENTAGE,
        value=Decimal("10"),
        used_count=0,
        is_active=True,
        start_date=now - timedelta(days=1),
        end_date=now + timedelta(days=1),
    )
    base.update(fields)
    return Coupon(**base)


class TestCouponRules:
    def test_usable_coupon_passes(self):
        assert _coupon().is_valid_for_order(Decimal("100000")) is True

    @pytest.mark.parametrize("fields, reason", [
        ({"is_active": False}, "inactive"),
        ({"start_date": utcnow() + timedelta(days=1)}, "not_started"),
        ({"end_date": utcnow() - timedelta(seconds=1)}, "expired"),
        ({"usage_limit": 3, "used_count": 3}, "limit_reached"),
        ({"min_order_amount": Decimal("200000")}, "min_order_not_met"),
    ])
    def test_each_rule_rejects(self, fields, reason):
        coupon = _coupon(**fields)
        assert coupon.invalid_reason(Decimal("100000")) == reason
        assert coupon.is_valid_for_order(Decimal("100000")) is False

    def test_min_order_boundary_is_inclusive(self):
        coupon = _coupon(min_order_amount=Decimal("100000"))
        assert coupon.is_valid_for_order(Decimal("100000")) is True

    def test_fails_closed_on_bad_amount(self):
        coupon = _coupon(min_order_amount=Decimal("1"))
        assert coupon.is_valid_for_order("not-a-number") is False

    def test_status_labels(self):
        assert _coupon().status_label == "active"
        assert _coupon(start_date=utcnow() + timedelta(days=2), end_date=utcnow() + timedelta(days=3)).status_label == "scheduled"
        assert _coupon(end_date=utcnow() - timedelta(days=1)).status_label == "expired"
        assert _coupon(usage_limit=1, used_count=1).status_label == "exhausted"
        assert _coupon(is_active=False).status_label == "inactive"


class TestDiscountCalculation:
    def test_percentage_capped(self):
        coupon = _coupon(value=Decimal("10"), max_discount_amount=Decimal("40000"))
        assert coupon.calculate_discount(Decimal("500000")) == Decimal("40000.00")

    def test_percentage_uncapped(self):
        coupon = _coupon(value=Decimal("10"))
        assert coupon.calculate_discount(Decimal("500000")) == Decimal("50000.00")

    def test_percentage_rounds_half_up(self):
        coupon = _coupon(value=Decimal("15"))
        assert coupon.calculate_discount(Decimal("0.50")) == Decimal("0.08")

    def test_fixed_amount_never_exceeds_subtotal(self):
        coupon = _coupon(coupon_type=COUPON_FIXED_AMOUNT, value=Decimal("80000"))
        assert coupon.calculate_discount(Decimal("50000")) == Decimal("50000.00")
        assert coupon.calculate_discount(Decimal("500000")) == Decimal("80000.00")

    def test_free_shipping_equals_shipping_fee(self):
        coupon = _coupon(coupon_type=COUPON_FREE_SHIPPING, value=Decimal("0"))
        assert coupon.calculate_discount(Decimal("500000"), Decimal("30000")) == Decimal("30000.00")

    def test_other_types_give_nothing(self):
        coupon = _coupon(coupon_type=COUPON_BUY_X_GET_Y, value=Decimal("50"))
        assert coupon.calculate_discount(Decimal("500000")) == Decimal("0.00")


class TestUsageAccounting:
    def test_in_memory_increment_respects_limit(self):
        coupon = _coupon(usage_limit=1)
        assert coupon.try_increment_usage() is True
        assert coupon.try_increment_usage() is False
        assert coupon.used_count == 1
        with pytest.raises(CouponUsageLimitError):
            coupon.increment_usage()

    def test_decrement_floors_at_zero(self):
        coupon = _coupon(used_count=0)
        coupon.decrement_usage()
        assert coupon.used_count == 0

    def test_service_increment_until_limit(self, coupon_factory):
        coupon = coupon_factory(usage_limit=2)
        assert coupon_service.try_increment_usage(coupon.id) is True
        assert coupon_service.try_increment_usage(coupon.id) is True
        assert coupon_service.try_increment_usage(coupon.id) is False
        assert db.session.get(Coupon, coupon.id).used_count == 2

    def test_increment_raises_when_exhausted(self, coupon_factory):
        coupon = coupon_factory(usage_limit=0)
        with pytest.raises(ValidationError):
            coupon_service.increment_usage(coupon.id)

    def test_unknown_coupon_id(self, db_session):
        with pytest.raises(NotFoundError):
            coupon_service.try_increment_usage(999999)

    def test_revert_usage_by_code(self, coupon_factory):
        coupon = coupon_factory(code="REVERT", usage_limit=5)
        coupon_service.increment_usage(coupon.id)
        assert coupon_service.revert_coupon_usage("revert") is True
        assert db.session.get(Coupon, coupon.id).used_count == 0
        assert coupon_service.revert_coupon_usage("NOPE") is False

    def test_version_advances_on_increment(self, coupon_factory):
        coupon = coupon_factory()
        before = coupon.version_id
        coupon_service.try_increment_usage(coupon.id)
        assert db.session.get(Coupon, coupon.id).version_id == before + 1


class TestValidateCouponForOrder:
    def test_scenario_ten_percent_capped(self, coupon_factory):
        coupon_factory(code="SAVE10", max_discount_amount=Decimal("40000"))
        result = coupon_service.validate_coupon_for_order("save10", "500000")
        assert result.is_valid is True
        assert result.discount_amount == Decimal("40000.00")
        assert result.final_amount == Decimal("460000.00")

    def test_unknown_code(self, db_session):
        result = coupon_service.validate_coupon_for_order("MISSING", "100")
        assert result.is_valid is False
        assert result.reason == "not_found"
        assert result.discount_amount == Decimal("0.00")

    def test_expired_coupon_reports_reason(self, coupon_factory):
        now = utcnow()
        coupon_factory(code="OLD", start_date=now - timedelta(days=10), end_date=now - timedelta(days=1))
        result = coupon_service.validate_coupon_for_order("OLD", "100000")
        assert (result.is_valid, result.reason) == (False, "expired")

    def test_validation_does_not_consume_use(self, coupon_factory):
        coupon = coupon_factory(code="PEEK", usage_limit=1)
        coupon_service.validate_coupon_for_order("PEEK", "100000")
        assert db.session.get(Coupon, coupon.id).used_count == 0


class TestCouponAdministration:
    def test_codes_are_unique_case_insensitively(self, coupon_factory):
        coupon_factory(code="Summer")
        with pytest.raises(ValidationError):
            coupon_factory(code="SUMMER")

    def test_code_is_stored_upper_case(self, coupon_factory):
        assert coupon_factory(code="  spring ").code == "SPRING"

    @pytest.mark.parametrize("overrides", [
        {"value": Decimal("150")},
        {"value": Decimal("-1")},
        {"coupon_type": "MYSTERY"},
        {"usage_limit": -1},
        {"end_date": utcnow() - timedelta(days=5)},
    ])
    def test_create_rejects_bad_terms(self, coupon_factory, overrides):
        with pytest.raises(ValidationError):
            coupon_factory(**overrides)

    def test_update_cannot_drop_limit_below_used(self, coupon_factory):
        coupon = coupon_factory(usage_limit=5)
        coupon_service.increment_usage(coupon.id)
        coupon_service.increment_usage(coupon.id)
        with pytest.raises(ValidationError):
            coupon_service.update_coupon(coupon.id, usage_limit=1)
        updated = coupon_service.update_coupon(coupon.id, usage_limit=2, name="Renamed")
        assert (updated.usage_limit, updated.name) == (2, "Renamed")

    def test_update_rejects_used_count(self, coupon_factory):
        coupon = coupon_factory()
        with pytest.raises(ValidationError):
            coupon_service.update_coupon(coupon.id, used_count=0)

    def test_deactivate(self, coupon_factory):
        coupon = coupon_factory(code="OFF")
        coupon_service.set_coupon_active(coupon.id, False)
        result = coupon_service.validate_coupon_for_order("OFF", "100000")
        assert result.reason == "inactive"

    def test_listing_and_expiry_queries(self, coupon_factory):
        now = utcnow()
        coupon_factory(code="LIVE", end_date=now + timedelta(days=30))
        coupon_factory(code="SOON", end_date=now + timedelta(days=2))
        coupon_factory(code="GONE", start_date=now - timedelta(days=9), end_date=now - timedelta(days=1))
        coupon_factory(code="FULL", usage_limit=0)

        active_codes = {c.code for c in coupon_service.list_coupons(active_only=True)}
        assert active_codes == {"LIVE", "SOON"}
        assert {c.code for c in coupon_service.list_coupons(search="oo")} == {"SOON"}
        assert [c.code for c in coupon_service.get_expired_coupons()] == ["GONE"]
        assert {c.code for c in coupon_service.get_expiring_coupons(7)} == {"SOON", "FULL"}

        stats = coupon_service.get_coupon_stats()
        assert stats["total"] == 4
        assert stats["expired"] == 1
        assert stats["exhausted"] == 1
