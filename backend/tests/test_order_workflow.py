"""
Order aggregate tests: checkout, totals, status machine, history, coupons, fees.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from sakura.extensions import db
from sakura.models import Coupon, ImmutableRecordError, InventoryLog, Order, OrderStatusHistory, Product
from sakura.models.constants import (
    COUPON_FREE_SHIPPING,
    COUPON_FIXED_AMOUNT,
    ORDER_TRANSITIONS,
    ORDER_STATUSES,
    ORDER_STATUS_DATE_FIELDS,
)
from sakura.services import inventory_service, order_service
from sakura.services.concurrency import Cancellation
from sakura.time_utils import utcnow
from sakura.validation import ValidationError, NotFoundError, OperationCancelled


# Shortest legal path from PENDING to each status
PATHS = {
    "PENDING": [],
    "CONFIRMED": ["CONFIRMED"],
    "PROCESSING": ["CONFIRMED", "PROCESSING"],
    "SHIPPED": ["CONFIRMED", "PROCESSING", "SHIPPED"],
    "OUT_FOR_DELIVERY": ["CONFIRMED", "PROCESSING", "SHIPPED", "OUT_FOR_DELIVERY"],
    "DELIVERED": ["CONFIRMED", "PROCESSING", "SHIPPED", "DELIVERED"],
    "CANCELLED": ["CANCELLED"],
    "RETURNED": ["CONFIRMED", "PROCESSING", "SHIPPED", "DELIVERED", "RETURNED"],
    "REFUNDED": ["CANCELLED", "REFUNDED"],
}


def _drive(order_id, status):
    for step in PATHS[status]:
        result = order_service.transition_order_status(order_id, step)
        assert result.success, result.failure_reason
    return db.session.get(Order, order_id)


def _history_count(order_id):
    return db.session.query(OrderStatusHistory).filter_by(order_id=order_id).count()


def _expected_total(order):
    total = (
        order.subtotal + order.shipping_fee + order.tax_amount + order.gift_wrap_fee
        - order.discount_amount - order.coupon_discount
    )
    return max(total, Decimal("0"))


class TestCheckout:
    def test_creates_pending_order_with_snapshot(self, order_factory, product):
        result = order_factory(quantity=2)
        order = result.order

        assert order.status == "PENDING"
        assert order.payment_status == "PENDING"
        assert order.subtotal == Decimal("500000.00")
        assert order.total_amount == Decimal("530000.00")
        assert len(order.order_number) == 17
        assert order.formatted_order_number == f"ORD-{order.order_number}"

        item = order.items[0]
        assert (item.product_name, item.product_sku) == ("Matcha Tea Set", "SKU-TEA-001")
        assert item.unit_price == Decimal("250000.00")
        assert item.total_price == Decimal("500000.00")

    def test_snapshot_survives_catalog_edit(self, order_factory, product):
        order = order_factory().order
        catalog = db.session.get(Product, product.id)
        catalog.name = "Renamed Set"
        catalog.price = Decimal("1.00")
        db.session.commit()

        item = db.session.get(Order, order.id).items[0]
        assert item.product_name == "Matcha Tea Set"
        assert item.unit_price == Decimal("250000.00")

    def test_reserves_stock_through_log(self, order_factory, product):
        order = order_factory(quantity=3).order

        assert db.session.get(Product, product.id).stock == 97
        reserved = inventory_service.list_reference_logs("ORDER", order.id)
        assert [(e.action, e.quantity, e.previous_stock, e.new_stock) for e in reserved] == [
            ("RESERVED", -3, 100, 97)
        ]
        assert inventory_service.replay_stock(product.id) == 97

    def test_writes_creation_history_row(self, order_factory):
        order = order_factory().order
        history = order_service.get_order_status_history(order.id)
        assert len(history) == 1
        assert (history[0].old_status, history[0].new_status) == ("PENDING", "PENDING")
        assert history[0].created_by == 7

    def test_insufficient_stock_rolls_back_everything(self, order_factory, product):
        with pytest.raises(ValidationError):
            order_factory(quantity=101)
        assert db.session.query(Order).count() == 0
        assert db.session.get(Product, product.id).stock == 100

    def test_inactive_product_rejected(self, order_factory, product):
        db.session.get(Product, product.id).is_active = False
        db.session.commit()
        with pytest.raises(ValidationError):
            order_factory()

    def test_unknown_product(self, order_factory):
        with pytest.raises(NotFoundError):
            order_factory(product_id=424242)

    @pytest.mark.parametrize("quantity", [0, -1, "two"])
    def test_bad_quantity(self, order_factory, quantity):
        with pytest.raises(ValidationError):
            order_factory(quantity=quantity)

    def test_variant_line_uses_variant_price_and_stock(self, db_session, product):
        variant = inventory_service.create_variant(product.id, "SKU-TEA-001-L", "Large", "300000", opening_stock=5)
        result = order_service.create_order(
            1,
            [{"product_id": product.id, "variant_id": variant.id, "quantity": 2, "attributes": {"wrap": "red"}}],
            receiver_name="A",
            receiver_phone="1",
            shipping_address="X",
        )
        item = result.order.items[0]
        assert item.unit_price == Decimal("300000.00")
        assert (item.variant_name, item.display_sku) == ("Large", "SKU-TEA-001-L")
        assert item.to_dict()["product_attributes"] == {"wrap": "red"}
        assert inventory_service.replay_stock(product.id, variant.id) == 3
        assert db.session.get(Product, product.id).stock == 100

    def test_scenario_coupon_at_checkout(self, order_factory, coupon_factory):
        coupon = coupon_factory(code="SAVE10", max_discount_amount=Decimal("40000"))
        result = order_factory(coupon_code="save10")

        assert result.coupon_applied is True
        assert result.coupon_failure_reason is None
        assert result.order.coupon_discount == Decimal("40000.00")
        assert result.order.total_amount == Decimal("490000.00")
        assert db.session.get(Coupon, coupon.id).used_count == 1

    def test_rejected_coupon_does_not_fail_checkout(self, order_factory, coupon_factory):
        now = utcnow()
        coupon = coupon_factory(code="OLD", start_date=now - timedelta(days=5), end_date=now - timedelta(days=1))
        result = order_factory(coupon_code="OLD")

        assert result.coupon_applied is False
        assert result.coupon_failure_reason == "expired"
        assert result.order.coupon_id is None
        assert result.order.total_amount == Decimal("530000.00")
        assert db.session.get(Coupon, coupon.id).used_count == 0

    def test_unknown_coupon_code_at_checkout(self, order_factory):
        result = order_factory(coupon_code="NOPE")
        assert result.coupon_failure_reason == "not_found"

    def test_cancelled_checkout_writes_nothing(self, product):
        token = Cancellation()
        token.cancel()
        with pytest.raises(OperationCancelled):
            order_service.create_order(
                1, [{"product_id": product.id, "quantity": 1}],
                receiver_name="A", receiver_phone="1", shipping_address="X", cancel=token,
            )
        assert db.session.query(Order).count() == 0
        assert db.session.get(Product, product.id).stock == 100


class TestStatusMachine:
    @pytest.mark.parametrize("source", ORDER_STATUSES)
    @pytest.mark.parametrize("target", ORDER_STATUSES)
    def test_adjacency_table(self, order_factory, source, target):
        order = _drive(order_factory().order.id, source)
        before_history = _history_count(order.id)

        result = order_service.transition_order_status(order.id, target, note="check", actor_id=3)
        order = db.session.get(Order, order.id)

        if target in ORDER_TRANSITIONS[source]:
            assert result.success is True
            assert order.status == target
            assert _history_count(order.id) == before_history + 1
            date_field = ORDER_STATUS_DATE_FIELDS.get(target)
            if date_field:
                assert getattr(order, date_field) is not None
        else:
            assert result.success is False
            assert result.failure_reason == f"cannot transition from {source} to {target}"
            assert order.status == source
            assert _history_count(order.id) == before_history

    def test_scenario_shipped_cannot_go_back_to_confirmed(self, order_factory):
        order = _drive(order_factory().order.id, "SHIPPED")
        result = order_service.transition_order_status(order.id, "CONFIRMED")
        assert result.success is False
        assert db.session.get(Order, order.id).status == "SHIPPED"

    def test_unknown_status_is_validation_error(self, order_factory):
        order = order_factory().order
        with pytest.raises(ValidationError):
            order_service.transition_order_status(order.id, "TELEPORTED")

    def test_missing_order(self, db_session):
        with pytest.raises(NotFoundError):
            order_service.transition_order_status(31337, "CONFIRMED")

    def test_history_records_actor_and_note(self, order_factory):
        order = order_factory().order
        order_service.transition_order_status(order.id, "CONFIRMED", note="phone verified", actor_id=11)
        last = order_service.get_order_status_history(order.id)[-1]
        assert (last.old_status, last.new_status, last.notes, last.created_by) == (
            "PENDING", "CONFIRMED", "phone verified", 11,
        )

    def test_history_rows_are_immutable(self, order_factory):
        order = order_factory().order
        entry = order_service.get_order_status_history(order.id)[0]
        entry.notes = "rewritten"
        with pytest.raises(ImmutableRecordError):
            db.session.flush()
        db.session.rollback()

        entry = order_service.get_order_status_history(order.id)[0]
        db.session.delete(entry)
        with pytest.raises(ImmutableRecordError):
            db.session.flush()
        db.session.rollback()

    def test_cancelled_transition_is_not_committed(self, order_factory):
        order = order_factory().order
        token = Cancellation()
        token.cancel()
        with pytest.raises(OperationCancelled):
            order_service.transition_order_status(order.id, "CONFIRMED", cancel=token)
        assert db.session.get(Order, order.id).status == "PENDING"
        assert _history_count(order.id) == 1


class TestWorkflowSideEffects:
    def test_cancel_releases_stock_and_coupon(self, order_factory, coupon_factory, product):
        coupon = coupon_factory(code="BACK", usage_limit=1)
        order = order_factory(quantity=4, coupon_code="BACK").order
        assert db.session.get(Product, product.id).stock == 96

        result = order_service.cancel_order(order.id, reason="changed mind", actor_id=7)

        assert result.success is True
        order = db.session.get(Order, order.id)
        assert order.cancel_reason == "changed mind"
        assert order.cancelled_date is not None
        assert db.session.get(Product, product.id).stock == 100
        assert db.session.get(Coupon, coupon.id).used_count == 0
        actions = [e.action for e in inventory_service.list_reference_logs("ORDER", order.id)]
        assert actions == ["RESERVED", "RELEASED"]
        assert inventory_service.reconcile_stock(product.id)["consistent"] is True

    def test_full_fulfilment_path(self, order_factory):
        order = order_factory().order
        assert order_service.confirm_order(order.id).success
        assert order_service.process_order(order.id).success
        shipped = order_service.ship_order(order.id, tracking_number="VN123", carrier="GHN")
        assert shipped.success
        assert order_service.mark_out_for_delivery(order.id).success
        assert order_service.deliver_order(order.id).success

        order = db.session.get(Order, order.id)
        assert (order.tracking_number, order.shipping_carrier) == ("VN123", "GHN")
        assert order.is_completed and order.can_return
        assert not order.can_cancel
        assert len(order_service.get_order_status_history(order.id)) == 6

    def test_return_restocks(self, order_factory, product):
        order = _drive(order_factory(quantity=5).order.id, "DELIVERED")
        result = order_service.return_order(order.id, reason="damaged box")

        assert result.success is True
        assert db.session.get(Order, order.id).return_reason == "damaged box"
        assert db.session.get(Product, product.id).stock == 100
        assert [e.action for e in inventory_service.list_reference_logs("ORDER", order.id)] == ["RESERVED", "RETURN"]

    def test_return_window_closed(self, order_factory):
        order = _drive(order_factory().order.id, "DELIVERED")
        order.delivered_date = utcnow() - timedelta(days=31)
        db.session.commit()

        result = order_service.return_order(order.id)
        assert result.success is False
        assert result.failure_reason == "return window has closed"
        assert db.session.get(Order, order.id).status == "DELIVERED"

    def test_scenario_can_return_window(self, order_factory):
        order = _drive(order_factory().order.id, "DELIVERED")
        now = utcnow()
        order.delivered_date = now - timedelta(days=31)
        assert order.can_return_at(now) is False
        order.delivered_date = now - timedelta(days=10)
        assert order.can_return_at(now) is True
        db.session.rollback()

    def test_refund_after_cancel(self, order_factory):
        order = order_factory().order
        order_service.cancel_order(order.id)
        result = order_service.refund_order(order.id)
        assert result.success
        order = db.session.get(Order, order.id)
        assert order.is_refunded and order.refunded_date is not None


class TestOrderCoupons:
    def test_apply_coupon_to_pending_order(self, order_factory, coupon_factory):
        coupon = coupon_factory(code="LATE", max_discount_amount=Decimal("40000"))
        order = order_factory().order

        result = order_service.apply_coupon_to_order(order.id, "late")

        assert result.success is True
        assert result.discount_amount == Decimal("40000.00")
        order = db.session.get(Order, order.id)
        assert (order.coupon_code, order.total_amount) == ("LATE", Decimal("490000.00"))
        assert db.session.get(Coupon, coupon.id).used_count == 1

    @pytest.mark.parametrize("fields, reason", [
        ({"is_active": False}, "inactive"),
        ({"usage_limit": 0}, "limit_reached"),
        ({"min_order_amount": Decimal("900000")}, "min_order_not_met"),
    ])
    def test_rejection_changes_nothing(self, order_factory, coupon_factory, fields, reason):
        coupon = coupon_factory(code="BAD", **fields)
        order = order_factory().order
        total_before = order.total_amount
        version_before = db.session.get(Coupon, coupon.id).version_id

        result = order_service.apply_coupon_to_order(order.id, "BAD")

        assert (result.success, result.failure_reason) == (False, reason)
        order = db.session.get(Order, order.id)
        assert order.total_amount == total_before
        assert order.coupon_id is None
        stored = db.session.get(Coupon, coupon.id)
        assert (stored.used_count, stored.version_id) == (0, version_before)

    def test_expired_coupon_changes_nothing(self, order_factory, coupon_factory):
        now = utcnow()
        coupon_factory(code="DEAD", start_date=now - timedelta(days=3), end_date=now - timedelta(days=1))
        order = order_factory().order
        result = order_service.apply_coupon_to_order(order.id, "DEAD")
        assert result.failure_reason == "expired"
        assert db.session.get(Order, order.id).total_amount == Decimal("530000.00")

    def test_replacing_coupon_gives_back_previous_use(self, order_factory, coupon_factory):
        first = coupon_factory(code="FIRST")
        second = coupon_factory(code="SECOND", coupon_type=COUPON_FIXED_AMOUNT, value=Decimal("100000"))
        order = order_factory(coupon_code="FIRST").order

        result = order_service.apply_coupon_to_order(order.id, "SECOND")

        assert result.success is True
        assert db.session.get(Coupon, first.id).used_count == 0
        assert db.session.get(Coupon, second.id).used_count == 1
        assert db.session.get(Order, order.id).total_amount == Decimal("430000.00")

    def test_reapplying_same_coupon_is_noop(self, order_factory, coupon_factory):
        coupon = coupon_factory(code="ONCE")
        order = order_factory(coupon_code="ONCE").order
        result = order_service.apply_coupon_to_order(order.id, "ONCE")
        assert result.success is True
        assert db.session.get(Coupon, coupon.id).used_count == 1

    def test_coupon_not_allowed_after_confirmation_stage(self, order_factory, coupon_factory):
        coupon_factory(code="TOOLATE")
        order = _drive(order_factory().order.id, "PROCESSING")
        result = order_service.apply_coupon_to_order(order.id, "TOOLATE")
        assert result.success is False
        assert result.failure_reason == "cannot apply coupon to order in status PROCESSING"

    def test_remove_coupon(self, order_factory, coupon_factory):
        coupon = coupon_factory(code="GONE")
        order = order_factory(coupon_code="GONE").order
        order = order_service.remove_coupon_from_order(order.id)
        assert order.coupon_code is None
        assert order.coupon_discount == Decimal("0.00")
        assert order.total_amount == Decimal("530000.00")
        assert db.session.get(Coupon, coupon.id).used_count == 0


class TestTotalsAndFees:
    def test_fee_update_recalculates(self, order_factory):
        order = order_factory().order
        order = order_service.update_order_fees(
            order.id, shipping_fee="15000", tax_amount="50000", discount_amount="5000", gift_wrap_fee="20000",
        )
        assert order.total_amount == Decimal("580000.00")
        assert order.total_amount == _expected_total(order)

    def test_free_shipping_coupon_tracks_shipping_fee(self, order_factory, coupon_factory):
        coupon_factory(code="SHIPFREE", coupon_type=COUPON_FREE_SHIPPING, value=Decimal("0"))
        order = order_factory(coupon_code="SHIPFREE").order
        assert order.coupon_discount == Decimal("30000.00")

        order = order_service.update_order_fees(order.id, shipping_fee="45000")
        assert order.coupon_discount == Decimal("45000.00")
        assert order.total_amount == Decimal("500000.00")

    def test_total_floors_at_zero(self, order_factory):
        order = order_factory().order
        order = order_service.update_order_fees(order.id, discount_amount="9999999")
        assert order.total_amount == Decimal("0.00")

    def test_negative_fee_rejected(self, order_factory):
        order = order_factory().order
        with pytest.raises(ValidationError):
            order_service.update_order_fees(order.id, shipping_fee="-1")

    def test_fees_frozen_once_processing(self, order_factory):
        order = _drive(order_factory().order.id, "PROCESSING")
        with pytest.raises(ValidationError):
            order_service.update_order_fees(order.id, shipping_fee="0")


class TestOrderQueries:
    def test_lookup_by_number_and_user(self, order_factory):
        first = order_factory(user_id=5).order
        order_factory(user_id=5)
        order_factory(user_id=6)

        assert order_service.get_order_by_number(first.formatted_order_number).id == first.id
        assert len(order_service.list_user_orders(5)) == 2
        assert len(order_service.list_user_orders(5, status="CONFIRMED")) == 0
        with pytest.raises(NotFoundError):
            order_service.get_order_by_number("ORD-0")

    def test_stats(self, order_factory):
        delivered = order_factory().order
        _drive(delivered.id, "DELIVERED")
        order_factory()

        stats = order_service.get_order_stats()
        assert stats["total_orders"] == 2
        assert stats["by_status"]["DELIVERED"] == 1
        assert stats["by_status"]["PENDING"] == 1
        assert stats["delivered_revenue"] == "530000.00"


class TestInventoryLogForOrders:
    def test_order_logs_replay_to_live_stock(self, order_factory, product):
        first = order_factory(quantity=10).order
        order_factory(quantity=5)
        order_service.cancel_order(first.id)

        assert db.session.get(Product, product.id).stock == 95
        assert inventory_service.replay_stock(product.id) == 95
        assert db.session.query(InventoryLog).filter_by(product_id=product.id).count() == 4
