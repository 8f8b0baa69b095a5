"""
Payment reconciliation tests: attempts, fees, signed callbacks, idempotency, refunds.
"""

from decimal import Decimal

import pytest

from sakura.extensions import db
from sakura.models import Order, PaymentTransaction
from sakura.services import order_service, payment_service
from sakura.validation import ValidationError, NotFoundError


def _callback(txn_id, status, gateway="SEPAY", sign=True, **extra):
    payload = {"transaction_id": txn_id, "status": status, **extra}
    signature = payment_service.sign_callback_payload(gateway, payload) if sign else None
    return payment_service.apply_gateway_callback(
        status, payload, transaction_id=txn_id, signature=signature, gateway=gateway,
    )


@pytest.fixture
def pending_payment(order_factory):
    order = order_factory().order
    txn_id = payment_service.record_payment_attempt(order.id, "SEPAY", order.total_amount)
    return order.id, txn_id


class TestPaymentAttempts:
    def test_attempt_opens_pending_transaction(self, pending_payment):
        order_id, txn_id = pending_payment
        txn = payment_service.get_payment(txn_id)

        assert txn_id.startswith("PAY")
        assert txn.status == "PENDING"
        assert txn.amount == Decimal("530000.00")
        assert txn.order_id == order_id
        assert txn.user_id == 7
        assert txn.currency == "VND"

    def test_new_attempt_supersedes_pending_one(self, pending_payment):
        order_id, first = pending_payment
        second = payment_service.record_payment_attempt(order_id, "VNPAY", "530000")

        statuses = {t.transaction_id: t.status for t in payment_service.get_order_payments(order_id)}
        assert statuses == {first: "CANCELLED", second: "PENDING"}

    def test_cod_confirms_order_payment_axis(self, order_factory):
        order = order_factory().order
        txn_id = payment_service.record_payment_attempt(order.id, "cod", order.total_amount)

        assert db.session.get(Order, order.id).payment_status == "CONFIRMED"
        assert payment_service.get_payment(txn_id).status == "PENDING"
        assert payment_service.get_payment(txn_id).fee == Decimal("0.00")

    def test_rejects_cancelled_order(self, order_factory):
        order = order_factory().order
        order_service.cancel_order(order.id)
        with pytest.raises(ValidationError):
            payment_service.record_payment_attempt(order.id, "SEPAY", "530000")

    @pytest.mark.parametrize("method, amount", [("BITCOIN", "10"), ("SEPAY", "0"), ("SEPAY", "-5")])
    def test_rejects_bad_input(self, order_factory, method, amount):
        order = order_factory().order
        with pytest.raises(ValidationError):
            payment_service.record_payment_attempt(order.id, method, amount)

    def test_unknown_order(self, db_session):
        with pytest.raises(NotFoundError):
            payment_service.record_payment_attempt(999, "SEPAY", "10")


class TestFees:
    @pytest.mark.parametrize("method, expected", [
        ("COD", "0.00"),
        ("SEPAY", "0.00"),
        ("VNPAY", "5830.00"),
        ("CREDIT_CARD", "13660.00"),
        ("QRCODE", "0.00"),
    ])
    def test_fee_schedule(self, app, method, expected):
        with app.app_context():
            assert payment_service.calculate_payment_fee(method, "530000") == Decimal(expected)

    def test_fee_stored_on_attempt(self, order_factory):
        order = order_factory().order
        txn_id = payment_service.record_payment_attempt(order.id, "CREDIT_CARD", "530000")
        txn = payment_service.get_payment(txn_id)
        assert txn.fee == Decimal("13660.00")
        assert txn.net_amount == Decimal("516340.00")


class TestSignatures:
    def test_round_trip(self, app):
        with app.app_context():
            payload = {"b": 1, "a": "x"}
            signature = payment_service.sign_callback_payload("sepay", payload)
            assert payment_service.verify_callback_signature("SEPAY", {"a": "x", "b": 1}, signature)
            assert not payment_service.verify_callback_signature("SEPAY", {"a": "y", "b": 1}, signature)
            assert not payment_service.verify_callback_signature("SEPAY", payload, None)

    def test_gateway_without_secret_needs_dev_flag(self, app):
        with app.app_context():
            assert payment_service.verify_callback_signature("VNPAY", {}, "anything") is False
            app.config["PAYMENT_WEBHOOK_ALLOW_UNSIGNED"] = True
            try:
                assert payment_service.verify_callback_signature("VNPAY", {}, None) is True
            finally:
                app.config["PAYMENT_WEBHOOK_ALLOW_UNSIGNED"] = False


class TestGatewayCallbacks:
    def test_paid_callback_settles_order(self, pending_payment):
        order_id, txn_id = pending_payment
        outcome = _callback(txn_id, "SUCCESS", message="ok")

        assert outcome.accepted and not outcome.idempotent_replay
        assert outcome.status == "PAID"
        txn = payment_service.get_payment(txn_id)
        assert txn.completed_at is not None and txn.processed_at is not None
        assert txn.response_message == "ok"
        order = db.session.get(Order, order_id)
        assert order.payment_status == "PAID"
        assert order.paid_amount == Decimal("530000.00")

    def test_scenario_duplicate_paid_callback_is_idempotent(self, pending_payment):
        order_id, txn_id = pending_payment
        _callback(txn_id, "PAID")
        completed_at = payment_service.get_payment(txn_id).completed_at

        replay = _callback(txn_id, "PAID")

        assert replay.accepted is True
        assert replay.idempotent_replay is True
        assert payment_service.get_payment(txn_id).completed_at == completed_at
        assert db.session.get(Order, order_id).paid_amount == Decimal("530000.00")

    def test_late_failure_after_paid_changes_nothing(self, pending_payment):
        order_id, txn_id = pending_payment
        _callback(txn_id, "PAID")
        outcome = _callback(txn_id, "FAILED")

        assert outcome.idempotent_replay is True
        assert outcome.status == "PAID"
        assert db.session.get(Order, order_id).payment_status == "PAID"

    def test_processing_then_paid(self, pending_payment):
        order_id, txn_id = pending_payment
        assert _callback(txn_id, "processing").status == "PROCESSING"
        assert db.session.get(Order, order_id).payment_status == "PROCESSING"

        late_pending = _callback(txn_id, "PENDING")
        assert late_pending.idempotent_replay is True

        assert _callback(txn_id, "COMPLETED").status == "PAID"
        assert db.session.get(Order, order_id).payment_status == "PAID"

    def test_failed_callback_marks_order(self, pending_payment):
        order_id, txn_id = pending_payment
        outcome = _callback(txn_id, "ERROR")
        assert outcome.status == "FAILED"
        assert db.session.get(Order, order_id).payment_status == "FAILED"

    def test_bad_signature_rejected(self, pending_payment):
        order_id, txn_id = pending_payment
        payload = {"transaction_id": txn_id, "status": "SUCCESS"}
        outcome = payment_service.apply_gateway_callback(
            "SUCCESS", payload, transaction_id=txn_id, signature="00" * 32, gateway="SEPAY",
        )
        assert outcome.accepted is False
        assert outcome.reason == "invalid signature"
        assert payment_service.get_payment(txn_id).status == "PENDING"

    def test_missing_signature_rejected(self, pending_payment):
        _, txn_id = pending_payment
        outcome = _callback(txn_id, "SUCCESS", sign=False)
        assert (outcome.accepted, outcome.reason) == (False, "invalid signature")

    def test_unconfigured_gateway_rejected(self, pending_payment):
        _, txn_id = pending_payment
        outcome = _callback(txn_id, "SUCCESS", gateway="VNPAY", sign=False)
        assert outcome.accepted is False

    def test_unknown_status_rejected(self, pending_payment):
        _, txn_id = pending_payment
        outcome = _callback(txn_id, "TELEPORTED")
        assert outcome.accepted is False
        assert outcome.reason == "unknown status 'TELEPORTED'"

    def test_unknown_transaction_rejected(self, db_session):
        outcome = _callback("PAY000", "SUCCESS")
        assert (outcome.accepted, outcome.reason) == (False, "unknown transaction")

    def test_lookup_by_external_id(self, pending_payment):
        order_id, txn_id = pending_payment
        payment_service.apply_gateway_callback("PROCESSING", {}, transaction_id=txn_id, external_id="GW-1")

        outcome = payment_service.apply_gateway_callback("SUCCESS", {"ref": "GW-1"}, external_id="GW-1")

        assert outcome.status == "PAID"
        assert payment_service.get_payment(txn_id).external_transaction_id == "GW-1"

    def test_external_id_owned_by_other_transaction(self, order_factory):
        first_order = order_factory().order
        second_order = order_factory().order
        first = payment_service.record_payment_attempt(first_order.id, "SEPAY", "530000")
        second = payment_service.record_payment_attempt(second_order.id, "SEPAY", "530000")
        payment_service.apply_gateway_callback("PROCESSING", {}, transaction_id=first, external_id="GW-9")

        outcome = payment_service.apply_gateway_callback("SUCCESS", {}, transaction_id=second, external_id="GW-9")

        assert outcome.accepted is False
        assert payment_service.get_payment(second).status == "PENDING"


class TestOrderSettlement:
    def test_amount_defaults_to_order_total(self, order_factory):
        order = order_factory().order
        txn = payment_service.get_payment(payment_service.record_payment_attempt(order.id, "SEPAY"))
        assert txn.amount == Decimal("530000.00")
        assert txn.currency == "VND"

    @pytest.mark.parametrize("currency", ["USD", "", 5])
    def test_foreign_currency_rejected(self, order_factory, currency):
        order = order_factory().order
        with pytest.raises(ValidationError):
            payment_service.record_payment_attempt(order.id, "BANK_TRANSFER", "1", currency=currency)
        assert payment_service.get_order_payments(order.id) == []

    def test_currency_match_is_case_insensitive(self, order_factory):
        order = order_factory().order
        txn_id = payment_service.record_payment_attempt(order.id, "SEPAY", currency="vnd")
        assert payment_service.get_payment(txn_id).currency == "VND"

    def test_short_payment_does_not_settle_order(self, order_factory):
        order_id = order_factory().order.id
        txn_id = payment_service.record_payment_attempt(order_id, "BANK_TRANSFER", "1")

        payment_service.apply_gateway_callback("SUCCESS", {}, transaction_id=txn_id)

        order = db.session.get(Order, order_id)
        assert order.paid_amount == Decimal("1.00")
        assert order.payment_status == "PROCESSING"
        assert order.is_paid is False

    def test_second_attempt_completes_payment(self, order_factory):
        order_id = order_factory().order.id
        first = payment_service.record_payment_attempt(order_id, "SEPAY", "30000")
        payment_service.apply_gateway_callback("SUCCESS", {}, transaction_id=first)

        second = payment_service.record_payment_attempt(order_id, "SEPAY", "500000")
        payment_service.apply_gateway_callback("SUCCESS", {}, transaction_id=second)

        order = db.session.get(Order, order_id)
        assert order.paid_amount == Decimal("530000.00")
        assert order.payment_status == "PAID"
        with pytest.raises(ValidationError):
            payment_service.record_payment_attempt(order_id, "SEPAY")


class TestRefundsAndCancellation:
    def test_partial_then_full_refund(self, pending_payment):
        order_id, txn_id = pending_payment
        _callback(txn_id, "PAID")

        txn = payment_service.refund_payment(txn_id, "30000", reason="damaged item")
        assert txn.status == "PARTIALLY_REFUNDED"
        assert txn.refunded_at is not None
        assert txn.refundable_amount == Decimal("500000.00")
        assert db.session.get(Order, order_id).payment_status == "PARTIALLY_REFUNDED"

        txn = payment_service.refund_payment(txn_id, "500000")
        assert txn.status == "REFUNDED"
        assert txn.amount == Decimal("530000.00")
        order = db.session.get(Order, order_id)
        assert order.refunded_amount == Decimal("530000.00")
        assert order.payment_status == "REFUNDED"

    def test_over_refund_rejected(self, pending_payment):
        _, txn_id = pending_payment
        _callback(txn_id, "PAID")
        with pytest.raises(ValidationError):
            payment_service.refund_payment(txn_id, "530000.01")
        assert payment_service.get_payment(txn_id).refunded_amount == Decimal("0.00")

    def test_refund_requires_settled_payment(self, pending_payment):
        _, txn_id = pending_payment
        with pytest.raises(ValidationError):
            payment_service.refund_payment(txn_id, "1000")

    def test_cancel_pending_payment(self, pending_payment):
        _, txn_id = pending_payment
        txn = payment_service.cancel_payment(txn_id, reason="customer left")
        assert txn.status == "CANCELLED"
        assert txn.response_message == "customer left"

        with pytest.raises(ValidationError):
            payment_service.cancel_payment(txn_id)

    def test_cancel_unknown_payment(self, db_session):
        with pytest.raises(NotFoundError):
            payment_service.cancel_payment("PAY404")


class TestPaymentStats:
    def test_stats(self, pending_payment):
        _, txn_id = pending_payment
        _callback(txn_id, "PAID")
        payment_service.refund_payment(txn_id, "30000")

        stats = payment_service.get_payment_stats()
        assert stats["total_transactions"] == 1
        assert stats["by_status"]["PARTIALLY_REFUNDED"] == 1
        assert stats["collected_amount"] == "530000.00"
        assert stats["refunded_amount"] == "30000.00"
        assert db.session.query(PaymentTransaction).count() == 1
