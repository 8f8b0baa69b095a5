# Overview: Service-layer operations for payments; attempts, gateway callbacks, refunds, and fees.

"""
Payment Reconciliation Service

WHY: Gateways report payment outcomes asynchronously, out of order, and more
than once. The transaction row is the single place where those reports are
reconciled, so the order's payment axis moves exactly once per real event.

DESIGN PRINCIPLES:
- Payment attempts are separate rows (many-to-one with the order). A new
  attempt supersedes any still-PENDING one.
- Status only moves forward (constants.PAYMENT_TRANSITIONS).
- Callbacks are idempotent: a replayed report, or any report for a
  transaction that already settled, is acknowledged and changes nothing.
- Callbacks from a gateway with a configured secret must carry a valid
  HMAC-SHA256 signature of the canonical JSON payload.
- Refunds are cumulative against refunded_amount; amount is never edited.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Order, PaymentTransaction, generate_transaction_id
from ..models.constants import (
    ORDER_CANCELLED,
    ORDER_REFUNDED,
    PAYMENT_PENDING,
    PAYMENT_PROCESSING,
    PAYMENT_PAID,
    PAYMENT_FAILED,
    PAYMENT_CANCELLED,
    PAYMENT_REFUNDED,
    PAYMENT_PARTIALLY_REFUNDED,
    PAYMENT_EXPIRED,
    PAYMENT_CONFIRMED,
    PAYMENT_STATUSES,
    PAYMENT_CALLBACK_TERMINAL,
    PAYMENT_METHODS,
    METHOD_COD,
)
from ..time_utils import utcnow
from ..validation import ValidationError, NotFoundError, parse_choice, parse_money, MONEY_QUANTUM, ZERO
from .concurrency import lock_for_update, run_with_retry


# =============================================================================
# GATEWAY VOCABULARY
# =============================================================================

# Gateway status words -> canonical payment status
_GATEWAY_STATUS_ALIASES = {
    "SUCCESS": PAYMENT_PAID,
    "SUCCEEDED": PAYMENT_PAID,
    "COMPLETED": PAYMENT_PAID,
    "PAID": PAYMENT_PAID,
    "FAILED": PAYMENT_FAILED,
    "FAILURE": PAYMENT_FAILED,
    "ERROR": PAYMENT_FAILED,
    "CANCELLED": PAYMENT_CANCELLED,
    "CANCELED": PAYMENT_CANCELLED,
    "PENDING": PAYMENT_PENDING,
    "PROCESSING": PAYMENT_PROCESSING,
    "REFUNDED": PAYMENT_REFUNDED,
    "PARTIALLY_REFUNDED": PAYMENT_PARTIALLY_REFUNDED,
    "EXPIRED": PAYMENT_EXPIRED,
    "CONFIRMED": PAYMENT_CONFIRMED,
}

# Order payment_status values a failed/cancelled attempt may overwrite
_ORDER_PAYMENT_OPEN = (PAYMENT_PENDING, PAYMENT_PROCESSING, PAYMENT_FAILED, PAYMENT_CANCELLED, PAYMENT_EXPIRED)


def parse_gateway_status(value) -> str | None:
    """Map a gateway status word to a payment status. None when unrecognized."""
    if not isinstance(value, str):
        return None
    return _GATEWAY_STATUS_ALIASES.get(value.strip().upper())


@dataclass(frozen=True)
class CallbackOutcome:
    accepted: bool
    idempotent_replay: bool = False
    transaction: PaymentTransaction | None = None
    status: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "accepted": self.accepted,
            "idempotent_replay": self.idempotent_replay,
            "status": self.status,
            "reason": self.reason,
            "transaction_id": self.transaction.transaction_id if self.transaction is not None else None,
        }


# =============================================================================
# SIGNATURES
# =============================================================================

def canonical_payload(payload: dict) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def _gateway_secret(gateway: str) -> str | None:
    secrets = current_app.config.get("PAYMENT_WEBHOOK_SECRETS") or {}
    return secrets.get(gateway.strip().upper())


def sign_callback_payload(gateway: str, payload: dict) -> str:
    secret = _gateway_secret(gateway)
    if not secret:
        raise ValidationError(f"no webhook secret configured for {gateway}")
    return hmac.new(secret.encode("utf-8"), canonical_payload(payload), hashlib.sha256).hexdigest()


def verify_callback_signature(gateway: str, payload: dict, signature: str | None) -> bool:
    """
    True when the signature matches the gateway secret.

    A gateway without a configured secret passes only when
    PAYMENT_WEBHOOK_ALLOW_UNSIGNED is enabled (development).
    """
    secret = _gateway_secret(gateway)
    if not secret:
        return bool(current_app.config.get("PAYMENT_WEBHOOK_ALLOW_UNSIGNED", False))
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), canonical_payload(payload), hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


# =============================================================================
# FEES
# =============================================================================

def calculate_payment_fee(method: str, amount) -> Decimal:
    """fixed + amount * percent / 100, rounded half-up to cents. COD is free."""
    method = parse_choice(method, PAYMENT_METHODS, field="payment_method")
    amount = parse_money(amount, field="amount")
    if method == METHOD_COD:
        return ZERO
    schedule = (current_app.config.get("PAYMENT_FEES") or {}).get(method)
    if not schedule:
        return ZERO
    fee = Decimal(schedule.get("fixed", "0")) + amount * Decimal(schedule.get("percent", "0")) / Decimal(100)
    return fee.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


# =============================================================================
# PAYMENT ATTEMPTS
# =============================================================================

def record_payment_attempt(
    order_id: int,
    method: str,
    amount=None,
    currency: str | None = None,
    user_id: int | None = None,
    description: str | None = None,
) -> str:
    """
    Open a PENDING payment attempt for an order and return its transaction id.

    amount defaults to the order total. The currency must be the order's.
    Earlier PENDING attempts for the same order are marked CANCELLED. A COD
    attempt moves the order's payment_status to CONFIRMED since the cash is
    collected on delivery.

    Raises:
        ValidationError: unknown method, non-positive amount, currency other
            than the order's, order already paid, cancelled or refunded
        NotFoundError: order does not exist
    """
    method = parse_choice(method, PAYMENT_METHODS, field="payment_method")
    if amount is not None:
        amount = parse_money(amount, field="amount", allow_zero=False)
    if currency is not None and (not isinstance(currency, str) or not currency.strip()):
        raise ValidationError("currency must be a currency code")

    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).populate_existing().first()
        if order is None:
            raise NotFoundError(f"order {order_id} not found")
        if order.payment_status == PAYMENT_PAID:
            raise ValidationError("order is already paid")
        if order.status in (ORDER_CANCELLED, ORDER_REFUNDED):
            raise ValidationError(f"cannot pay for an order in status {order.status}")
        if currency is not None and currency.strip().upper() != order.currency:
            raise ValidationError(f"currency {currency} does not match order currency {order.currency}")

        charge = amount if amount is not None else Decimal(order.total_amount)
        if charge <= 0:
            raise ValidationError("amount must be positive")
        fee = calculate_payment_fee(method, charge)

        superseded = (
            db.session.query(PaymentTransaction)
            .filter_by(order_id=order_id, status=PAYMENT_PENDING)
            .all()
        )
        for previous in superseded:
            previous.status = PAYMENT_CANCELLED
            previous.response_message = "Superseded by a new payment attempt"

        txn = PaymentTransaction(
            transaction_id=generate_transaction_id(),
            order_id=order_id,
            user_id=user_id if user_id is not None else order.user_id,
            payment_method=method,
            amount=charge,
            fee=fee,
            currency=order.currency,
            status=PAYMENT_PENDING,
            refunded_amount=ZERO,
            description=description or f"Payment for order {order.order_number}",
        )
        db.session.add(txn)

        if method == METHOD_COD:
            order.payment_status = PAYMENT_CONFIRMED

        db.session.commit()
        return txn.transaction_id

    return run_with_retry(_op)


def _find_transaction(transaction_id: str | None, external_id: str | None, *, lock: bool = False):
    query = db.session.query(PaymentTransaction)
    if transaction_id:
        query = query.filter_by(transaction_id=transaction_id)
    elif external_id:
        query = query.filter_by(external_transaction_id=external_id)
    else:
        return None
    if lock:
        query = lock_for_update(query)
    return query.populate_existing().first()


def _reject(reason: str, *, gateway: str | None, reference: str | None) -> CallbackOutcome:
    current_app.logger.warning("Payment callback rejected (gateway=%s ref=%s): %s", gateway, reference, reason)
    return CallbackOutcome(accepted=False, reason=reason)


def _stamp(txn: PaymentTransaction, status: str, now) -> None:
    if txn.processed_at is None and status != PAYMENT_PENDING:
        txn.processed_at = now
    if status == PAYMENT_PAID:
        txn.completed_at = now
    elif status in (PAYMENT_REFUNDED, PAYMENT_PARTIALLY_REFUNDED):
        txn.refunded_at = now


def _settle_order(order: Order, txn: PaymentTransaction, status: str) -> None:
    if status == PAYMENT_PAID:
        order.paid_amount = Decimal(order.paid_amount or 0) + Decimal(txn.amount)
        # Short payments leave the order open for another attempt
        if order.paid_amount >= Decimal(order.total_amount):
            order.payment_status = PAYMENT_PAID
        else:
            order.payment_status = PAYMENT_PROCESSING
    elif status == PAYMENT_PROCESSING and order.payment_status == PAYMENT_PENDING:
        order.payment_status = PAYMENT_PROCESSING
    elif status in (PAYMENT_FAILED, PAYMENT_CANCELLED, PAYMENT_EXPIRED) and order.payment_status in _ORDER_PAYMENT_OPEN:
        order.payment_status = status


def apply_gateway_callback(
    reported_status,
    payload: dict | None,
    transaction_id: str | None = None,
    external_id: str | None = None,
    signature: str | None = None,
    gateway: str | None = None,
) -> CallbackOutcome:
    """
    Reconcile one gateway report against its transaction.

    Outcomes:
    - accepted=False: bad signature, unknown status word, unknown
      transaction, or external id already bound elsewhere. Logged, nothing
      written.
    - accepted=True, idempotent_replay=True: same status again, a report for
      a settled transaction, or an out-of-order report the lifecycle does not
      allow. Nothing written.
    - accepted=True: legal forward move. Status, timestamps and the payload
      are stored. A move to PAID adds the amount to the order's paid_amount
      once (version-checked row). The order is marked PAID when paid_amount
      covers total_amount and stays PROCESSING while it falls short.

    gateway=None marks a trusted internal caller; signatures are not checked.
    """
    payload = payload if isinstance(payload, dict) else {}
    reference = transaction_id or external_id

    if gateway is not None and not verify_callback_signature(gateway, payload, signature):
        return _reject("invalid signature", gateway=gateway, reference=reference)

    status = parse_gateway_status(reported_status)
    if status is None:
        return _reject(f"unknown status '{reported_status}'", gateway=gateway, reference=reference)
    if not reference:
        return _reject("missing transaction reference", gateway=gateway, reference=reference)

    def _op():
        txn = _find_transaction(transaction_id, external_id, lock=True)
        if txn is None:
            db.session.rollback()
            return _reject("unknown transaction", gateway=gateway, reference=reference)

        if txn.status == status or txn.status in PAYMENT_CALLBACK_TERMINAL or not txn.can_transition_to(status):
            db.session.rollback()
            current_app.logger.info(
                "Payment callback replay for %s: reported %s, current %s", txn.transaction_id, status, txn.status,
            )
            return CallbackOutcome(accepted=True, idempotent_replay=True, transaction=txn, status=txn.status)

        if external_id and txn.external_transaction_id != external_id:
            owner = db.session.query(PaymentTransaction.id).filter_by(external_transaction_id=external_id).first()
            if owner is not None and owner.id != txn.id:
                db.session.rollback()
                return _reject("external id belongs to another transaction", gateway=gateway, reference=reference)
            if txn.external_transaction_id is None:
                txn.external_transaction_id = external_id

        now = utcnow()
        txn.status = status
        txn.response_data = json.dumps(payload, sort_keys=True, default=str)
        message = payload.get("message") or payload.get("response_message")
        if message:
            txn.response_message = str(message)[:1000]
        _stamp(txn, status, now)

        order = lock_for_update(db.session.query(Order).filter_by(id=txn.order_id)).first()
        if order is not None:
            _settle_order(order, txn, status)

        db.session.commit()
        current_app.logger.info("Payment %s moved to %s", txn.transaction_id, status)
        return CallbackOutcome(accepted=True, transaction=txn, status=status)

    return run_with_retry(_op)


# =============================================================================
# REFUNDS & CANCELLATION
# =============================================================================

def refund_payment(transaction_id: str, amount, reason: str | None = None, user_id: int | None = None) -> PaymentTransaction:
    """
    Refund part or all of a settled payment.

    refunded_amount accumulates; the transaction becomes REFUNDED once it
    equals amount, PARTIALLY_REFUNDED before that. The order's refunded
    amount and payment status follow.
    """
    amount = parse_money(amount, field="amount", allow_zero=False)

    def _op():
        txn = _find_transaction(transaction_id, None, lock=True)
        if txn is None:
            raise NotFoundError(f"payment {transaction_id} not found")
        if txn.status not in (PAYMENT_PAID, PAYMENT_PARTIALLY_REFUNDED):
            raise ValidationError(f"cannot refund a payment in status {txn.status}")
        if amount > txn.refundable_amount:
            raise ValidationError(f"refund exceeds refundable amount {txn.refundable_amount}")

        now = utcnow()
        txn.refunded_amount = Decimal(txn.refunded_amount or 0) + amount
        new_status = PAYMENT_REFUNDED if txn.refunded_amount >= Decimal(txn.amount) else PAYMENT_PARTIALLY_REFUNDED
        txn.status = new_status
        _stamp(txn, new_status, now)
        txn.response_message = reason or f"Refunded {amount}"
        if user_id is not None:
            current_app.logger.info("Refund of %s on %s by user %s", amount, txn.transaction_id, user_id)

        order = lock_for_update(db.session.query(Order).filter_by(id=txn.order_id)).first()
        if order is not None:
            order.refunded_amount = Decimal(order.refunded_amount or 0) + amount
            paid = Decimal(order.paid_amount or 0)
            order.payment_status = (
                PAYMENT_REFUNDED if paid > 0 and order.refunded_amount >= paid else PAYMENT_PARTIALLY_REFUNDED
            )

        db.session.commit()
        return txn

    return run_with_retry(_op)


def cancel_payment(transaction_id: str, reason: str | None = None) -> PaymentTransaction:
    def _op():
        txn = _find_transaction(transaction_id, None, lock=True)
        if txn is None:
            raise NotFoundError(f"payment {transaction_id} not found")
        if txn.status not in (PAYMENT_PENDING, PAYMENT_PROCESSING):
            raise ValidationError(f"cannot cancel a payment in status {txn.status}")
        txn.status = PAYMENT_CANCELLED
        txn.response_message = reason or "Cancelled"
        if txn.processed_at is None:
            txn.processed_at = utcnow()
        db.session.commit()
        return txn

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_payment(transaction_id: str) -> PaymentTransaction:
    txn = db.session.query(PaymentTransaction).filter_by(transaction_id=transaction_id).first()
    if txn is None:
        raise NotFoundError(f"payment {transaction_id} not found")
    return txn


def get_order_payments(order_id: int) -> list[PaymentTransaction]:
    if db.session.get(Order, order_id) is None:
        raise NotFoundError(f"order {order_id} not found")
    return (
        db.session.query(PaymentTransaction)
        .filter_by(order_id=order_id)
        .order_by(PaymentTransaction.id.asc())
        .all()
    )


def get_payment_stats() -> dict:
    rows = (
        db.session.query(
            PaymentTransaction.status,
            func.count(PaymentTransaction.id),
            func.coalesce(func.sum(PaymentTransaction.amount), 0),
        )
        .group_by(PaymentTransaction.status)
        .all()
    )
    by_status = {status: 0 for status in PAYMENT_STATUSES}
    total = 0
    for status, count, _amount in rows:
        by_status[status] = int(count)
        total += int(count)

    settled = (PAYMENT_PAID, PAYMENT_PARTIALLY_REFUNDED, PAYMENT_REFUNDED)
    collected = (
        db.session.query(func.coalesce(func.sum(PaymentTransaction.amount), 0))
        .filter(PaymentTransaction.status.in_(settled))
        .scalar()
    )
    refunded = db.session.query(func.coalesce(func.sum(PaymentTransaction.refunded_amount), 0)).scalar()
    fees = (
        db.session.query(func.coalesce(func.sum(PaymentTransaction.fee), 0))
        .filter(PaymentTransaction.status.in_(settled))
        .scalar()
    )
    return {
        "total_transactions": total,
        "by_status": by_status,
        "collected_amount": str(Decimal(str(collected)).quantize(MONEY_QUANTUM)),
        "refunded_amount": str(Decimal(str(refunded)).quantize(MONEY_QUANTUM)),
        "fees": str(Decimal(str(fees)).quantize(MONEY_QUANTUM)),
    }
