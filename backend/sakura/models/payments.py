from __future__ import annotations

import json
import random
import time
from decimal import Decimal

from ..extensions import db
from ..time_utils import to_utc_z
from .constants import PAYMENT_PENDING, PAYMENT_TRANSITIONS


def generate_transaction_id() -> str:
    """PAY + unix seconds + 4 random digits."""
    return f"PAY{int(time.time())}{random.randint(1000, 9999)}"


class PaymentTransaction(db.Model):
    """
    One payment attempt against an order.

    LIFECYCLE (monotonic, see constants.PAYMENT_TRANSITIONS):
        PENDING -> PROCESSING -> PAID -> PARTIALLY_REFUNDED -> REFUNDED
    A gateway callback for a transaction already in a terminal state is an
    idempotent replay and changes nothing.

    INVARIANT: refunded_amount <= amount, and amount never changes after
    creation.
    """
    __tablename__ = "payment_transactions"
    __table_args__ = (
        db.Index("ix_payment_transactions_order_status", "order_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.String(100), nullable=False, unique=True)
    external_transaction_id = db.Column(db.String(255), nullable=True, unique=True)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, nullable=True, index=True)

    payment_method = db.Column(db.String(32), nullable=False)
    amount = db.Column(db.Numeric(18, 2), nullable=False)
    fee = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    currency = db.Column(db.String(3), nullable=False, default="VND")
    status = db.Column(db.String(32), nullable=False, default=PAYMENT_PENDING, index=True)
    refunded_amount = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"))

    description = db.Column(db.String(500), nullable=True)
    response_data = db.Column(db.Text, nullable=True)  # last gateway payload, JSON
    response_message = db.Column(db.String(1000), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("payments", lazy=True, order_by="PaymentTransaction.id"))
    __mapper_args__ = {"version_id_col": version_id}

    def can_transition_to(self, new_status: str) -> bool:
        return new_status in PAYMENT_TRANSITIONS.get(self.status, frozenset())

    @property
    def net_amount(self) -> Decimal:
        return Decimal(self.amount) - Decimal(self.fee or 0)

    @property
    def refundable_amount(self) -> Decimal:
        return Decimal(self.amount) - Decimal(self.refunded_amount or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "external_transaction_id": self.external_transaction_id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "payment_method": self.payment_method,
            "amount": str(self.amount),
            "fee": str(self.fee) if self.fee is not None else None,
            "net_amount": str(self.net_amount),
            "currency": self.currency,
            "status": self.status,
            "refunded_amount": str(self.refunded_amount) if self.refunded_amount is not None else None,
            "description": self.description,
            "response_data": json.loads(self.response_data) if self.response_data else None,
            "response_message": self.response_message,
            "created_at": to_utc_z(self.created_at),
            "processed_at": to_utc_z(self.processed_at),
            "completed_at": to_utc_z(self.completed_at),
            "refunded_at": to_utc_z(self.refunded_at),
            "version_id": self.version_id,
        }
