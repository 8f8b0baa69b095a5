# Overview: Public model exports; importing this package registers every table on db.metadata.

from .append_only import ImmutableRecordError, append_only
from .inventory import Product, ProductVariant, InventoryLog
from .coupons import Coupon, CouponUsageLimitError
from .orders import Order, OrderItem, OrderStatusHistory, IllegalTransitionError, generate_order_number
from .payments import PaymentTransaction, generate_transaction_id

__all__ = [
    "ImmutableRecordError",
    "append_only",
    "Product",
    "ProductVariant",
    "InventoryLog",
    "Coupon",
    "CouponUsageLimitError",
    "Order",
    "OrderItem",
    "OrderStatusHistory",
    "IllegalTransitionError",
    "generate_order_number",
    "PaymentTransaction",
    "generate_transaction_id",
]
