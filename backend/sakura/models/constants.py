# Overview: Canonical status, type, and action vocabularies stored in string columns.

from __future__ import annotations


# =============================================================================
# ORDER STATUS
# =============================================================================

ORDER_PENDING = "PENDING"
ORDER_CONFIRMED = "CONFIRMED"
ORDER_PROCESSING = "PROCESSING"
ORDER_SHIPPED = "SHIPPED"
ORDER_OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
ORDER_DELIVERED = "DELIVERED"
ORDER_CANCELLED = "CANCELLED"
ORDER_RETURNED = "RETURNED"
ORDER_REFUNDED = "REFUNDED"

ORDER_STATUSES = (
    ORDER_PENDING,
    ORDER_CONFIRMED,
    ORDER_PROCESSING,
    ORDER_SHIPPED,
    ORDER_OUT_FOR_DELIVERY,
    ORDER_DELIVERED,
    ORDER_CANCELLED,
    ORDER_RETURNED,
    ORDER_REFUNDED,
)

# Legal (current -> requested) pairs. Anything absent is rejected.
ORDER_TRANSITIONS = {
    ORDER_PENDING: frozenset({ORDER_CONFIRMED, ORDER_CANCELLED}),
    ORDER_CONFIRMED: frozenset({ORDER_PROCESSING, ORDER_CANCELLED}),
    ORDER_PROCESSING: frozenset({ORDER_SHIPPED}),
    ORDER_SHIPPED: frozenset({ORDER_OUT_FOR_DELIVERY, ORDER_DELIVERED}),
    ORDER_OUT_FOR_DELIVERY: frozenset({ORDER_DELIVERED}),
    ORDER_DELIVERED: frozenset({ORDER_RETURNED}),
    ORDER_CANCELLED: frozenset({ORDER_REFUNDED}),
    ORDER_RETURNED: frozenset({ORDER_REFUNDED}),
    ORDER_REFUNDED: frozenset(),
}

# Order column stamped when the order enters a status
ORDER_STATUS_DATE_FIELDS = {
    ORDER_CONFIRMED: "confirmed_date",
    ORDER_PROCESSING: "processing_date",
    ORDER_SHIPPED: "shipped_date",
    ORDER_DELIVERED: "delivered_date",
    ORDER_CANCELLED: "cancelled_date",
    ORDER_RETURNED: "returned_date",
    ORDER_REFUNDED: "refunded_date",
}


# =============================================================================
# PAYMENT STATUS (shared by Order.payment_status and PaymentTransaction.status)
# =============================================================================

PAYMENT_PENDING = "PENDING"
PAYMENT_PROCESSING = "PROCESSING"
PAYMENT_PAID = "PAID"
PAYMENT_FAILED = "FAILED"
PAYMENT_CANCELLED = "CANCELLED"
PAYMENT_REFUNDED = "REFUNDED"
PAYMENT_PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
PAYMENT_EXPIRED = "EXPIRED"
PAYMENT_CONFIRMED = "CONFIRMED"  # COD accepted, cash collected on delivery

PAYMENT_STATUSES = (
    PAYMENT_PENDING,
    PAYMENT_PROCESSING,
    PAYMENT_PAID,
    PAYMENT_FAILED,
    PAYMENT_CANCELLED,
    PAYMENT_REFUNDED,
    PAYMENT_PARTIALLY_REFUNDED,
    PAYMENT_EXPIRED,
    PAYMENT_CONFIRMED,
)

# Forward-only lifecycle of a single payment attempt
PAYMENT_TRANSITIONS = {
    PAYMENT_PENDING: frozenset({
        PAYMENT_PROCESSING, PAYMENT_CONFIRMED, PAYMENT_PAID,
        PAYMENT_FAILED, PAYMENT_CANCELLED, PAYMENT_EXPIRED,
    }),
    PAYMENT_PROCESSING: frozenset({PAYMENT_PAID, PAYMENT_FAILED, PAYMENT_CANCELLED, PAYMENT_EXPIRED}),
    PAYMENT_CONFIRMED: frozenset({PAYMENT_PAID, PAYMENT_FAILED, PAYMENT_CANCELLED}),
    PAYMENT_PAID: frozenset({PAYMENT_REFUNDED, PAYMENT_PARTIALLY_REFUNDED}),
    PAYMENT_PARTIALLY_REFUNDED: frozenset({PAYMENT_PARTIALLY_REFUNDED, PAYMENT_REFUNDED}),
    PAYMENT_FAILED: frozenset(),
    PAYMENT_CANCELLED: frozenset(),
    PAYMENT_EXPIRED: frozenset(),
    PAYMENT_REFUNDED: frozenset(),
}

# Statuses a gateway callback can no longer move. Refunds go through refund_payment.
PAYMENT_CALLBACK_TERMINAL = frozenset({
    PAYMENT_PAID,
    PAYMENT_FAILED,
    PAYMENT_CANCELLED,
    PAYMENT_EXPIRED,
    PAYMENT_REFUNDED,
    PAYMENT_PARTIALLY_REFUNDED,
})


# =============================================================================
# PAYMENT METHODS
# =============================================================================

METHOD_COD = "COD"
METHOD_BANK_TRANSFER = "BANK_TRANSFER"
METHOD_CREDIT_CARD = "CREDIT_CARD"
METHOD_DEBIT_CARD = "DEBIT_CARD"
METHOD_EWALLET = "EWALLET"
METHOD_QRCODE = "QRCODE"
METHOD_INSTALLMENT = "INSTALLMENT"
METHOD_SEPAY = "SEPAY"
METHOD_VNPAY = "VNPAY"
METHOD_MOMO = "MOMO"

PAYMENT_METHODS = (
    METHOD_COD,
    METHOD_BANK_TRANSFER,
    METHOD_CREDIT_CARD,
    METHOD_DEBIT_CARD,
    METHOD_EWALLET,
    METHOD_QRCODE,
    METHOD_INSTALLMENT,
    METHOD_SEPAY,
    METHOD_VNPAY,
    METHOD_MOMO,
)


# =============================================================================
# DELIVERY METHODS
# =============================================================================

DELIVERY_STANDARD = "STANDARD"
DELIVERY_EXPRESS = "EXPRESS"
DELIVERY_SUPER_FAST = "SUPER_FAST"
DELIVERY_SELF_PICKUP = "SELF_PICKUP"

DELIVERY_METHODS = (DELIVERY_STANDARD, DELIVERY_EXPRESS, DELIVERY_SUPER_FAST, DELIVERY_SELF_PICKUP)


# =============================================================================
# COUPON TYPES
# =============================================================================

COUPON_PERCENTAGE = "PERCENTAGE"
COUPON_FIXED_AMOUNT = "FIXED_AMOUNT"
COUPON_FREE_SHIPPING = "FREE_SHIPPING"
COUPON_BUY_X_GET_Y = "BUY_X_GET_Y"
COUPON_FIRST_ORDER = "FIRST_ORDER"
COUPON_BULK_DISCOUNT = "BULK_DISCOUNT"

COUPON_TYPES = (
    COUPON_PERCENTAGE,
    COUPON_FIXED_AMOUNT,
    COUPON_FREE_SHIPPING,
    COUPON_BUY_X_GET_Y,
    COUPON_FIRST_ORDER,
    COUPON_BULK_DISCOUNT,
)

# Coupon rejection reasons surfaced to callers
COUPON_NOT_FOUND = "not_found"
COUPON_INACTIVE = "inactive"
COUPON_NOT_STARTED = "not_started"
COUPON_EXPIRED = "expired"
COUPON_LIMIT_REACHED = "limit_reached"
COUPON_MIN_ORDER_NOT_MET = "min_order_not_met"


# =============================================================================
# INVENTORY ACTIONS
# =============================================================================

INV_PURCHASE = "PURCHASE"
INV_SALE = "SALE"
INV_RETURN = "RETURN"
INV_ADJUSTMENT = "ADJUSTMENT"
INV_DAMAGE = "DAMAGE"
INV_TRANSFER = "TRANSFER"
INV_LOST = "LOST"
INV_FOUND = "FOUND"
INV_EXPIRED = "EXPIRED"
INV_RESERVED = "RESERVED"
INV_RELEASED = "RELEASED"
INV_PROMOTION = "PROMOTION"
INV_SAMPLE = "SAMPLE"
INV_QUALITY_CHECK = "QUALITY_CHECK"

INVENTORY_INBOUND_ACTIONS = frozenset({INV_PURCHASE, INV_RETURN, INV_FOUND, INV_RELEASED})
INVENTORY_OUTBOUND_ACTIONS = frozenset({
    INV_SALE, INV_DAMAGE, INV_LOST, INV_EXPIRED, INV_RESERVED, INV_PROMOTION, INV_SAMPLE,
})
INVENTORY_SIGNED_ACTIONS = frozenset({INV_ADJUSTMENT, INV_TRANSFER, INV_QUALITY_CHECK})

INVENTORY_ACTIONS = INVENTORY_INBOUND_ACTIONS | INVENTORY_OUTBOUND_ACTIONS | INVENTORY_SIGNED_ACTIONS
