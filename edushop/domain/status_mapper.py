"""Translation of provider payment codes into canonical statuses.

Both functions are pure and total. Unknown provider codes map to
``PaymentStatus.PENDING`` so an unrecognized value can never be read as a
successful payment.
"""

from __future__ import annotations

from .statuses import OrderStatus, PaymentStatus

# Mercado Pago statuses seen in practice.
_PROVIDER_CODES: dict[str, PaymentStatus] = {
    "approved": PaymentStatus.APPROVED,
    "rejected": PaymentStatus.REJECTED,
    "cancelled": PaymentStatus.CANCELLED,
    "canceled": PaymentStatus.CANCELLED,
    "refunded": PaymentStatus.REFUNDED,
    "charged_back": PaymentStatus.REFUNDED,
    "pending": PaymentStatus.PENDING,
    "in_process": PaymentStatus.PENDING,
}

_ORDER_STATUS_BY_PAYMENT: dict[PaymentStatus, OrderStatus] = {
    PaymentStatus.APPROVED: OrderStatus.PAID,
    PaymentStatus.REFUNDED: OrderStatus.REFUND,
    PaymentStatus.REJECTED: OrderStatus.FAILED,
    PaymentStatus.CANCELLED: OrderStatus.CANCELLED,
    PaymentStatus.CREATED: OrderStatus.PAYMENT_PENDING,
    PaymentStatus.PENDING: OrderStatus.PAYMENT_PENDING,
}


def map_provider_status(raw: str | None) -> PaymentStatus:
    """Map a provider payment code to a canonical ``PaymentStatus``."""
    code = str(raw or "").strip().lower()
    return _PROVIDER_CODES.get(code, PaymentStatus.PENDING)


def map_to_order_status(payment_status: PaymentStatus) -> OrderStatus:
    """Map a canonical ``PaymentStatus`` to the ``OrderStatus`` it implies."""
    return _ORDER_STATUS_BY_PAYMENT.get(PaymentStatus(payment_status), OrderStatus.PAYMENT_PENDING)
