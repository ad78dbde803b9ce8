from __future__ import annotations

from enum import Enum


class PaymentStatus(str, Enum):
    """Canonical status of a payment."""

    CREATED = "CREATED"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"

    @property
    def display_name(self) -> str:
        """Label shown to buyers on the order history page."""

        mapping = {
            self.CREATED: "Pago creado",
            self.PENDING: "Pago pendiente",
            self.APPROVED: "Pago aprobado",
            self.REJECTED: "Pago rechazado",
            self.CANCELLED: "Pago cancelado",
            self.REFUNDED: "Pago reembolsado",
        }
        return mapping.get(self, self.value)


class OrderStatus(str, Enum):
    """Canonical status of an order."""

    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAID = "PAID"
    PREPARING = "PREPARING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    REFUND = "REFUND"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ORDER_STATUSES


class FulfillmentStatus(str, Enum):
    """Operator-facing delivery progress of a paid order."""

    REGISTERED = "REGISTERED"
    PACKING = "PACKING"
    DELIVERY = "DELIVERY"
    DELIVERED = "DELIVERED"

    @property
    def display_name(self) -> str:
        mapping = {
            self.REGISTERED: "Pedido registrado",
            self.PACKING: "Empacando",
            self.DELIVERY: "En reparto",
            self.DELIVERED: "Entregado",
        }
        return mapping.get(self, self.value)


TERMINAL_ORDER_STATUSES = frozenset(
    {OrderStatus.CANCELLED, OrderStatus.FAILED, OrderStatus.REFUND, OrderStatus.DELIVERED}
)

# Payment lifecycle: allowed successors of each stored status.
PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.CREATED: frozenset(
        {
            PaymentStatus.PENDING,
            PaymentStatus.APPROVED,
            PaymentStatus.REJECTED,
            PaymentStatus.CANCELLED,
            PaymentStatus.REFUNDED,
        }
    ),
    PaymentStatus.PENDING: frozenset(
        {
            PaymentStatus.APPROVED,
            PaymentStatus.REJECTED,
            PaymentStatus.CANCELLED,
            PaymentStatus.REFUNDED,
        }
    ),
    PaymentStatus.APPROVED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REJECTED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

# Order edges reachable from payment events.
PAYMENT_DRIVEN_ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PAYMENT_PENDING: frozenset(
        {OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELLED, OrderStatus.REFUND}
    ),
    OrderStatus.PAID: frozenset({OrderStatus.REFUND}),
    OrderStatus.PREPARING: frozenset({OrderStatus.REFUND}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.REFUND}),
}

# Operator-driven fulfillment progression, in order.
FULFILLMENT_PROGRESSION: tuple[OrderStatus, ...] = (
    OrderStatus.PAID,
    OrderStatus.PREPARING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)


def can_advance_payment(previous: PaymentStatus, new: PaymentStatus) -> bool:
    return new in PAYMENT_TRANSITIONS.get(previous, frozenset())


def can_apply_payment_driven(previous: OrderStatus, new: OrderStatus) -> bool:
    return new in PAYMENT_DRIVEN_ORDER_TRANSITIONS.get(previous, frozenset())
