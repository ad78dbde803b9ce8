"""Declared translation between canonical order statuses and stored values.

Older databases constrain ``orders.status`` to a Spanish vocabulary. The
dialect in use is configuration (``ORDER_STATUS_DIALECT``), and this table is
the only place the two vocabularies are related. Bump
``ORDER_STATUS_VOCABULARY_VERSION`` whenever an entry changes.
"""

from __future__ import annotations

from .errors import PersistenceError
from .statuses import OrderStatus

ORDER_STATUS_VOCABULARY_VERSION = 1

DIALECT_EN = "en"
DIALECT_ES = "es"

SPANISH_ORDER_STATUS: dict[OrderStatus, str] = {
    OrderStatus.PAYMENT_PENDING: "PENDIENTE_PAGO",
    OrderStatus.PAID: "PAGADO",
    OrderStatus.PREPARING: "EN_PREPARACION",
    OrderStatus.SHIPPED: "ENVIADO",
    OrderStatus.DELIVERED: "ENTREGADO",
    OrderStatus.CANCELLED: "CANCELADO",
    OrderStatus.FAILED: "FALLIDO",
    OrderStatus.REFUND: "REEMBOLSADO",
}

# Values written before order statuses were normalized.
LEGACY_PENDING_VALUES = frozenset({"CREATED", "PENDING"})

_FROM_STORAGE: dict[str, OrderStatus] = {
    **{status.value: status for status in OrderStatus},
    **{value: status for status, value in SPANISH_ORDER_STATUS.items()},
    **{value: OrderStatus.PAYMENT_PENDING for value in LEGACY_PENDING_VALUES},
}


class OrderStatusVocabulary:
    """Translate order statuses at the persistence boundary."""

    def __init__(self, dialect: str = DIALECT_EN):
        normalized = (dialect or DIALECT_EN).strip().lower()
        if normalized not in {DIALECT_EN, DIALECT_ES}:
            raise ValueError(f"Unknown order status dialect {dialect!r}")
        self.dialect = normalized
        self.version = ORDER_STATUS_VOCABULARY_VERSION

    def to_storage(self, status: OrderStatus) -> str:
        status = OrderStatus(status)
        if self.dialect == DIALECT_ES:
            return SPANISH_ORDER_STATUS[status]
        return status.value

    @staticmethod
    def from_storage(raw: str | None) -> OrderStatus:
        """Read a stored value written under either vocabulary."""
        key = str(raw or "").strip().upper()
        try:
            return _FROM_STORAGE[key]
        except KeyError:
            raise PersistenceError(f"Unknown stored order status {raw!r}") from None


def is_pending_like(raw: str | OrderStatus | None) -> bool:
    """True while an order still awaits payment, under any vocabulary."""
    key = str(raw.value if isinstance(raw, OrderStatus) else raw or "").strip().upper()
    return _FROM_STORAGE.get(key) is OrderStatus.PAYMENT_PENDING
