from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from .statuses import FulfillmentStatus, OrderStatus, PaymentStatus


@dataclass
class Order:
    """Internal representation of a storefront order."""

    id: str
    buyer_id: str | None
    total: Decimal
    currency: str = "PEN"
    status: OrderStatus = OrderStatus.PAYMENT_PENDING
    # Value as found in the orders table (either vocabulary)
    raw_status: str | None = None
    customer_name: str | None = None
    customer_email: str | None = None
    subtotal: Decimal | None = None
    discount_amount: Decimal = Decimal("0")
    fulfillment_status: FulfillmentStatus = FulfillmentStatus.REGISTERED
    fulfillment_note: str | None = None
    delivery_date: date | None = None
    fulfillment_updated_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Payment:
    """Payment attempt for an order; at most one row per (order, provider)."""

    order_id: str
    provider: str
    id: int | None = None
    status: PaymentStatus = PaymentStatus.CREATED
    provider_payment_id: str | None = None
    merchant_order_id: str | None = None
    preference_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime | None = None


@dataclass(frozen=True)
class OrderItem:
    """Line item with point-in-time name/code snapshots."""

    order_id: str
    product_id: int | None
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    name_snapshot: str
    code_snapshot: str | None = None
    id: int | None = None


@dataclass
class StockEntry:
    product_id: int
    on_hand: int
    reserved: int = 0
    updated_by: str | None = None
    updated_at: datetime | None = None

    @property
    def available(self) -> int:
        return max(0, self.on_hand - self.reserved)


@dataclass(frozen=True)
class StockMovement:
    order_id: str
    product_id: int
    delta: int
    kind: str
    reason: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class FulfillmentEvent:
    order_id: str
    status: FulfillmentStatus
    note: str | None = None
    created_by: str | None = None
    created_at: datetime | None = None


@dataclass
class ProviderPayment:
    """Authoritative payment snapshot fetched from the provider."""

    id: str
    status: str
    status_detail: str | None = None
    external_reference: str | None = None
    merchant_order_id: str | None = None
    transaction_amount: Decimal | None = None
    currency: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class OutboxMessage:
    """Deferred notification waiting for the worker."""

    id: int
    order_id: str
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    status: str = "PENDING"
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class OrderTransition:
    """Outcome of applying a status to an order."""

    order_id: str
    previous: OrderStatus
    requested: OrderStatus
    current: OrderStatus
    previous_raw: str | None = None

    @property
    def changed(self) -> bool:
        return self.previous is not self.current

    @property
    def accepted(self) -> bool:
        return self.current is self.requested


@dataclass(frozen=True)
class ReleaseResult:
    order_id: str
    released: bool
    skipped: bool = False
    reason: str | None = None


@dataclass(frozen=True)
class ReconcileResult:
    order_id: str
    provider_payment_id: str
    payment_status: PaymentStatus
    previous_payment_status: PaymentStatus
    order_status: OrderStatus
    stock_applied: bool = False
    stock_released: bool = False
    notification_scheduled: bool = False
