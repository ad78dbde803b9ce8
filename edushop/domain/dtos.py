from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from .statuses import FulfillmentStatus, OrderStatus, PaymentStatus


class WebhookAck(BaseModel):
    ok: bool = True


class ErrorResponse(BaseModel):
    error: str


class SyncResponse(BaseModel):
    """Result of a buyer-initiated payment sync."""

    ok: bool = True
    order_id: str
    payment_status: PaymentStatus
    order_status: OrderStatus
    stock_applied: bool


class ReleaseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId", min_length=1)
    reason: str | None = None


class ReleaseResponse(BaseModel):
    ok: bool = True
    skipped: bool | None = None
    reason: str | None = None


class FulfillmentUpdateRequest(BaseModel):
    fulfillment_status: FulfillmentStatus
    delivery_date: date | None = Field(default=None, description="Fecha estimada de entrega (YYYY-MM-DD)")
    note: str | None = None


class FulfillmentEventOut(BaseModel):
    status: FulfillmentStatus
    note: str | None = None
    created_by: str | None = None
    created_at: datetime | None = None


class FulfillmentResponse(BaseModel):
    order_id: str
    order_status: OrderStatus
    fulfillment_status: FulfillmentStatus
    delivery_date: date | None = None
    events: list[FulfillmentEventOut] = Field(default_factory=list)


class ReceiptLine(BaseModel):
    name: str
    code: str | None = None
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class ReceiptPayload(BaseModel):
    """Document handed to the receipt/email service."""

    order_id: str
    customer_name: str | None = None
    customer_email: str | None = None
    currency: str
    items: list[ReceiptLine]
    subtotal: Decimal
    discount_amount: Decimal = Decimal("0")
    total: Decimal
    payment_reference: str | None = None


class DrainResponse(BaseModel):
    sent: int
