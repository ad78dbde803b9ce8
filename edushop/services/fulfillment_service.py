from __future__ import annotations

import logging
from datetime import date

from edushop.config import Settings, settings
from edushop.domain.errors import OrderNotFoundError
from edushop.domain.models import FulfillmentEvent, Order
from edushop.domain.statuses import FulfillmentStatus, OrderStatus
from edushop.domain.vocabulary import OrderStatusVocabulary
from edushop.repositories.base import LedgerStore

from .order_ledger import OrderLedger

logger = logging.getLogger(__name__)

# Order status implied by each operator-facing fulfillment step.
ORDER_STATUS_BY_FULFILLMENT: dict[FulfillmentStatus, OrderStatus] = {
    FulfillmentStatus.REGISTERED: OrderStatus.PAID,
    FulfillmentStatus.PACKING: OrderStatus.PREPARING,
    FulfillmentStatus.DELIVERY: OrderStatus.SHIPPED,
    FulfillmentStatus.DELIVERED: OrderStatus.DELIVERED,
}


class FulfillmentService:
    """Operator actions on paid orders.

    Each change to status, delivery date or note appends a fulfillment event;
    the order status only ever moves forward.
    """

    def __init__(self, store: LedgerStore, cfg: Settings = settings):
        self.store = store
        self.orders = OrderLedger(OrderStatusVocabulary(cfg.order_status_dialect))

    def update(
        self,
        order_id: str,
        fulfillment_status: FulfillmentStatus,
        *,
        delivery_date: date | None = None,
        note: str | None = None,
        actor: str | None = None,
    ) -> tuple[Order, list[FulfillmentEvent]]:
        with self.store.transaction() as tx:
            order = tx.lock_order(order_id)
            if order is None:
                raise OrderNotFoundError(f"Unknown order {order_id}")
            self.orders.advance_fulfillment(tx, order_id, ORDER_STATUS_BY_FULFILLMENT[fulfillment_status])

            status_changed = order.fulfillment_status is not fulfillment_status
            date_changed = order.delivery_date != delivery_date
            note_changed = (order.fulfillment_note or "") != (note or "")
            if status_changed or date_changed or note_changed:
                tx.write_fulfillment(
                    order_id,
                    fulfillment_status=fulfillment_status,
                    delivery_date=delivery_date,
                    note=note,
                )
                tx.append_fulfillment_event(order_id, status=fulfillment_status, note=note, created_by=actor)
                logger.info(
                    "fulfillment updated",
                    extra={
                        "order_id": order_id,
                        "fulfillment_status": fulfillment_status,
                        "event": "status" if status_changed else "details",
                    },
                )
        updated = self.store.get_order(order_id)
        if updated is None:
            raise OrderNotFoundError(f"Unknown order {order_id}")
        return updated, self.store.list_fulfillment_events(order_id)
