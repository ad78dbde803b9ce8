from __future__ import annotations

import logging

from edushop.domain.errors import FulfillmentTransitionError, OrderNotFoundError
from edushop.domain.models import Order, OrderTransition
from edushop.domain.statuses import (
    FULFILLMENT_PROGRESSION,
    OrderStatus,
    can_apply_payment_driven,
)
from edushop.domain.vocabulary import OrderStatusVocabulary
from edushop.repositories.base import LedgerTransaction

logger = logging.getLogger(__name__)


class OrderLedger:
    """Order lifecycle state machine over the persisted order row.

    Payment events may only move an order along the payment-driven edges;
    the PAID -> PREPARING -> SHIPPED -> DELIVERED progression belongs to
    operators (see ``advance_fulfillment``).
    """

    def __init__(self, vocabulary: OrderStatusVocabulary):
        self.vocabulary = vocabulary

    def _lock(self, tx: LedgerTransaction, order_id: str) -> Order:
        order = tx.lock_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Unknown order {order_id}")
        return order

    def _write(self, tx: LedgerTransaction, order: Order, new_status: OrderStatus) -> None:
        tx.write_order_status(order.id, self.vocabulary.to_storage(new_status))
        logger.info(
            "order status updated",
            extra={
                "order_id": order.id,
                "previous_order_status": order.status,
                "order_status": new_status,
            },
        )

    def apply_status(self, tx: LedgerTransaction, order_id: str, new_status: OrderStatus) -> OrderTransition:
        """Apply a payment-derived status; no-op when unchanged or not allowed."""
        order = self._lock(tx, order_id)
        previous = order.status
        transition = OrderTransition(
            order_id=order_id,
            previous=previous,
            requested=new_status,
            current=previous,
            previous_raw=order.raw_status,
        )
        if previous is new_status:
            return transition
        if not can_apply_payment_driven(previous, new_status):
            logger.warning(
                "order transition ignored",
                extra={
                    "order_id": order_id,
                    "previous_order_status": previous,
                    "order_status": new_status,
                    "reason": "terminal" if previous.is_terminal else "not_payment_driven",
                },
            )
            return transition
        self._write(tx, order, new_status)
        return OrderTransition(
            order_id=order_id,
            previous=previous,
            requested=new_status,
            current=new_status,
            previous_raw=order.raw_status,
        )

    def advance_fulfillment(self, tx: LedgerTransaction, order_id: str, new_status: OrderStatus) -> OrderTransition:
        """Operator-driven move along PAID -> PREPARING -> SHIPPED -> DELIVERED."""
        order = self._lock(tx, order_id)
        previous = order.status
        if previous not in FULFILLMENT_PROGRESSION or new_status not in FULFILLMENT_PROGRESSION:
            raise FulfillmentTransitionError(f"Order {order_id} is {previous.value}; cannot move to {new_status.value}")
        if FULFILLMENT_PROGRESSION.index(new_status) < FULFILLMENT_PROGRESSION.index(previous):
            raise FulfillmentTransitionError(f"Order {order_id} cannot go back from {previous.value} to {new_status.value}")
        if new_status is not previous:
            self._write(tx, order, new_status)
        return OrderTransition(
            order_id=order_id,
            previous=previous,
            requested=new_status,
            current=new_status,
            previous_raw=order.raw_status,
        )
