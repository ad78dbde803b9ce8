from __future__ import annotations

import logging
from decimal import Decimal

from edushop.config import Settings, settings
from edushop.domain.dtos import ReceiptLine, ReceiptPayload
from edushop.domain.errors import NotificationError
from edushop.domain.models import OutboxMessage
from edushop.repositories.base import LedgerStore

from .receipt_sender import ReceiptSender

logger = logging.getLogger(__name__)

RECEIPT = "receipt"


class NotificationDispatcher:
    """Outbox-backed receipt notifications for paid orders.

    ``schedule`` runs on the request path after the ledger transaction has
    committed and never raises. ``drain`` runs in the worker. Delivery is
    at-least-once; duplicate receipts are acceptable.
    """

    def __init__(self, store: LedgerStore, sender: ReceiptSender, cfg: Settings = settings):
        self.store = store
        self.sender = sender
        self.settings = cfg

    def schedule(self, order_id: str, payment_reference: str | None) -> bool:
        try:
            message_id = self.store.enqueue_notification(
                order_id,
                RECEIPT,
                {"payment_reference": payment_reference},
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "notification enqueue failed",
                extra={"order_id": order_id, "payment_id": payment_reference, "error": str(exc)},
            )
            return False
        logger.info(
            "notification scheduled",
            extra={"order_id": order_id, "payment_id": payment_reference, "notification_id": message_id},
        )
        return True

    def build_receipt(self, message: OutboxMessage) -> ReceiptPayload:
        order = self.store.get_order(message.order_id)
        if order is None:
            raise NotificationError(f"Unknown order {message.order_id}")
        items = self.store.list_order_items(order.id)
        lines = [
            ReceiptLine(
                name=item.name_snapshot,
                code=item.code_snapshot,
                quantity=item.quantity,
                unit_price=item.unit_price,
                line_total=item.line_total,
            )
            for item in items
        ]
        subtotal = order.subtotal if order.subtotal is not None else sum((i.line_total for i in items), Decimal("0"))
        return ReceiptPayload(
            order_id=order.id,
            customer_name=order.customer_name,
            customer_email=order.customer_email,
            currency=order.currency,
            items=lines,
            subtotal=subtotal,
            discount_amount=order.discount_amount,
            total=order.total,
            payment_reference=message.payload.get("payment_reference"),
        )

    async def deliver(self, message: OutboxMessage) -> bool:
        try:
            receipt = self.build_receipt(message)
            await self.sender.send(receipt)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "notification delivery failed",
                extra={
                    "order_id": message.order_id,
                    "notification_id": message.id,
                    "attempts": message.attempts + 1,
                    "error": str(exc),
                },
            )
            self.store.mark_notification_failed(
                message.id,
                str(exc),
                max_attempts=self.settings.notification_max_attempts,
            )
            return False
        self.store.mark_notification_sent(message.id)
        logger.info(
            "notification sent",
            extra={"order_id": message.order_id, "notification_id": message.id},
        )
        return True

    async def drain(self, limit: int | None = None) -> int:
        """Deliver one batch of pending notifications; returns how many were sent."""
        batch = self.store.claim_notifications(limit or self.settings.notification_batch_size)
        sent = 0
        for message in batch:
            if message.kind != RECEIPT:
                self.store.mark_notification_failed(message.id, f"unknown kind {message.kind}", max_attempts=1)
                continue
            if await self.deliver(message):
                sent += 1
        return sent
