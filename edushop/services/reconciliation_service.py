from __future__ import annotations

import logging

from starlette.concurrency import run_in_threadpool

from edushop.config import Settings, settings
from edushop.domain.errors import ConflictError, ForbiddenError, OrderNotFoundError, ValidationError
from edushop.domain.models import ProviderPayment, ReconcileResult, ReleaseResult
from edushop.domain.status_mapper import map_provider_status, map_to_order_status
from edushop.domain.statuses import OrderStatus, PaymentStatus, can_advance_payment
from edushop.domain.vocabulary import OrderStatusVocabulary
from edushop.providers.base import PaymentProvider
from edushop.repositories.base import LedgerStore

from .notification_service import NotificationDispatcher
from .order_ledger import OrderLedger
from .stock_ledger import StockLedger

logger = logging.getLogger(__name__)

# Payment outcomes that give reserved stock back while the order is still pending.
RELEASING_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.REJECTED, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED}
)


def normalize_payment_id(value: object) -> str:
    payment_id = str(value or "").strip()
    if not payment_id:
        raise ValidationError("Missing payment_id", code="MISSING_PAYMENT_ID")
    return payment_id


class ReconciliationEngine:
    """Turns provider payment state into order and stock effects.

    Webhook and sync entry points both end up in ``reconcile``. Reading the
    previous payment status, writing the new one, the order update and the
    stock effect all happen in one store transaction under row locks, so a
    duplicate delivery processed in parallel sees the committed result of
    the first one.
    """

    def __init__(
        self,
        store: LedgerStore,
        provider: PaymentProvider,
        dispatcher: NotificationDispatcher,
        cfg: Settings = settings,
    ):
        self.store = store
        self.provider = provider
        self.dispatcher = dispatcher
        self.settings = cfg
        self.orders = OrderLedger(OrderStatusVocabulary(cfg.order_status_dialect))
        self.stock = StockLedger()

    async def handle_webhook(self, payment_id: object) -> ReconcileResult:
        """Push entry point; only the id is taken from the notification."""
        return await self.reconcile(normalize_payment_id(payment_id))

    async def handle_sync(self, payment_id: object) -> ReconcileResult:
        """Pull entry point used after the buyer returns from checkout."""
        return await self.reconcile(normalize_payment_id(payment_id))

    async def reconcile(self, provider_payment_id: str, order_id: str | None = None) -> ReconcileResult:
        snapshot = await self.provider.get_payment(provider_payment_id)
        resolved_order_id = snapshot.external_reference
        if not resolved_order_id:
            raise ValidationError(
                f"Payment {snapshot.id} has no external_reference",
                code="MISSING_EXTERNAL_REFERENCE",
            )
        if order_id and order_id != resolved_order_id:
            raise ValidationError(
                f"Payment {snapshot.id} belongs to order {resolved_order_id}, not {order_id}",
                code="ORDER_MISMATCH",
            )
        # Row-lock waits block, so the ledger work stays off the event loop.
        return await run_in_threadpool(self.apply_snapshot, snapshot, resolved_order_id)

    def apply_snapshot(self, snapshot: ProviderPayment, resolved_order_id: str) -> ReconcileResult:
        """Persist a fetched payment and its order and stock effects."""
        fetched_status = map_provider_status(snapshot.status)
        provider_name = self.provider.name

        with self.store.transaction() as tx:
            # Locks are always taken order first, then payment.
            if tx.lock_order(resolved_order_id) is None:
                raise OrderNotFoundError(f"Unknown order {resolved_order_id}")
            payment = tx.lock_payment(resolved_order_id, provider_name)
            if payment is None:
                raise OrderNotFoundError(f"No {provider_name} payment for order {resolved_order_id}")
            previous_status = payment.status
            if fetched_status is previous_status or can_advance_payment(previous_status, fetched_status):
                payment_status = fetched_status
            else:
                logger.warning(
                    "payment status regression ignored",
                    extra={
                        "order_id": resolved_order_id,
                        "payment_id": snapshot.id,
                        "stored_payment_id": payment.provider_payment_id,
                        "previous_status": previous_status,
                        "status": fetched_status,
                    },
                )
                payment_status = previous_status
            tx.write_payment(payment.id, status=payment_status, snapshot=snapshot)

            transition = self.orders.apply_status(tx, resolved_order_id, map_to_order_status(payment_status))

            stock_applied = False
            if transition.current is OrderStatus.PAID:
                stock_applied = self.stock.commit(
                    tx,
                    resolved_order_id,
                    snapshot.id,
                    previous=previous_status,
                    current=payment_status,
                )

            stock_released = False
            if payment_status in RELEASING_PAYMENT_STATUSES and transition.changed:
                try:
                    released = self.stock.release(
                        tx,
                        resolved_order_id,
                        f"payment_{payment_status.value.lower()}",
                        order_status=transition.previous_raw or transition.previous,
                    )
                    stock_released = released.released
                except ConflictError:
                    stock_released = False

        notification_scheduled = False
        if transition.changed and transition.current is OrderStatus.PAID:
            notification_scheduled = self.dispatcher.schedule(resolved_order_id, snapshot.id)

        result = ReconcileResult(
            order_id=resolved_order_id,
            provider_payment_id=snapshot.id,
            payment_status=payment_status,
            previous_payment_status=previous_status,
            order_status=transition.current,
            stock_applied=stock_applied,
            stock_released=stock_released,
            notification_scheduled=notification_scheduled,
        )
        logger.info(
            "payment reconciled",
            extra={
                "order_id": result.order_id,
                "payment_id": result.provider_payment_id,
                "previous_status": result.previous_payment_status,
                "status": result.payment_status,
                "order_status": result.order_status,
                "stock_applied": result.stock_applied,
                "stock_released": result.stock_released,
            },
        )
        return result

    def release_order(self, order_id: str, reason: str | None, *, buyer_id: str) -> ReleaseResult:
        """Buyer-initiated release of reserved stock for an unpaid order.

        The order becomes FAILED and its payment CANCELLED. Orders past the
        pending state are left untouched and reported as skipped.
        """
        order_id = str(order_id or "").strip()
        if not order_id:
            raise ValidationError("orderId required")
        reason = (reason or "").strip() or "payment_not_approved"
        with self.store.transaction() as tx:
            order = tx.lock_order(order_id)
            if order is None:
                raise OrderNotFoundError(f"Unknown order {order_id}")
            if order.buyer_id != buyer_id:
                raise ForbiddenError(f"Order {order_id} belongs to another buyer")
            try:
                result = self.stock.release(tx, order_id, reason, order_status=order.raw_status or order.status)
            except ConflictError as exc:
                logger.info(
                    "release skipped",
                    extra={"order_id": order_id, "order_status": order.status, "reason": exc.reason},
                )
                return ReleaseResult(order_id=order_id, released=False, skipped=True, reason=exc.reason)
            self.orders.apply_status(tx, order_id, OrderStatus.FAILED)
            payment = tx.lock_payment(order_id, self.provider.name)
            if payment is not None and can_advance_payment(payment.status, PaymentStatus.CANCELLED):
                tx.write_payment(payment.id, status=PaymentStatus.CANCELLED)
        return result
