from __future__ import annotations

import copy
import threading
from collections import Counter
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, Iterator, Optional

from edushop.domain.errors import OrderStatusSchemaError
from edushop.domain.models import (
    FulfillmentEvent,
    Order,
    OrderItem,
    OutboxMessage,
    Payment,
    ProviderPayment,
    StockEntry,
    StockMovement,
)
from edushop.domain.statuses import FulfillmentStatus, PaymentStatus
from edushop.domain.vocabulary import OrderStatusVocabulary

from .base import LedgerStore, LedgerTransaction


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _State:
    """Everything the in-memory store persists; copied for rollback."""

    def __init__(self) -> None:
        self.orders: Dict[str, Order] = {}
        self.items: Dict[str, list[OrderItem]] = {}
        self.payments: Dict[int, Payment] = {}
        self.payment_index: Dict[tuple[str, str], int] = {}
        self.stock: Dict[int, StockEntry] = {}
        self.movements: list[StockMovement] = []
        self.stock_claims: Dict[str, str] = {}
        self.fulfillment_events: list[FulfillmentEvent] = []


class _InMemoryTransaction(LedgerTransaction):
    def __init__(self, store: "InMemoryLedgerStore") -> None:
        self.store = store
        self.state = store.state

    def lock_order(self, order_id: str) -> Optional[Order]:
        order = self.state.orders.get(order_id)
        return copy.copy(order) if order else None

    def write_order_status(self, order_id: str, stored_status: str) -> None:
        allowed = self.store.order_status_constraint
        if allowed is not None and stored_status not in allowed:
            raise OrderStatusSchemaError(f"orders.status rejects {stored_status!r}")
        order = self.state.orders[order_id]
        order.raw_status = stored_status
        order.status = OrderStatusVocabulary.from_storage(stored_status)
        order.updated_at = _now()

    def lock_payment(self, order_id: str, provider: str) -> Optional[Payment]:
        pid = self.state.payment_index.get((order_id, provider))
        if pid is None:
            return None
        return copy.copy(self.state.payments[pid])

    def write_payment(
        self,
        payment_id: int,
        *,
        status: PaymentStatus,
        snapshot: ProviderPayment | None = None,
    ) -> None:
        payment = self.state.payments[payment_id]
        payment.status = status
        if snapshot is not None:
            payment.provider_payment_id = snapshot.id
            payment.merchant_order_id = snapshot.merchant_order_id
            payment.raw = dict(snapshot.raw)
        payment.updated_at = _now()

    def claim_stock_commit(self, order_id: str, provider_payment_id: str) -> bool:
        if order_id in self.state.stock_claims:
            return False
        self.state.stock_claims[order_id] = provider_payment_id
        return True

    def commit_stock_for_order(self, order_id: str) -> None:
        for item in self.state.items.get(order_id, []):
            entry = self.state.stock.get(item.product_id) if item.product_id is not None else None
            if entry is None:
                continue
            entry.on_hand = max(0, entry.on_hand - item.quantity)
            entry.reserved = max(0, entry.reserved - item.quantity)
            entry.updated_by = f"order:{order_id}"
            entry.updated_at = _now()
            self.state.movements.append(
                StockMovement(order_id=order_id, product_id=entry.product_id, delta=-item.quantity, kind="SALE", created_at=_now())
            )

    def release_stock_for_order(self, order_id: str, reason: str) -> None:
        for item in self.state.items.get(order_id, []):
            entry = self.state.stock.get(item.product_id) if item.product_id is not None else None
            if entry is None:
                continue
            entry.reserved = max(0, entry.reserved - item.quantity)
            entry.updated_by = f"order:{order_id}"
            entry.updated_at = _now()
            self.state.movements.append(
                StockMovement(
                    order_id=order_id,
                    product_id=entry.product_id,
                    delta=item.quantity,
                    kind="RELEASE",
                    reason=reason,
                    created_at=_now(),
                )
            )

    def write_fulfillment(
        self,
        order_id: str,
        *,
        fulfillment_status: FulfillmentStatus,
        delivery_date: date | None,
        note: str | None,
    ) -> None:
        order = self.state.orders[order_id]
        order.fulfillment_status = fulfillment_status
        order.delivery_date = delivery_date
        order.fulfillment_note = note
        order.fulfillment_updated_at = _now()
        order.updated_at = order.fulfillment_updated_at

    def append_fulfillment_event(
        self,
        order_id: str,
        *,
        status: FulfillmentStatus,
        note: str | None,
        created_by: str | None,
    ) -> None:
        self.state.fulfillment_events.append(
            FulfillmentEvent(order_id=order_id, status=status, note=note, created_by=created_by, created_at=_now())
        )


class InMemoryLedgerStore(LedgerStore):
    """In-memory ledger used when no database is configured and in tests.

    A single re-entrant lock stands in for row locks: a transaction holds it
    from start to end, and a failed transaction restores the state it found.
    """

    def __init__(self, order_status_constraint: Iterable[str] | None = None) -> None:
        self.state = _State()
        self.order_status_constraint = set(order_status_constraint) if order_status_constraint is not None else None
        self.sessions: Dict[str, str] = {}
        self.outbox: Dict[int, OutboxMessage] = {}
        self.webhooks: list[dict[str, Any]] = []
        self.provider_events: list[dict[str, Any]] = []
        self._lock = threading.RLock()

    # Seeding helpers ------------------------------------------------------

    def add_order(self, order: Order, items: Iterable[OrderItem] = (), payment: Payment | None = None) -> None:
        with self._lock:
            if order.raw_status is None:
                order.raw_status = order.status.value
            order.created_at = order.created_at or _now()
            self.state.orders[order.id] = order
            self.state.items[order.id] = [replace(item, order_id=order.id) for item in items]
            if payment is not None:
                pid = payment.id or (max(self.state.payments.keys(), default=0) + 1)
                payment.id = pid
                self.state.payments[pid] = payment
                self.state.payment_index[(payment.order_id, payment.provider)] = pid

    def put_stock(self, entry: StockEntry) -> None:
        with self._lock:
            self.state.stock[entry.product_id] = entry

    def add_session(self, token: str, buyer_id: str) -> None:
        self.sessions[token] = buyer_id

    def get_stock(self, product_id: int) -> Optional[StockEntry]:
        return self.state.stock.get(product_id)

    def list_movements(self, order_id: str) -> list[StockMovement]:
        return [m for m in self.state.movements if m.order_id == order_id]

    # LedgerStore ----------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[LedgerTransaction]:
        with self._lock:
            snapshot = copy.deepcopy(self.state)
            try:
                yield _InMemoryTransaction(self)
            except BaseException:
                self.state = snapshot
                raise

    def get_order(self, order_id: str) -> Optional[Order]:
        order = self.state.orders.get(order_id)
        return copy.copy(order) if order else None

    def list_order_items(self, order_id: str) -> list[OrderItem]:
        return list(self.state.items.get(order_id, []))

    def get_payment(self, order_id: str, provider: str) -> Optional[Payment]:
        pid = self.state.payment_index.get((order_id, provider))
        return copy.copy(self.state.payments[pid]) if pid is not None else None

    def list_fulfillment_events(self, order_id: str) -> list[FulfillmentEvent]:
        return [e for e in self.state.fulfillment_events if e.order_id == order_id]

    def resolve_session(self, token: str) -> Optional[str]:
        return self.sessions.get(token)

    def enqueue_notification(self, order_id: str, kind: str, payload: dict[str, Any]) -> int:
        with self._lock:
            mid = max(self.outbox.keys(), default=0) + 1
            self.outbox[mid] = OutboxMessage(id=mid, order_id=order_id, kind=kind, payload=dict(payload), created_at=_now())
            return mid

    def claim_notifications(self, limit: int) -> list[OutboxMessage]:
        with self._lock:
            claimed: list[OutboxMessage] = []
            for message in sorted(self.outbox.values(), key=lambda m: m.id):
                if len(claimed) >= limit:
                    break
                if message.status == "PENDING":
                    message.status = "PROCESSING"
                    claimed.append(copy.copy(message))
            return claimed

    def mark_notification_sent(self, message_id: int) -> None:
        with self._lock:
            self.outbox[message_id].status = "SENT"

    def mark_notification_failed(self, message_id: int, error: str, *, max_attempts: int) -> None:
        with self._lock:
            message = self.outbox[message_id]
            message.attempts += 1
            message.last_error = error
            message.status = "FAILED" if message.attempts >= max_attempts else "PENDING"

    def record_webhook(
        self,
        *,
        provider: str,
        event_id: str | None,
        event_type: str | None,
        verification_status: str = "UNKNOWN",
        headers: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
        related_order_id: str | None = None,
    ) -> None:
        self.webhooks.append(
            {
                "provider": provider,
                "event_id": event_id,
                "event_type": event_type,
                "verification_status": verification_status,
                "payload": payload or {},
                "related_order_id": related_order_id,
            }
        )

    def log_provider_event(self, **kwargs: Any) -> None:
        self.provider_events.append(dict(kwargs))

    def collect_metrics(self) -> dict[str, Any]:
        return {
            "connected": True,
            "order_status_counts": dict(Counter(o.status.value for o in self.state.orders.values())),
            "payment_status_counts": dict(Counter(p.status.value for p in self.state.payments.values())),
            "outbox_pending": sum(1 for m in self.outbox.values() if m.status == "PENDING"),
            "outbox_failed": sum(1 for m in self.outbox.values() if m.status == "FAILED"),
        }
