from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import date
from typing import Any

from edushop.domain.models import (
    FulfillmentEvent,
    Order,
    OrderItem,
    OutboxMessage,
    Payment,
    ProviderPayment,
)
from edushop.domain.statuses import FulfillmentStatus, PaymentStatus


class LedgerTransaction(ABC):
    """Writes that must commit or roll back together.

    ``lock_*`` methods take a row lock held until the transaction ends, so the
    value they return is the one the following conditional write is based on.
    """

    @abstractmethod
    def lock_order(self, order_id: str) -> Order | None:
        """Return the order and hold it until the transaction ends."""

    @abstractmethod
    def write_order_status(self, order_id: str, stored_status: str) -> None:
        """Persist an order status already translated to the stored vocabulary."""

    @abstractmethod
    def lock_payment(self, order_id: str, provider: str) -> Payment | None:
        """Return the (order, provider) payment row and hold it."""

    @abstractmethod
    def write_payment(
        self,
        payment_id: int,
        *,
        status: PaymentStatus,
        snapshot: ProviderPayment | None = None,
    ) -> None:
        """Persist status and, when given, the provider snapshot."""

    @abstractmethod
    def claim_stock_commit(self, order_id: str, provider_payment_id: str) -> bool:
        """Insert the stock idempotency key; False when it already exists."""

    @abstractmethod
    def commit_stock_for_order(self, order_id: str) -> None:
        """Run the inventory commit procedure for every item of the order."""

    @abstractmethod
    def release_stock_for_order(self, order_id: str, reason: str) -> None:
        """Run the inventory release procedure for every item of the order."""

    @abstractmethod
    def write_fulfillment(
        self,
        order_id: str,
        *,
        fulfillment_status: FulfillmentStatus,
        delivery_date: date | None,
        note: str | None,
    ) -> None: ...

    @abstractmethod
    def append_fulfillment_event(
        self,
        order_id: str,
        *,
        status: FulfillmentStatus,
        note: str | None,
        created_by: str | None,
    ) -> None: ...


class LedgerStore(ABC):
    """Repository for orders, payments, stock and the notification outbox."""

    @abstractmethod
    def transaction(self) -> AbstractContextManager[LedgerTransaction]: ...

    @abstractmethod
    def get_order(self, order_id: str) -> Order | None: ...

    @abstractmethod
    def list_order_items(self, order_id: str) -> list[OrderItem]: ...

    @abstractmethod
    def get_payment(self, order_id: str, provider: str) -> Payment | None: ...

    @abstractmethod
    def list_fulfillment_events(self, order_id: str) -> list[FulfillmentEvent]: ...

    @abstractmethod
    def resolve_session(self, token: str) -> str | None:
        """Return the buyer id owning an active session token."""

    @abstractmethod
    def enqueue_notification(self, order_id: str, kind: str, payload: dict[str, Any]) -> int: ...

    @abstractmethod
    def claim_notifications(self, limit: int) -> list[OutboxMessage]:
        """Return up to ``limit`` pending messages not claimed by another worker."""

    @abstractmethod
    def mark_notification_sent(self, message_id: int) -> None: ...

    @abstractmethod
    def mark_notification_failed(self, message_id: int, error: str, *, max_attempts: int) -> None: ...

    @abstractmethod
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
    ) -> None: ...

    @abstractmethod
    def log_provider_event(
        self,
        *,
        provider: str,
        operation: str,
        direction: str,
        request_url: str | None = None,
        payment_id: str | None = None,
        response_status: int | None = None,
        error_message: str | None = None,
        latency_ms: int | None = None,
        response_body: dict[str, Any] | None = None,
    ) -> None: ...

    @abstractmethod
    def collect_metrics(self) -> dict[str, Any]: ...
