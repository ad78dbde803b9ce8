from __future__ import annotations

from contextlib import contextmanager
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterator, Optional

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.extras import Json

from edushop.db.client import get_conn
from edushop.domain.errors import OrderStatusSchemaError, PersistenceError
from edushop.domain.models import (
    FulfillmentEvent,
    Order,
    OrderItem,
    OutboxMessage,
    Payment,
    ProviderPayment,
)
from edushop.domain.statuses import FulfillmentStatus, PaymentStatus
from edushop.domain.vocabulary import OrderStatusVocabulary

from .base import LedgerStore, LedgerTransaction

MONEY_QUANT = Decimal("0.01")

# A PROCESSING outbox row older than this is assumed orphaned by a dead worker.
STALE_CLAIM_INTERVAL = "10 minutes"

_ORDER_COLUMNS = """
    id, buyer_id, total, currency, status, customer_name, customer_email,
    subtotal, discount_amount, fulfillment_status, fulfillment_note, delivery_date,
    fulfillment_updated_at, created_at, updated_at
"""

_PAYMENT_COLUMNS = """
    id, order_id, provider, status, payment_id, merchant_order_id, preference_id,
    amount, currency, raw, updated_at
"""


def _money(value: Any | None) -> Decimal | None:
    if value is None:
        return None
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise PersistenceError("Invalid monetary amount") from exc
    return amount.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def _hydrate_order(row: tuple[Any, ...]) -> Order:
    (
        oid,
        buyer_id,
        total,
        currency,
        status,
        customer_name,
        customer_email,
        subtotal,
        discount_amount,
        fulfillment_status,
        fulfillment_note,
        delivery_date,
        fulfillment_updated_at,
        created_at,
        updated_at,
    ) = row
    return Order(
        id=str(oid),
        buyer_id=str(buyer_id) if buyer_id else None,
        total=_money(total) or Decimal("0.00"),
        currency=str(currency or "PEN"),
        status=OrderStatusVocabulary.from_storage(status),
        raw_status=str(status) if status is not None else None,
        customer_name=customer_name,
        customer_email=customer_email,
        subtotal=_money(subtotal),
        discount_amount=_money(discount_amount) or Decimal("0.00"),
        fulfillment_status=FulfillmentStatus(str(fulfillment_status or "REGISTERED")),
        fulfillment_note=fulfillment_note,
        delivery_date=delivery_date,
        fulfillment_updated_at=fulfillment_updated_at,
        created_at=created_at,
        updated_at=updated_at,
    )


def _hydrate_payment(row: tuple[Any, ...]) -> Payment:
    (
        pid,
        order_id,
        provider,
        status,
        payment_id,
        merchant_order_id,
        preference_id,
        amount,
        currency,
        raw,
        updated_at,
    ) = row
    return Payment(
        id=int(pid),
        order_id=str(order_id),
        provider=str(provider),
        status=PaymentStatus(str(status).upper()),
        provider_payment_id=str(payment_id) if payment_id else None,
        merchant_order_id=str(merchant_order_id) if merchant_order_id else None,
        preference_id=str(preference_id) if preference_id else None,
        amount=_money(amount),
        currency=currency,
        raw=dict(raw) if isinstance(raw, dict) else {},
        updated_at=updated_at,
    )


class PgLedgerTransaction(LedgerTransaction):
    """Conditional writes over a single PostgreSQL transaction.

    Row locks come from ``SELECT ... FOR UPDATE``; concurrent handlers for the
    same order queue on the lock and then see the committed row.
    """

    def __init__(self, cur: psycopg2.extensions.cursor) -> None:
        self.cur = cur

    def lock_order(self, order_id: str) -> Optional[Order]:
        self.cur.execute(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = %s FOR UPDATE", (order_id,))
        row = self.cur.fetchone()
        return _hydrate_order(row) if row else None

    def write_order_status(self, order_id: str, stored_status: str) -> None:
        try:
            self.cur.execute(
                "UPDATE orders SET status = %s, updated_at = NOW() WHERE id = %s",
                (stored_status, order_id),
            )
        except (pg_errors.CheckViolation, pg_errors.InvalidTextRepresentation) as exc:
            raise OrderStatusSchemaError(f"orders.status rejects {stored_status!r}: {exc}") from exc

    def lock_payment(self, order_id: str, provider: str) -> Optional[Payment]:
        self.cur.execute(
            f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE order_id = %s AND provider = %s FOR UPDATE",
            (order_id, provider),
        )
        row = self.cur.fetchone()
        return _hydrate_payment(row) if row else None

    def write_payment(
        self,
        payment_id: int,
        *,
        status: PaymentStatus,
        snapshot: ProviderPayment | None = None,
    ) -> None:
        if snapshot is None:
            self.cur.execute(
                "UPDATE payments SET status = %s, updated_at = NOW() WHERE id = %s",
                (status.value, payment_id),
            )
            return
        self.cur.execute(
            """
            UPDATE payments
               SET status = %s,
                   payment_id = %s,
                   merchant_order_id = COALESCE(%s, merchant_order_id),
                   raw = %s,
                   updated_at = NOW()
             WHERE id = %s
            """,
            (
                status.value,
                snapshot.id,
                snapshot.merchant_order_id,
                Json(snapshot.raw or {}),
                payment_id,
            ),
        )

    def claim_stock_commit(self, order_id: str, provider_payment_id: str) -> bool:
        self.cur.execute(
            """
            INSERT INTO stock_commit_claims (order_id, payment_id, created_at)
            VALUES (%s, %s, NOW())
            ON CONFLICT (order_id) DO NOTHING
            RETURNING order_id
            """,
            (order_id, provider_payment_id),
        )
        return self.cur.fetchone() is not None

    def commit_stock_for_order(self, order_id: str) -> None:
        self.cur.execute("SELECT commit_stock_for_order(%s)", (order_id,))

    def release_stock_for_order(self, order_id: str, reason: str) -> None:
        self.cur.execute("SELECT release_stock_for_order(%s, %s)", (order_id, reason))

    def write_fulfillment(
        self,
        order_id: str,
        *,
        fulfillment_status: FulfillmentStatus,
        delivery_date: date | None,
        note: str | None,
    ) -> None:
        self.cur.execute(
            """
            UPDATE orders
               SET fulfillment_status = %s,
                   delivery_date = %s,
                   fulfillment_note = %s,
                   fulfillment_updated_at = NOW(),
                   updated_at = NOW()
             WHERE id = %s
            """,
            (fulfillment_status.value, delivery_date, note, order_id),
        )

    def append_fulfillment_event(
        self,
        order_id: str,
        *,
        status: FulfillmentStatus,
        note: str | None,
        created_by: str | None,
    ) -> None:
        self.cur.execute(
            """
            INSERT INTO order_fulfillment_events (order_id, status, note, created_by, created_at)
            VALUES (%s, %s, %s, %s, NOW())
            """,
            (order_id, status.value, note, created_by),
        )


class PgLedgerStore(LedgerStore):
    """PostgreSQL-backed ledger using raw psycopg2."""

    @contextmanager
    def _cursor(self) -> Iterator[psycopg2.extensions.cursor]:
        try:
            with get_conn() as conn:
                if conn is None:
                    raise PersistenceError("Database not configured")
                with conn.cursor() as cur:
                    yield cur
        except psycopg2.Error as exc:
            raise PersistenceError(str(exc)) from exc

    @contextmanager
    def transaction(self) -> Iterator[LedgerTransaction]:
        with self._cursor() as cur:
            yield PgLedgerTransaction(cur)

    def get_order(self, order_id: str) -> Optional[Order]:
        with self._cursor() as cur:
            cur.execute(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = %s", (order_id,))
            row = cur.fetchone()
            return _hydrate_order(row) if row else None

    def list_order_items(self, order_id: str) -> list[OrderItem]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT id, order_id, product_id, quantity, unit_price, line_total,
                       name_snapshot, code_snapshot
                  FROM order_items
                 WHERE order_id = %s
                 ORDER BY id ASC
                """,
                (order_id,),
            )
            return [
                OrderItem(
                    id=int(iid),
                    order_id=str(oid),
                    product_id=int(product_id) if product_id is not None else None,
                    quantity=int(quantity),
                    unit_price=_money(unit_price) or Decimal("0.00"),
                    line_total=_money(line_total) or Decimal("0.00"),
                    name_snapshot=str(name_snapshot or "Item"),
                    code_snapshot=str(code_snapshot) if code_snapshot else None,
                )
                for iid, oid, product_id, quantity, unit_price, line_total, name_snapshot, code_snapshot in (
                    cur.fetchall() or []
                )
            ]

    def get_payment(self, order_id: str, provider: str) -> Optional[Payment]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE order_id = %s AND provider = %s LIMIT 1",
                (order_id, provider),
            )
            row = cur.fetchone()
            return _hydrate_payment(row) if row else None

    def list_fulfillment_events(self, order_id: str) -> list[FulfillmentEvent]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT order_id, status, note, created_by, created_at
                  FROM order_fulfillment_events
                 WHERE order_id = %s
                 ORDER BY created_at ASC, id ASC
                """,
                (order_id,),
            )
            return [
                FulfillmentEvent(
                    order_id=str(oid),
                    status=FulfillmentStatus(str(status)),
                    note=note,
                    created_by=created_by,
                    created_at=created_at,
                )
                for oid, status, note, created_by, created_at in (cur.fetchall() or [])
            ]

    def resolve_session(self, token: str) -> Optional[str]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT buyer_id
                  FROM buyer_sessions
                 WHERE token = %s AND (expires_at IS NULL OR expires_at > NOW())
                 LIMIT 1
                """,
                (token,),
            )
            row = cur.fetchone()
            return str(row[0]) if row else None

    def enqueue_notification(self, order_id: str, kind: str, payload: dict[str, Any]) -> int:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO notification_outbox (order_id, kind, payload, status, attempts, created_at, updated_at)
                VALUES (%s, %s, %s, 'PENDING', 0, NOW(), NOW())
                RETURNING id
                """,
                (order_id, kind, Json(payload)),
            )
            row = cur.fetchone()
            return int(row[0])

    def claim_notifications(self, limit: int) -> list[OutboxMessage]:
        with self._cursor() as cur:
            cur.execute(
                f"""
                UPDATE notification_outbox
                   SET status = 'PROCESSING', updated_at = NOW()
                 WHERE id IN (
                        SELECT id
                          FROM notification_outbox
                         WHERE status = 'PENDING'
                            OR (status = 'PROCESSING' AND updated_at < NOW() - INTERVAL '{STALE_CLAIM_INTERVAL}')
                         ORDER BY id ASC
                         LIMIT %s
                         FOR UPDATE SKIP LOCKED
                 )
                RETURNING id, order_id, kind, payload, status, attempts, last_error, created_at
                """,
                (limit,),
            )
            messages = [
                OutboxMessage(
                    id=int(mid),
                    order_id=str(order_id),
                    kind=str(kind),
                    payload=dict(payload or {}),
                    status=str(status),
                    attempts=int(attempts or 0),
                    last_error=last_error,
                    created_at=created_at,
                )
                for mid, order_id, kind, payload, status, attempts, last_error, created_at in (cur.fetchall() or [])
            ]
            return sorted(messages, key=lambda m: m.id)

    def mark_notification_sent(self, message_id: int) -> None:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE notification_outbox SET status = 'SENT', updated_at = NOW() WHERE id = %s",
                (message_id,),
            )

    def mark_notification_failed(self, message_id: int, error: str, *, max_attempts: int) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE notification_outbox
                   SET attempts = attempts + 1,
                       last_error = %s,
                       status = CASE WHEN attempts + 1 >= %s THEN 'FAILED' ELSE 'PENDING' END,
                       updated_at = NOW()
                 WHERE id = %s
                """,
                (error[:1000], max_attempts, message_id),
            )

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
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO webhook_inbox (
                    provider, event_id, event_type, verification_status, headers, payload,
                    related_order_id, received_at
                ) VALUES (
                    %s, %s, %s, %s, %s, %s, %s, NOW()
                ) ON CONFLICT (provider, event_id) DO NOTHING
                """,
                (
                    provider,
                    event_id,
                    event_type,
                    verification_status,
                    Json(headers or {}),
                    Json(payload or {}),
                    related_order_id,
                ),
            )

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
    ) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO provider_event_log (
                    provider, direction, operation, request_url, payment_id,
                    response_status, response_body, error_message, latency_ms, created_at
                ) VALUES (
                    %s, %s, %s, %s, %s,
                    %s, %s, %s, %s, NOW()
                )
                """,
                (
                    provider,
                    direction,
                    operation,
                    request_url,
                    payment_id,
                    response_status,
                    Json(response_body or {}),
                    error_message,
                    latency_ms,
                ),
            )

    def collect_metrics(self) -> dict[str, Any]:
        metrics: dict[str, Any] = {
            "connected": False,
            "order_status_counts": {},
            "payment_status_counts": {},
            "outbox_pending": 0,
            "outbox_failed": 0,
        }
        with self._cursor() as cur:
            metrics["connected"] = True
            cur.execute("SELECT status, COUNT(*) FROM orders GROUP BY status")
            for status_value, count in cur.fetchall() or []:
                metrics["order_status_counts"][str(status_value)] = int(count)
            cur.execute("SELECT status, COUNT(*) FROM payments GROUP BY status")
            for status_value, count in cur.fetchall() or []:
                metrics["payment_status_counts"][str(status_value)] = int(count)
            cur.execute(
                """
                SELECT COUNT(*) FILTER (WHERE status = 'PENDING'),
                       COUNT(*) FILTER (WHERE status = 'FAILED')
                  FROM notification_outbox
                """
            )
            row = cur.fetchone()
            if row:
                metrics["outbox_pending"] = int(row[0] or 0)
                metrics["outbox_failed"] = int(row[1] or 0)
        return metrics
