from __future__ import annotations

import asyncio
import logging
import pathlib
import sys
import threading

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from conftest import ORDER_ID, PAYMENT_ID, seed_order
from edushop.config import settings
from edushop.domain.errors import (
    ForbiddenError,
    OrderNotFoundError,
    OrderStatusSchemaError,
    ProviderFetchError,
    ValidationError,
)
from edushop.domain.statuses import OrderStatus, PaymentStatus
from edushop.domain.vocabulary import SPANISH_ORDER_STATUS
from edushop.repositories.memory_store import InMemoryLedgerStore
from edushop.services.notification_service import NotificationDispatcher
from edushop.services.reconciliation_service import ReconciliationEngine


def _run(coro):
    return asyncio.run(coro)


def test_approved_payment_marks_order_paid_and_commits_stock(store, provider, engine) -> None:
    seed_order(store, "ord-2002", payment_status=PaymentStatus.PENDING)
    provider.set_payment(PAYMENT_ID, "approved", order_id="ord-2002")

    result = _run(engine.handle_webhook(PAYMENT_ID))

    assert result.order_id == "ord-2002"
    assert result.previous_payment_status is PaymentStatus.PENDING
    assert result.payment_status is PaymentStatus.APPROVED
    assert result.order_status is OrderStatus.PAID
    assert result.stock_applied is True
    assert result.notification_scheduled is True
    assert store.get_stock(1).on_hand == 8
    assert store.get_stock(2).on_hand == 4
    payment = store.get_payment("ord-2002", "mercadopago")
    assert payment.provider_payment_id == PAYMENT_ID
    assert payment.merchant_order_id == "mo-77"
    assert payment.raw["status"] == "approved"


def test_repeated_reconciliation_commits_once(store, provider, engine) -> None:
    provider.set_payment(PAYMENT_ID, "approved")

    first = _run(engine.handle_sync(PAYMENT_ID))
    second = _run(engine.handle_sync(PAYMENT_ID))
    third = _run(engine.handle_webhook(PAYMENT_ID))

    assert first.stock_applied is True
    assert second.stock_applied is False and third.stock_applied is False
    assert second.order_status is OrderStatus.PAID
    assert second.notification_scheduled is False
    assert store.get_stock(1).on_hand == 8
    assert len([m for m in store.list_movements(ORDER_ID) if m.kind == "SALE"]) == 2
    assert len(store.outbox) == 1


def test_concurrent_duplicate_deliveries_commit_once(store, provider, engine) -> None:
    provider.set_payment(PAYMENT_ID, "approved")
    results = []
    errors = []
    barrier = threading.Barrier(8)

    def deliver() -> None:
        barrier.wait()
        try:
            results.append(asyncio.run(engine.handle_webhook(PAYMENT_ID)))
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=deliver) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(results) == 8
    assert sum(1 for r in results if r.stock_applied) == 1
    assert store.get_stock(1).on_hand == 8
    assert len(store.outbox) == 1


def test_rejected_payment_fails_order_and_releases_stock(store, provider, engine) -> None:
    provider.set_payment(PAYMENT_ID, "rejected")

    result = _run(engine.handle_webhook(PAYMENT_ID))

    assert result.order_status is OrderStatus.FAILED
    assert result.stock_released is True
    assert result.stock_applied is False
    assert store.get_stock(1).reserved == 0
    assert store.get_stock(2).reserved == 0
    assert store.get_stock(1).on_hand == 10
    assert {m.reason for m in store.list_movements(ORDER_ID)} == {"payment_rejected"}


def test_unrecognized_provider_code_stays_pending(store, provider, engine) -> None:
    provider.set_payment(PAYMENT_ID, "in_mediation")

    result = _run(engine.handle_webhook(PAYMENT_ID))

    assert result.payment_status is PaymentStatus.PENDING
    assert result.order_status is OrderStatus.PAYMENT_PENDING
    assert result.stock_applied is False and result.stock_released is False
    assert result.notification_scheduled is False
    assert store.list_movements(ORDER_ID) == []
    assert store.outbox == {}


def test_payment_status_never_regresses(store, provider, engine) -> None:
    provider.set_payment(PAYMENT_ID, "approved")
    _run(engine.handle_webhook(PAYMENT_ID))
    provider.set_payment(PAYMENT_ID, "pending")

    result = _run(engine.handle_webhook(PAYMENT_ID))

    assert result.payment_status is PaymentStatus.APPROVED
    assert result.order_status is OrderStatus.PAID
    assert store.get_payment(ORDER_ID, "mercadopago").raw["status"] == "pending"


def test_refund_after_payment_does_not_release_stock(store, provider, engine) -> None:
    provider.set_payment(PAYMENT_ID, "approved")
    _run(engine.handle_webhook(PAYMENT_ID))
    provider.set_payment(PAYMENT_ID, "refunded")

    result = _run(engine.handle_webhook(PAYMENT_ID))

    assert result.payment_status is PaymentStatus.REFUNDED
    assert result.order_status is OrderStatus.REFUND
    assert result.stock_released is False
    assert [m.kind for m in store.list_movements(ORDER_ID)] == ["SALE", "SALE"]


def test_terminal_order_ignores_late_approval(store, provider, engine) -> None:
    seed_order(store, "ord-3003", status=OrderStatus.CANCELLED)
    provider.set_payment("555", "approved", order_id="ord-3003")

    result = _run(engine.handle_webhook("555"))

    assert result.order_status is OrderStatus.CANCELLED
    assert result.stock_applied is False
    assert result.notification_scheduled is False


def test_missing_payment_id() -> None:
    engine = ReconciliationEngine(InMemoryLedgerStore(), None, None, settings)
    with pytest.raises(ValidationError) as excinfo:
        _run(engine.handle_sync("  "))
    assert excinfo.value.code == "MISSING_PAYMENT_ID"


def test_unknown_order(provider, engine) -> None:
    provider.set_payment(PAYMENT_ID, "approved", order_id="ord-missing")
    with pytest.raises(OrderNotFoundError):
        _run(engine.handle_webhook(PAYMENT_ID))


def test_missing_external_reference(provider, engine) -> None:
    provider.set_payment(PAYMENT_ID, "approved", order_id=None)
    with pytest.raises(ValidationError) as excinfo:
        _run(engine.handle_webhook(PAYMENT_ID))
    assert excinfo.value.code == "MISSING_EXTERNAL_REFERENCE"


def test_order_mismatch(provider, engine) -> None:
    provider.set_payment(PAYMENT_ID, "approved")
    with pytest.raises(ValidationError) as excinfo:
        _run(engine.reconcile(PAYMENT_ID, order_id="ord-other"))
    assert excinfo.value.code == "ORDER_MISMATCH"


def test_provider_failure_propagates_without_writes(store, provider, engine) -> None:
    provider.error = ProviderFetchError("timeout")
    with pytest.raises(ProviderFetchError):
        _run(engine.handle_webhook(PAYMENT_ID))
    assert store.get_payment(ORDER_ID, "mercadopago").status is PaymentStatus.CREATED


def test_schema_mismatch_rolls_back_payment_and_stock(provider, sender) -> None:
    store = InMemoryLedgerStore(order_status_constraint=SPANISH_ORDER_STATUS.values())
    seed_order(store, raw_status="PENDIENTE_PAGO")
    engine = ReconciliationEngine(store, provider, NotificationDispatcher(store, sender, settings), settings)
    provider.set_payment(PAYMENT_ID, "approved")

    with pytest.raises(OrderStatusSchemaError):
        _run(engine.handle_webhook(PAYMENT_ID))

    assert store.get_payment(ORDER_ID, "mercadopago").status is PaymentStatus.CREATED
    assert store.get_order(ORDER_ID).raw_status == "PENDIENTE_PAGO"
    assert store.outbox == {}


def test_notification_failure_does_not_affect_ledger(store, provider, engine, monkeypatch) -> None:
    def broken_enqueue(*args, **kwargs):
        raise RuntimeError("outbox unavailable")

    monkeypatch.setattr(store, "enqueue_notification", broken_enqueue)
    provider.set_payment(PAYMENT_ID, "approved")

    result = _run(engine.handle_webhook(PAYMENT_ID))

    assert result.order_status is OrderStatus.PAID
    assert result.stock_applied is True
    assert result.notification_scheduled is False


def test_release_order_fails_order_and_cancels_payment(store, engine) -> None:
    result = engine.release_order(ORDER_ID, "", buyer_id="buyer-1")

    assert result.released and not result.skipped
    assert store.get_order(ORDER_ID).status is OrderStatus.FAILED
    assert store.get_payment(ORDER_ID, "mercadopago").status is PaymentStatus.CANCELLED
    assert {m.reason for m in store.list_movements(ORDER_ID)} == {"payment_not_approved"}


def test_release_order_skips_paid_order(store, provider, engine) -> None:
    provider.set_payment(PAYMENT_ID, "approved")
    _run(engine.handle_webhook(PAYMENT_ID))

    result = engine.release_order(ORDER_ID, "buyer_cancelled", buyer_id="buyer-1")

    assert result.skipped and result.reason == "NOT_PENDING"
    assert store.get_order(ORDER_ID).status is OrderStatus.PAID
    assert store.get_payment(ORDER_ID, "mercadopago").status is PaymentStatus.APPROVED


def test_release_order_checks_owner(engine) -> None:
    with pytest.raises(ForbiddenError):
        engine.release_order(ORDER_ID, "x", buyer_id="someone-else")
    with pytest.raises(OrderNotFoundError):
        engine.release_order("ord-missing", "x", buyer_id="buyer-1")
    with pytest.raises(ValidationError):
        engine.release_order("", "x", buyer_id="buyer-1")


def test_reconcile_runs_ledger_work_off_the_event_loop(store, provider, engine, monkeypatch) -> None:
    contexts = []
    transaction = store.transaction

    def tracking_transaction():
        try:
            asyncio.get_running_loop()
            contexts.append("event_loop")
        except RuntimeError:
            contexts.append("worker_thread")
        return transaction()

    monkeypatch.setattr(store, "transaction", tracking_transaction)
    provider.set_payment(PAYMENT_ID, "approved")

    result = _run(engine.handle_webhook(PAYMENT_ID))

    assert result.stock_applied is True
    assert contexts == ["worker_thread"]


def test_ignored_regression_logs_both_payment_ids(store, provider, engine, caplog) -> None:
    provider.set_payment("111", "rejected")
    _run(engine.handle_webhook("111"))
    provider.set_payment("222", "approved")

    with caplog.at_level(logging.WARNING):
        result = _run(engine.handle_webhook("222"))

    assert result.payment_status is PaymentStatus.REJECTED
    assert result.stock_applied is False
    record = next(r for r in caplog.records if r.getMessage() == "payment status regression ignored")
    assert record.payment_id == "222"
    assert record.stored_payment_id == "111"
