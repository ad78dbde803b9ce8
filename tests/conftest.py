from __future__ import annotations

import pathlib
import sys
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from edushop.config import settings
from edushop.dependencies import get_dispatcher, get_payment_provider, get_store
from edushop.domain.errors import NotificationError, ProviderFetchError
from edushop.domain.models import Order, OrderItem, Payment, ProviderPayment, StockEntry
from edushop.domain.statuses import OrderStatus, PaymentStatus
from edushop.main import app
from edushop.providers.base import PaymentProvider
from edushop.repositories.memory_store import InMemoryLedgerStore
from edushop.services.notification_service import NotificationDispatcher
from edushop.services.receipt_sender import ReceiptSender
from edushop.services.reconciliation_service import ReconciliationEngine

ORDER_ID = "ord-1001"
BUYER_ID = "buyer-1"
SESSION_TOKEN = "session-buyer-1"
PAYMENT_ID = "123456789"


class FakeProvider(PaymentProvider):
    """Serves payment snapshots from memory instead of the Mercado Pago API."""

    name = "mercadopago"

    def __init__(self) -> None:
        self.payments: dict[str, ProviderPayment] = {}
        self.calls: list[str] = []
        self.error: Exception | None = None

    def set_payment(self, payment_id: str, status: str, order_id: str | None = ORDER_ID) -> ProviderPayment:
        snapshot = ProviderPayment(
            id=payment_id,
            status=status,
            external_reference=order_id,
            merchant_order_id="mo-77",
            transaction_amount=Decimal("95.00"),
            currency="PEN",
            raw={"id": int(payment_id), "status": status, "external_reference": order_id},
        )
        self.payments[payment_id] = snapshot
        return snapshot

    async def get_payment(self, payment_id: str) -> ProviderPayment:
        self.calls.append(payment_id)
        if self.error is not None:
            raise self.error
        try:
            return self.payments[payment_id]
        except KeyError:
            raise ProviderFetchError(f"payment {payment_id} not found", response_status=404) from None


class RecordingSender(ReceiptSender):
    def __init__(self) -> None:
        self.sent = []
        self.fail = False

    async def send(self, receipt) -> None:
        if self.fail:
            raise NotificationError("receipt service down")
        self.sent.append(receipt)


def seed_order(
    store: InMemoryLedgerStore,
    order_id: str = ORDER_ID,
    *,
    buyer_id: str = BUYER_ID,
    status: OrderStatus = OrderStatus.PAYMENT_PENDING,
    raw_status: str | None = None,
    payment_status: PaymentStatus = PaymentStatus.CREATED,
) -> None:
    """Order with two books, a bundle header line and one Mercado Pago payment."""
    store.add_order(
        Order(
            id=order_id,
            buyer_id=buyer_id,
            total=Decimal("95.00"),
            status=status,
            raw_status=raw_status,
            customer_name="Ana Quispe",
            customer_email="ana@example.com",
            subtotal=Decimal("100.00"),
            discount_amount=Decimal("5.00"),
        ),
        items=[
            OrderItem(order_id=order_id, product_id=None, quantity=1, unit_price=Decimal("0"), line_total=Decimal("0"), name_snapshot="Pack Primaria"),
            OrderItem(order_id=order_id, product_id=1, quantity=2, unit_price=Decimal("30.00"), line_total=Decimal("60.00"), name_snapshot="Matematica 1", code_snapshot="MAT-1"),
            OrderItem(order_id=order_id, product_id=2, quantity=1, unit_price=Decimal("40.00"), line_total=Decimal("40.00"), name_snapshot="Comunicacion 1", code_snapshot="COM-1"),
        ],
        payment=Payment(order_id=order_id, provider="mercadopago", status=payment_status, preference_id="pref-1"),
    )


@pytest.fixture
def store() -> InMemoryLedgerStore:
    store = InMemoryLedgerStore()
    store.put_stock(StockEntry(product_id=1, on_hand=10, reserved=2))
    store.put_stock(StockEntry(product_id=2, on_hand=5, reserved=1))
    seed_order(store)
    store.add_session(SESSION_TOKEN, BUYER_ID)
    return store


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def dispatcher(store: InMemoryLedgerStore, sender: RecordingSender) -> NotificationDispatcher:
    return NotificationDispatcher(store, sender, settings)


@pytest.fixture
def engine(store: InMemoryLedgerStore, provider: FakeProvider, dispatcher: NotificationDispatcher) -> ReconciliationEngine:
    return ReconciliationEngine(store, provider, dispatcher, settings)


@pytest.fixture
def client(store, provider, dispatcher):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_payment_provider] = lambda: provider
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    yield TestClient(app)
    app.dependency_overrides.clear()
