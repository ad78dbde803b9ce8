from __future__ import annotations

import logging
from functools import lru_cache

from fastapi import Depends

from edushop.config import settings
from edushop.providers.base import PaymentProvider
from edushop.providers.factory import get_provider
from edushop.repositories.base import LedgerStore
from edushop.services.fulfillment_service import FulfillmentService
from edushop.services.notification_service import NotificationDispatcher
from edushop.services.receipt_sender import get_receipt_sender
from edushop.services.reconciliation_service import ReconciliationEngine

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_store() -> LedgerStore:
    """Process-wide store; PostgreSQL when configured, in-memory otherwise."""
    if settings.db_enabled:
        from edushop.repositories.pg_store import PgLedgerStore

        return PgLedgerStore()
    from edushop.repositories.memory_store import InMemoryLedgerStore

    logger.warning("database not configured; using in-memory store")
    return InMemoryLedgerStore()


def get_payment_provider(store: LedgerStore = Depends(get_store)) -> PaymentProvider:
    return get_provider(settings, store)


def get_dispatcher(store: LedgerStore = Depends(get_store)) -> NotificationDispatcher:
    return NotificationDispatcher(store, get_receipt_sender(settings), settings)


def get_engine(
    store: LedgerStore = Depends(get_store),
    provider: PaymentProvider = Depends(get_payment_provider),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> ReconciliationEngine:
    return ReconciliationEngine(store, provider, dispatcher, settings)


def get_fulfillment_service(store: LedgerStore = Depends(get_store)) -> FulfillmentService:
    return FulfillmentService(store, settings)
