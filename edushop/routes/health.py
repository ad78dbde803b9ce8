from __future__ import annotations

import logging
import os
import platform
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends

from edushop.config import settings
from edushop.dependencies import get_store
from edushop.domain.vocabulary import ORDER_STATUS_VOCABULARY_VERSION
from edushop.repositories.base import LedgerStore

router = APIRouter()
logger = logging.getLogger(__name__)

SERVICE_STARTED_AT = datetime.now(timezone.utc)


@router.get("/health")
async def health() -> dict[str, str]:
    """Simple health check endpoint for load balancers."""
    return {"status": "ok"}


def _collect_metrics(store: LedgerStore) -> dict[str, Any]:
    try:
        return store.collect_metrics()
    except Exception as exc:  # noqa: BLE001
        logger.info("health metrics collection failed", extra={"error": str(exc)})
        return {"connected": False}


@router.get("/health/metrics")
async def health_metrics(store: LedgerStore = Depends(get_store)) -> dict[str, Any]:
    """Service health with order, payment and outbox counts."""

    captured_at = datetime.now(timezone.utc)
    raw_metrics = _collect_metrics(store)
    store_connected = bool(raw_metrics.pop("connected", False))
    uptime_seconds = int((captured_at - SERVICE_STARTED_AT).total_seconds())

    return {
        "status": "ok" if store_connected else "degraded",
        "timestamp": captured_at.isoformat(),
        "uptime_seconds": uptime_seconds,
        "service": {
            "provider": settings.provider,
            "order_status_dialect": settings.order_status_dialect,
            "order_status_vocabulary_version": ORDER_STATUS_VOCABULARY_VERSION,
            "host": platform.node(),
            "pid": os.getpid(),
        },
        "database": {
            "enabled": settings.db_enabled,
            "connected": store_connected,
            "schema": settings.db_schema or None,
        },
        "ledger": raw_metrics,
    }
