"""Outbox worker: delivers receipt notifications for paid orders.

Run with ``python -m edushop.worker``. Several workers may run at once; the
store hands each pending row to a single claimant.
"""

from __future__ import annotations

import asyncio
import logging

from edushop.config import Settings, settings
from edushop.db.client import close_pool
from edushop.dependencies import get_store
from edushop.logging import setup_logging
from edushop.services.notification_service import NotificationDispatcher
from edushop.services.receipt_sender import get_receipt_sender

logger = logging.getLogger(__name__)


async def run_once(dispatcher: NotificationDispatcher) -> int:
    try:
        return await dispatcher.drain()
    except Exception as exc:  # noqa: BLE001
        logger.exception("notification drain failed", extra={"error": str(exc)})
        return 0


async def run_forever(dispatcher: NotificationDispatcher, cfg: Settings = settings) -> None:
    logger.info("notification worker started", extra={"event": "worker_start"})
    while True:
        sent = await run_once(dispatcher)
        if sent:
            logger.info("notification batch delivered", extra={"sent": sent})
        # Full batches mean more rows are probably waiting.
        if sent < cfg.notification_batch_size:
            await asyncio.sleep(cfg.notification_poll_seconds)


def main() -> None:
    setup_logging()
    dispatcher = NotificationDispatcher(get_store(), get_receipt_sender(settings), settings)
    try:
        asyncio.run(run_forever(dispatcher))
    except KeyboardInterrupt:
        logger.info("notification worker stopped", extra={"event": "worker_stop"})
    finally:
        close_pool()


if __name__ == "__main__":
    main()
