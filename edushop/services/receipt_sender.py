from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx

from edushop.config import Settings
from edushop.domain.dtos import ReceiptPayload
from edushop.domain.errors import NotificationError

logger = logging.getLogger(__name__)


class ReceiptSender(ABC):
    """Collaborator that renders the receipt document and emails it."""

    @abstractmethod
    async def send(self, receipt: ReceiptPayload) -> None: ...


class HttpReceiptSender(ReceiptSender):
    """POSTs the receipt payload to the receipt/email service."""

    def __init__(self, settings: Settings):
        self.url = settings.receipt_service_url
        self.token = settings.receipt_service_token
        self.timeout = settings.mp_timeout_seconds

    async def send(self, receipt: ReceiptPayload) -> None:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.url, headers=headers, json=receipt.model_dump(mode="json"))
        except httpx.HTTPError as exc:
            raise NotificationError(f"receipt service unreachable: {exc}") from exc
        if resp.status_code >= 400:
            raise NotificationError(f"receipt service error ({resp.status_code}): {resp.text[:256]}")


class LogReceiptSender(ReceiptSender):
    """Used when no receipt service is configured."""

    async def send(self, receipt: ReceiptPayload) -> None:
        logger.info(
            "receipt ready (no receipt service configured)",
            extra={"order_id": receipt.order_id, "payment_id": receipt.payment_reference},
        )


def get_receipt_sender(settings: Settings) -> ReceiptSender:
    if settings.receipt_service_url:
        return HttpReceiptSender(settings)
    return LogReceiptSender()
