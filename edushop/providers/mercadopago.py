from __future__ import annotations

import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict

import httpx

from edushop.config import Settings
from edushop.domain.errors import ProviderFetchError, ValidationError
from edushop.domain.models import ProviderPayment
from edushop.repositories.base import LedgerStore

from .base import PaymentProvider

logger = logging.getLogger(__name__)

PROVIDER_NAME = "mercadopago"


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def parse_payment(payload: Dict[str, Any]) -> ProviderPayment:
    """Build a ProviderPayment from a /v1/payments/{id} response body."""
    payment_id = _optional_str(payload.get("id"))
    if not payment_id:
        raise ProviderFetchError("Mercado Pago payment response without id")
    order = payload.get("order") or {}
    merchant_order_id = _optional_str(order.get("id")) if isinstance(order, dict) else None
    amount: Decimal | None = None
    raw_amount = payload.get("transaction_amount")
    if raw_amount is not None:
        try:
            amount = Decimal(str(raw_amount))
        except (InvalidOperation, ValueError):
            amount = None
    return ProviderPayment(
        id=payment_id,
        status=str(payload.get("status") or ""),
        status_detail=_optional_str(payload.get("status_detail")),
        external_reference=_optional_str(payload.get("external_reference")),
        merchant_order_id=merchant_order_id or _optional_str(payload.get("merchant_order_id")),
        transaction_amount=amount,
        currency=_optional_str(payload.get("currency_id")),
        raw=payload,
    )


class MercadoPagoProvider(PaymentProvider):
    """Mercado Pago Payments API (read only).

    The webhook body is never trusted; every reconciliation re-reads the
    payment through ``GET /v1/payments/{id}``.
    """

    name = PROVIDER_NAME

    def __init__(self, settings: Settings, store: LedgerStore):
        self.settings = settings
        self.base_url = settings.mp_api_base.rstrip("/")
        self.store = store

    def _headers(self) -> Dict[str, str]:
        if not self.settings.mp_access_token:
            raise ProviderFetchError("Missing MP_ACCESS_TOKEN")
        return {
            "Authorization": f"Bearer {self.settings.mp_access_token}",
            "Content-Type": "application/json",
        }

    async def get_payment(self, payment_id: str) -> ProviderPayment:
        payment_id = str(payment_id).strip()
        if not payment_id.isdigit():
            raise ValidationError(f"Invalid payment id {payment_id!r}")
        url = f"{self.base_url}/v1/payments/{payment_id}"
        headers = self._headers()
        started = time.monotonic()
        response_status: int | None = None
        try:
            async with httpx.AsyncClient(timeout=self.settings.mp_timeout_seconds) as client:
                resp = await client.get(url, headers=headers)
            response_status = resp.status_code
            try:
                data: Dict[str, Any] = resp.json()
            except ValueError:
                data = {"raw": resp.text[:512]}
            if not isinstance(data, dict):
                data = {"raw": data}
            if resp.status_code >= 400:
                message = data.get("message") or data.get("error") or f"Mercado Pago payment error ({resp.status_code})"
                raise ProviderFetchError(str(message), response_status=resp.status_code)
        except ProviderFetchError as exc:
            self._log_event(
                request_url=url,
                payment_id=payment_id,
                response_status=response_status,
                error_message=str(exc),
                latency_ms=int((time.monotonic() - started) * 1000),
            )
            raise
        except httpx.HTTPError as exc:
            self._log_event(
                request_url=url,
                payment_id=payment_id,
                response_status=response_status,
                error_message=str(exc),
                latency_ms=int((time.monotonic() - started) * 1000),
            )
            raise ProviderFetchError(f"Mercado Pago unreachable: {exc}") from exc
        latency_ms = int((time.monotonic() - started) * 1000)
        snapshot = parse_payment(data)
        self._log_event(
            request_url=url,
            payment_id=payment_id,
            response_status=response_status,
            response_body={
                "id": snapshot.id,
                "status": snapshot.status,
                "status_detail": snapshot.status_detail,
                "external_reference": snapshot.external_reference,
            },
            latency_ms=latency_ms,
        )
        logger.info(
            "mercadopago payment fetched",
            extra={
                "payment_id": snapshot.id,
                "order_id": snapshot.external_reference,
                "status": snapshot.status,
                "latency_ms": latency_ms,
            },
        )
        return snapshot

    def _log_event(
        self,
        *,
        request_url: str,
        payment_id: str | None = None,
        response_status: int | None = None,
        response_body: Dict[str, Any] | None = None,
        error_message: str | None = None,
        latency_ms: int | None = None,
    ) -> None:
        if not self.settings.log_provider_events:
            return
        try:
            self.store.log_provider_event(
                provider=PROVIDER_NAME,
                direction="OUTBOUND",
                operation="GET_PAYMENT",
                request_url=request_url,
                payment_id=payment_id,
                response_status=response_status,
                error_message=error_message,
                latency_ms=latency_ms,
                response_body=response_body,
            )
        except Exception as exc:  # noqa: BLE001
            logger.info("provider event log error", extra={"payment_id": payment_id, "error": str(exc)})
