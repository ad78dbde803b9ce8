from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from edushop.config import settings
from edushop.dependencies import get_engine, get_store
from edushop.domain.dtos import ErrorResponse, SyncResponse, WebhookAck
from edushop.domain.errors import (
    OrderNotFoundError,
    PersistenceError,
    ProviderFetchError,
    ValidationError,
)
from edushop.repositories.base import LedgerStore
from edushop.services.reconciliation_service import ReconciliationEngine
from edushop.utils.responses import error_response
from edushop.utils.security import secret_matches, verify_mp_signature

router = APIRouter(prefix="/api/mercadopago")
logger = logging.getLogger(__name__)

WEBHOOK_ENDPOINT = "/api/mercadopago/webhook"
SYNC_ENDPOINT = "/api/mercadopago/sync"


def _extract_payment_id(body: dict[str, Any], params: Any) -> str | None:
    data = body.get("data")
    if isinstance(data, dict) and data.get("id"):
        return str(data["id"])
    if body.get("id"):
        return str(body["id"])
    return params.get("data.id") or params.get("id")


def _notification_type(body: dict[str, Any], params: Any) -> str | None:
    raw = body.get("type") or body.get("topic") or params.get("type") or params.get("topic")
    return str(raw).lower() if raw else None


def _record_webhook(
    store: LedgerStore,
    request: Request,
    body: dict[str, Any],
    *,
    payment_id: str | None,
    event_type: str | None,
    verification_status: str,
    order_id: str | None = None,
) -> None:
    try:
        store.record_webhook(
            provider="mercadopago",
            event_id=request.headers.get("x-request-id") or (str(body.get("id")) if body.get("id") else payment_id),
            event_type=event_type or body.get("action"),
            verification_status=verification_status,
            headers={k: v for k, v in request.headers.items() if k.lower() != "authorization"},
            payload=body,
            related_order_id=order_id,
        )
    except Exception as exc:  # noqa: BLE001
        logger.info(
            "webhook inbox log error",
            extra={"endpoint": WEBHOOK_ENDPOINT, "payment_id": payment_id, "error": str(exc)},
        )


@router.post("/webhook", response_model=WebhookAck, responses={401: {"model": ErrorResponse}, 500: {"model": ErrorResponse}})
async def mercadopago_webhook(
    request: Request,
    engine: ReconciliationEngine = Depends(get_engine),
    store: LedgerStore = Depends(get_store),
) -> Any:
    """Handle Mercado Pago payment notifications.

    Only the payment id is read from the notification; the payment itself is
    re-fetched from the provider. Non-2xx answers make Mercado Pago retry.
    """
    params = request.query_params
    if not secret_matches(params.get("secret"), settings.mp_webhook_secret):
        logger.info("webhook secret mismatch", extra={"endpoint": WEBHOOK_ENDPOINT})
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"error": "INVALID_WEBHOOK_SECRET"})

    try:
        body = await request.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    payment_id = _extract_payment_id(body, params)
    event_type = _notification_type(body, params)
    logger.info(
        "webhook received",
        extra={"endpoint": WEBHOOK_ENDPOINT, "method": "POST", "payment_id": payment_id, "event": event_type},
    )

    if not payment_id or (event_type and event_type != "payment"):
        return WebhookAck()

    if not verify_mp_signature(
        signature_header=request.headers.get("x-signature"),
        request_id=request.headers.get("x-request-id"),
        data_id=params.get("data.id") or payment_id,
        secret=settings.mp_signature_secret,
    ):
        _record_webhook(store, request, body, payment_id=payment_id, event_type=event_type, verification_status="FAILED")
        logger.info("webhook signature invalid", extra={"endpoint": WEBHOOK_ENDPOINT, "payment_id": payment_id})
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"error": "INVALID_SIGNATURE"})

    verification = "SUCCESS" if settings.mp_signature_secret else "UNVERIFIED"
    try:
        result = await engine.handle_webhook(payment_id)
    except OrderNotFoundError as exc:
        _record_webhook(store, request, body, payment_id=payment_id, event_type=event_type, verification_status=verification)
        logger.warning(
            "webhook for unknown order acknowledged",
            extra={"endpoint": WEBHOOK_ENDPOINT, "payment_id": payment_id, "error": str(exc)},
        )
        return WebhookAck()
    except ValidationError as exc:
        if exc.code == "MISSING_EXTERNAL_REFERENCE":
            # Payments not created by the storefront carry no order reference.
            _record_webhook(store, request, body, payment_id=payment_id, event_type=event_type, verification_status=verification)
            logger.warning(
                "webhook for payment without order acknowledged",
                extra={"endpoint": WEBHOOK_ENDPOINT, "payment_id": payment_id, "error": str(exc)},
            )
            return WebhookAck()
        logger.warning(
            "webhook rejected",
            extra={"endpoint": WEBHOOK_ENDPOINT, "payment_id": payment_id, "error": str(exc)},
        )
        return error_response(exc)
    except (ProviderFetchError, PersistenceError) as exc:
        logger.error(
            "webhook processing failed",
            extra={"endpoint": WEBHOOK_ENDPOINT, "payment_id": payment_id, "error": str(exc)},
        )
        return error_response(exc, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
    except Exception as exc:  # noqa: BLE001
        logger.exception(
            "webhook unexpected error",
            extra={"endpoint": WEBHOOK_ENDPOINT, "payment_id": payment_id, "error": str(exc)},
        )
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": "Unexpected error"})

    _record_webhook(
        store,
        request,
        body,
        payment_id=payment_id,
        event_type=event_type,
        verification_status=verification,
        order_id=result.order_id,
    )
    return WebhookAck()


@router.get(
    "/sync",
    response_model=SyncResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
async def mercadopago_sync(
    payment_id: str | None = Query(default=None),
    secret: str | None = Query(default=None),
    engine: ReconciliationEngine = Depends(get_engine),
) -> Any:
    """Reconcile a payment after the buyer returns from the hosted checkout."""
    if not secret_matches(secret, settings.sync_secret):
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"error": "INVALID_SECRET"})
    logger.info("sync received", extra={"endpoint": SYNC_ENDPOINT, "method": "GET", "payment_id": payment_id})
    try:
        result = await engine.handle_sync(payment_id)
    except (ValidationError, OrderNotFoundError, ProviderFetchError, PersistenceError) as exc:
        logger.info("sync failed", extra={"endpoint": SYNC_ENDPOINT, "payment_id": payment_id, "error": str(exc)})
        return error_response(exc)
    return SyncResponse(
        order_id=result.order_id,
        payment_status=result.payment_status,
        order_status=result.order_status,
        stock_applied=result.stock_applied,
    )
