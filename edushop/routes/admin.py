from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends

from edushop.dependencies import get_dispatcher, get_fulfillment_service
from edushop.domain.dtos import (
    DrainResponse,
    ErrorResponse,
    FulfillmentEventOut,
    FulfillmentResponse,
    FulfillmentUpdateRequest,
)
from edushop.domain.errors import FulfillmentTransitionError, OrderNotFoundError
from edushop.services.fulfillment_service import FulfillmentService
from edushop.services.notification_service import NotificationDispatcher
from edushop.utils.responses import error_response
from edushop.utils.security import require_basic_auth

router = APIRouter(prefix="/api/admin")
logger = logging.getLogger(__name__)


@router.put(
    "/orders/{order_id}/fulfillment",
    response_model=FulfillmentResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def update_fulfillment(
    order_id: str,
    req: FulfillmentUpdateRequest,
    operator: str = Depends(require_basic_auth),
    service: FulfillmentService = Depends(get_fulfillment_service),
) -> Any:
    logger.info(
        "fulfillment update received",
        extra={
            "endpoint": "/api/admin/orders/{order_id}/fulfillment",
            "method": "PUT",
            "order_id": order_id,
            "fulfillment_status": req.fulfillment_status,
        },
    )
    try:
        order, events = service.update(
            order_id,
            req.fulfillment_status,
            delivery_date=req.delivery_date,
            note=req.note,
            actor=operator,
        )
    except (OrderNotFoundError, FulfillmentTransitionError) as exc:
        return error_response(exc)
    return FulfillmentResponse(
        order_id=order.id,
        order_status=order.status,
        fulfillment_status=order.fulfillment_status,
        delivery_date=order.delivery_date,
        events=[
            FulfillmentEventOut(status=e.status, note=e.note, created_by=e.created_by, created_at=e.created_at)
            for e in events
        ],
    )


@router.post("/notifications/drain", response_model=DrainResponse, dependencies=[Depends(require_basic_auth)])
async def drain_notifications(dispatcher: NotificationDispatcher = Depends(get_dispatcher)) -> DrainResponse:
    """Deliver one batch of pending receipts (for cron-driven deployments)."""
    sent = await dispatcher.drain()
    return DrainResponse(sent=sent)
