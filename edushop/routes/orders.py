from __future__ import annotations

import logging
from typing import Any

import pydantic
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from edushop.dependencies import get_engine
from edushop.domain.dtos import ErrorResponse, ReleaseRequest, ReleaseResponse
from edushop.domain.errors import ForbiddenError, OrderNotFoundError, PersistenceError, ValidationError
from edushop.services.reconciliation_service import ReconciliationEngine
from edushop.utils.responses import error_response
from edushop.utils.security import require_buyer

router = APIRouter(prefix="/api/orders")
logger = logging.getLogger(__name__)


@router.post(
    "/release",
    response_model=ReleaseResponse,
    response_model_exclude_none=True,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
)
async def release_order(
    request: Request,
    buyer_id: str = Depends(require_buyer),
    engine: ReconciliationEngine = Depends(get_engine),
) -> Any:
    """Give back reserved stock for the buyer's unpaid order."""
    try:
        body = await request.json()
    except ValueError:
        body = {}
    try:
        payload = ReleaseRequest.model_validate(body if isinstance(body, dict) else {})
    except pydantic.ValidationError:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "orderId required"})

    logger.info(
        "release requested",
        extra={"endpoint": "/api/orders/release", "method": "POST", "order_id": payload.order_id, "reason": payload.reason},
    )
    try:
        result = await run_in_threadpool(engine.release_order, payload.order_id, payload.reason, buyer_id=buyer_id)
    except (ValidationError, OrderNotFoundError, ForbiddenError, PersistenceError) as exc:
        logger.info(
            "release failed",
            extra={"endpoint": "/api/orders/release", "order_id": payload.order_id, "error": exc.code},
        )
        return error_response(exc)
    if result.skipped:
        return ReleaseResponse(ok=True, skipped=True, reason=result.reason)
    return ReleaseResponse(ok=True)
