from __future__ import annotations

import logging

from edushop.domain.errors import ConflictError
from edushop.domain.models import ReleaseResult
from edushop.domain.statuses import OrderStatus, PaymentStatus
from edushop.domain.vocabulary import is_pending_like
from edushop.repositories.base import LedgerTransaction

logger = logging.getLogger(__name__)

NOT_PENDING = "NOT_PENDING"


class StockLedger:
    """Decides whether and when the inventory procedures run.

    The procedures themselves (``commit_stock_for_order`` and
    ``release_stock_for_order``) are atomic per call and live in the store.
    """

    @staticmethod
    def became_approved(previous: PaymentStatus, current: PaymentStatus) -> bool:
        return previous is not PaymentStatus.APPROVED and current is PaymentStatus.APPROVED

    def commit(
        self,
        tx: LedgerTransaction,
        order_id: str,
        provider_payment_id: str,
        *,
        previous: PaymentStatus,
        current: PaymentStatus,
    ) -> bool:
        """Consume reserved stock on the transition into APPROVED.

        Returns True only for the call that actually applied the commit.
        """
        if not self.became_approved(previous, current):
            return False
        if not tx.claim_stock_commit(order_id, provider_payment_id):
            logger.info(
                "stock commit already claimed",
                extra={"order_id": order_id, "payment_id": provider_payment_id},
            )
            return False
        tx.commit_stock_for_order(order_id)
        logger.info(
            "stock committed",
            extra={"order_id": order_id, "payment_id": provider_payment_id, "stock_applied": True},
        )
        return True

    def release(
        self,
        tx: LedgerTransaction,
        order_id: str,
        reason: str,
        *,
        order_status: str | OrderStatus | None,
    ) -> ReleaseResult:
        """Restore reserved stock while the order still awaits payment.

        Raises ConflictError(NOT_PENDING) once the order moved past pending.
        """
        if not is_pending_like(order_status):
            raise ConflictError(NOT_PENDING)
        tx.release_stock_for_order(order_id, reason)
        logger.info(
            "stock released",
            extra={"order_id": order_id, "reason": reason, "stock_released": True},
        )
        return ReleaseResult(order_id=order_id, released=True)
