from __future__ import annotations

from abc import ABC, abstractmethod

from edushop.domain.models import ProviderPayment


class PaymentProvider(ABC):
    """Read side of an external payment provider."""

    name: str

    @abstractmethod
    async def get_payment(self, payment_id: str) -> ProviderPayment:
        """Fetch the authoritative payment snapshot.

        Raises ProviderFetchError when the provider cannot be reached or
        answers with an error; the caller surfaces it so the provider retries.
        """
