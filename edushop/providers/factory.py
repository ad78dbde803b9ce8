from __future__ import annotations

from edushop.config import Settings
from edushop.repositories.base import LedgerStore

from .base import PaymentProvider


def get_provider(settings: Settings, store: LedgerStore) -> PaymentProvider:
    """Return the payment provider based on configuration."""
    normalized = (settings.provider or "").lower()
    if normalized in {"mercadopago", "mp"}:
        from .mercadopago import MercadoPagoProvider

        return MercadoPagoProvider(settings, store)
    msg = f"Unknown provider {settings.provider}"
    raise ValueError(msg)
