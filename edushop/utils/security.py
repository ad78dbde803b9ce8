from __future__ import annotations

import hashlib
import hmac
import secrets

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import (
    HTTPAuthorizationCredentials,
    HTTPBasic,
    HTTPBasicCredentials,
    HTTPBearer,
)

from edushop.config import settings
from edushop.dependencies import get_store
from edushop.domain.errors import AuthError
from edushop.repositories.base import LedgerStore


_basic_scheme = HTTPBasic()
_session_scheme = HTTPBearer(auto_error=False, scheme_name="BuyerSession")


def require_basic_auth(credentials: HTTPBasicCredentials = Depends(_basic_scheme)) -> str:
    """Validate operator credentials using HTTP Basic authentication."""

    username_valid = secrets.compare_digest(credentials.username or "", settings.api_basic_username)
    password_valid = secrets.compare_digest(credentials.password or "", settings.api_basic_password)
    if not (username_valid and password_valid):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


def require_buyer(
    credentials: HTTPAuthorizationCredentials | None = Security(_session_scheme),
    store: LedgerStore = Depends(get_store),
) -> str:
    """Return the buyer id behind the session token, or raise AuthError."""

    token = credentials.credentials.strip() if credentials else ""
    if not token:
        raise AuthError("Missing session")
    buyer_id = store.resolve_session(token)
    if not buyer_id:
        raise AuthError("Invalid session")
    return buyer_id


def secret_matches(provided: str | None, expected: str) -> bool:
    """Optional shared secret: an empty expected value disables the check."""
    if not expected:
        return True
    return secrets.compare_digest(provided or "", expected)


def verify_mp_signature(
    *,
    signature_header: str | None,
    request_id: str | None,
    data_id: str | None,
    secret: str,
) -> bool:
    """Verify Mercado Pago's ``x-signature`` header (``ts=...,v1=...``).

    The signed manifest is ``id:<data.id>;request-id:<x-request-id>;ts:<ts>;``.
    """
    if not secret:
        return True
    if not signature_header or not request_id or not data_id:
        return False
    parts: dict[str, str] = {}
    for chunk in signature_header.split(","):
        key, _, value = chunk.strip().partition("=")
        if key and value:
            parts[key] = value
    ts = parts.get("ts")
    v1 = parts.get("v1")
    if not ts or not v1:
        return False
    manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
    expected = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, v1)
