from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse

from edushop.domain.errors import ReconciliationError


def error_response(exc: ReconciliationError, *, status_code: int | None = None, **extra: Any) -> JSONResponse:
    """Render a core error as ``{"error": code}`` with its HTTP status."""
    body: dict[str, Any] = {"error": exc.code}
    body.update(extra)
    return JSONResponse(status_code=status_code or exc.status_code, content=body)
