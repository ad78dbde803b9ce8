from __future__ import annotations

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse

from edushop.domain.errors import ReconciliationError
from edushop.logging import setup_logging
from edushop.routes import admin, health, mercadopago, orders
from edushop.utils.responses import error_response
from edushop.utils.security import require_basic_auth

setup_logging()

app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(health.router)
app.include_router(mercadopago.router)
app.include_router(orders.router)
app.include_router(admin.router)


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(_: Request, exc: ReconciliationError) -> JSONResponse:
    return error_response(exc)


@app.get("/openapi.json", include_in_schema=False)
def custom_openapi(_: str = Depends(require_basic_auth)):
    return JSONResponse(content=app.openapi())


@app.get("/docs", include_in_schema=False)
def custom_swagger_ui(_: str = Depends(require_basic_auth)):
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Edushop Payments API")


@app.get("/redoc", include_in_schema=False)
def custom_redoc(_: str = Depends(require_basic_auth)):
    return get_redoc_html(openapi_url="/openapi.json", title="Edushop Payments API ReDoc")
