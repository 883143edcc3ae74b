# laundry/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .deps import Services, build_services
from .errors import LaundryError
from .jobs import router as jobs_router
from .payments import router as payments_router
from .routers.customers import router as customers_router
from .routers.health import router as health_router
from .routers.reconciliation import router as reconciliation_router
from .routers.washers import router as washers_router
from .stripe_webhook import router as stripe_router

log = logging.getLogger("laundry")


def _describe(errors) -> str:
    parts = []
    for err in errors:
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "invalid request"


def create_app(services: Optional[Services] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the API. Pass ``services`` to skip building real clients (tests)."""
    settings = settings or (services.settings if services else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = getattr(app.state, "services", None) is None
        if owned:
            app.state.services = await build_services(settings)
            log.info(f"Services ready | job_store={settings.job_store} | washer_registry={settings.washer_registry}")
        try:
            yield
        finally:
            if owned:
                await app.state.services.close()

    app = FastAPI(title="Laundry Jobs API", version="1.0.0", docs_url="/docs", redoc_url=None, lifespan=lifespan)
    if services is not None:
        app.state.services = services

    # ──────────────────────────────────────────────────────────────────────────
    # CORS
    # ──────────────────────────────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ──────────────────────────────────────────────────────────────────────────
    # Errors: {"kind": ..., "detail": ...}
    # ──────────────────────────────────────────────────────────────────────────
    @app.exception_handler(LaundryError)
    async def laundry_error_handler(request: Request, exc: LaundryError):
        if exc.status_code >= 500:
            log.error(f"{request.method} {request.url.path} -> {exc.kind}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"kind": exc.kind, "detail": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"kind": "ValidationError", "detail": _describe(exc.errors())})

    @app.get("/", tags=["default"])
    def root():
        return {"ok": True, "service": "laundry-jobs-api"}

    # routers
    app.include_router(health_router, prefix="/health", tags=["health"])
    app.include_router(jobs_router)
    app.include_router(payments_router)
    app.include_router(customers_router, prefix="/customers", tags=["customers"])
    app.include_router(washers_router, prefix="/washers", tags=["washers"])
    app.include_router(reconciliation_router, prefix="/reconciliation", tags=["reconciliation"])
    app.include_router(stripe_router)
    return app


app = create_app()

# ──────────────────────────────────────────────────────────────────────────────
# Local dev entrypoint
# ──────────────────────────────────────────────────────────────────────────────
if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    uvicorn.run("laundry.main:app", host="0.0.0.0", port=settings.port)
