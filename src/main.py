"""Practice Integrations API — FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from src.attachments.reconciliation import get_reconciler
from src.attachments.routes import admin_router, hooks_router
from src.attachments.routes import router as attachments_router
from src.attachments.scheduler import ReconciliationScheduler
from src.config.settings import get_settings
from src.middleware.error_handler import register_error_handlers
from src.middleware.request_id import RequestIDMiddleware
from src.xero.client import close_http_client
from src.xero.routes import router as xero_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL.upper())

    scheduler = None
    if settings.RECONCILE_INTERVAL_MINUTES > 0:
        scheduler = ReconciliationScheduler(get_reconciler, settings.RECONCILE_INTERVAL_MINUTES * 60)
        await scheduler.start()
    try:
        yield
    finally:
        if scheduler is not None:
            await scheduler.stop()
        await close_http_client()


app = FastAPI(
    title="Practice Integrations API",
    description=(
        "Integration back end for the practice management app.\n\n"
        "## Features\n"
        "- Xero OAuth2 session kept alive across stateless requests (signed cookie, automatic refresh)\n"
        "- Tenant-scoped Xero API pass-through with uniform error translation\n"
        "- Attachment uploads and downloads via pre-signed R2 URLs\n"
        "- Orphaned attachment reconciliation, on demand and on a schedule\n\n"
        "## Authentication\n"
        "Endpoints (except `/health`, the Xero redirect handshake and the database webhook) "
        "require a Supabase access token: `Authorization: Bearer <jwt>`."
    ),
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Health", "description": "Health check endpoints"},
        {"name": "Xero", "description": "Xero authorization, session status and API calls"},
        {"name": "Attachments", "description": "Upload/download authorizations and attachment deletes"},
        {"name": "Webhooks", "description": "Database change notifications"},
        {"name": "Admin", "description": "Maintenance operations"},
    ],
)

# --- Middleware ---
app.add_middleware(RequestIDMiddleware)

# --- Error handlers ---
register_error_handlers(app)

# --- Routes ---
app.include_router(xero_router)
app.include_router(attachments_router)
app.include_router(hooks_router)
app.include_router(admin_router)


@app.get("/health", tags=["Health"], summary="Health check", description="Returns OK if the service is running.")
async def health_check():
    return {"status": "ok"}
