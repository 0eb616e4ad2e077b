"""
Control Number Payment Gateway — FastAPI Application

Merchant-issued control numbers, a payment ledger fed by provider webhooks
and polls, and exactly-once activation of paid-for services.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi import HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from domain.errors import DomainError, InternalError
from domain.responses import error_response
from routes import control_numbers, delivery, health, payments, webhooks

# ── Logging ─────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan ────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: validate settings, create tables, start sweeper. Shutdown: stop it."""
    # Ensure data/ directory exists for SQLite
    os.makedirs("data", exist_ok=True)

    settings.validate_production_settings()

    from database import init_db
    await init_db()
    logger.info("Database initialized")

    from services import sweeper_service
    await sweeper_service.start()
    logger.info("Expiry sweeper started")

    yield  # app runs here

    await sweeper_service.stop()
    logger.info("Shutting down")


# ── App Factory ─────────────────────────────────────────────────────

app = FastAPI(
    title="Control Number Payment Gateway API",
    description="Control number issuance and redemption, payment reconciliation and service delivery",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routes ──────────────────────────────────────────────────────────

app.include_router(health.router)
app.include_router(control_numbers.router)
app.include_router(payments.router)
app.include_router(webhooks.router)
app.include_router(delivery.router)


# ── Sweeper Status Endpoint ────────────────────────────────────────

@app.get("/sweeper/status", tags=["sweeper"])
async def get_sweeper_status():
    """Get the current status of the background expiry sweeper."""
    from services import sweeper_service
    return sweeper_service.get_status()


# ── Exception Handlers ──────────────────────────────────────────────


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """
    Catch-all for unhandled exceptions.

    Never return raw exception details to clients; the full traceback is
    logged server-side.
    """
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=error_response("internal_server_error", "Internal server error"),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    """
    Standardize HTTPException responses for API consumers.

    Keeps the original HTTP status code, but wraps the payload.
    """
    if isinstance(exc, InternalError):
        logger.error(f"Internal error on {request.url.path}: {exc.message} {exc.details}", exc_info=exc)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_response("internal", "Internal server error"),
        )

    if isinstance(exc, DomainError):
        error_code = exc.__class__.__name__.replace("Error", "").lower()
        return JSONResponse(
            status_code=exc.status_code,
            content=error_response(error_code, exc.message, exc.details),
        )

    # Regular HTTPException
    detail = exc.detail
    message = detail if isinstance(detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response("http_error", message, detail if not isinstance(detail, str) else None),
        headers=getattr(exc, "headers", None),
    )


# ── Entrypoint ──────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")
