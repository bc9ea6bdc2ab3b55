"""FastAPI application entry point for the rental platform API."""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from rental_platform.app.config import get_settings
from rental_platform.domain.errors import WorkflowError
from rental_platform.infra.database import async_session, init_db
from rental_platform.services.expiry_monitor import monitor_loop

logger = logging.getLogger(__name__)

# WorkflowError.kind -> HTTP status
ERROR_STATUS = {
    "not_found": 404,
    "invalid_state": 409,
    "forbidden": 403,
    "validation_error": 422,
    "invalid_signature": 400,
    "external_service_error": 502,
    "conflict": 409,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize database, start the expiry monitor."""
    await init_db()
    settings = get_settings()
    monitor = asyncio.create_task(monitor_loop(async_session, settings.monitor_interval_minutes))
    yield
    monitor.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await monitor


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="Rental Platform API",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS middleware: allow all origins in debug mode
_cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=("*" not in _cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    status_code = ERROR_STATUS.get(exc.kind, 400)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"detail": exc.message, **exc.to_dict()}),
    )


# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from rental_platform.app.routes.auth import router as auth_router
from rental_platform.app.routes.rental_requests import router as rental_requests_router
from rental_platform.app.routes.confirmations import router as confirmations_router
from rental_platform.app.routes.payments import router as payments_router
from rental_platform.app.routes.signatures import router as signatures_router
from rental_platform.app.routes.tenancies import router as tenancies_router
from rental_platform.app.routes.withdrawals import router as withdrawals_router
from rental_platform.app.routes.wallet import router as wallet_router

app.include_router(auth_router)
app.include_router(rental_requests_router)
app.include_router(confirmations_router)
app.include_router(payments_router)
app.include_router(signatures_router)
app.include_router(tenancies_router)
app.include_router(withdrawals_router)
app.include_router(wallet_router)


@app.get("/health", tags=["health"])
async def health_check():
    """Return service health status."""
    return {"status": "ok", "service": "rental-platform"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "rental_platform.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
