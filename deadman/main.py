from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy import text

from deadman.db.base import SessionLocal, engine, get_db
from deadman.core.config import settings
from deadman.core.logging import configure_logging
from deadman.routers import activity as activity_router
from deadman.routers import inactivity as inactivity_router
from deadman.routers import handover as handover_router
from deadman.routers import system as system_router
from deadman.routers.deps import get_scanner
from deadman.services.scanner import InactivityScanner
from deadman.core.errors import (
    DeadmanException,
    deadman_exception_handler,
    validation_exception_handler,
    unhandled_exception_handler,
)

logger = structlog.get_logger(__name__)

# Seconds to let an in-flight sweep finish on shutdown.
SHUTDOWN_SWEEP_TIMEOUT = 30.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    scanner = InactivityScanner.from_settings(SessionLocal)
    app.state.scanner = scanner

    if settings.SCANNER_ENABLED and not settings.is_test:
        scanner.start()
    else:
        logger.info("scanner_disabled", app_env=settings.APP_ENV)

    yield

    scanner.stop()
    await scanner.wait_for_sweep(timeout=SHUTDOWN_SWEEP_TIMEOUT)
    engine.dispose()


app = FastAPI(
    title="Deadman API",
    description=(
        "**Dead man's switch**\n\n"
        "Tracks user activity, escalates sustained inactivity through timed reminders "
        "and hands a user's assets over to designated successors.\n\n"
        "All error responses follow the `{code, message, details}` envelope."
    ),
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Exception handlers (most specific first) ---
app.add_exception_handler(DeadmanException, deadman_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# --- Routers ---
app.include_router(activity_router.router)
app.include_router(inactivity_router.router)
app.include_router(handover_router.router)
app.include_router(system_router.router)


@app.get("/health", tags=["health"], summary="Health check")
def health(
    db: Session = Depends(get_db),
    scanner: InactivityScanner = Depends(get_scanner),
):
    """
    Returns `{"status": "ok", "db": "ok", "scanner": {...}}` when the database is
    reachable. Returns HTTP 503 if the DB is down.
    """
    try:
        db.execute(text("SELECT 1"))
        db_status = "ok"
    except Exception:
        logger.warning("health_db_unreachable", exc_info=True)
        db_status = "unreachable"

    if db_status != "ok":
        return JSONResponse(
            status_code=503,
            content={"status": "error", "db": db_status},
        )
    return {
        "status": "ok",
        "db": "ok",
        "env": settings.APP_ENV,
        "scanner": scanner.get_stats(),
    }
