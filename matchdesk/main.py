"""Matchdesk: match-sheet ingestion and fixture sync service."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from matchdesk.config import get_settings
from matchdesk.database import close_db, init_db
from matchdesk.security import limiter
from matchdesk.sumula.errors import PipelineError
from matchdesk.sumula.routes import router as sumula_router
from matchdesk.sync.routes import router as sync_router
from matchdesk.telemetry.sentry import init_sentry, is_sentry_enabled

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize Sentry for error tracking (before FastAPI app creation)
# Only activates if SENTRY_DSN is set in environment
init_sentry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting Matchdesk...")
    await init_db()
    yield
    logger.info("Shutting down Matchdesk...")
    await close_db()


app = FastAPI(
    title="Matchdesk",
    description="Match-sheet ingestion, player stats and fixture sync",
    version="0.4.0",
    lifespan=lifespan,
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    """Render pipeline failures as {"ok": false, "error": {...}}."""
    error = exc.to_dict()
    if exc.status_code >= 500 and exc.code in ("PIPELINE_ERROR", "INTEGRITY_VIOLATION"):
        # Full text is on the document / run ledger
        error["message"] = f"Internal error during {exc.stage}"
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(f"[API] {request.method} {request.url.path} -> {exc.status_code} {exc.code} at {exc.stage}: {exc.message}")
    return JSONResponse({"ok": False, "error": error}, status_code=exc.status_code)


# Include routers
app.include_router(sumula_router)
app.include_router(sync_router)


class HealthResponse(BaseModel):
    status: str
    environment: str
    sentry: bool


@app.get("/health", response_model=HealthResponse)
@limiter.limit("120/minute")
async def health_check(request: Request):
    """Health check endpoint."""
    return HealthResponse(
        status="ok",
        environment=settings.ENVIRONMENT,
        sentry=is_sentry_enabled(),
    )
