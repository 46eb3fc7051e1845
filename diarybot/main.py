import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy import text

from diarybot.db.base import get_db
from diarybot.core.config import settings
from diarybot.core.container import ServiceContainer, build_container, get_container
from diarybot.routers import webhook as webhook_router
from diarybot.routers import performance as performance_router
from diarybot.routers import maintenance as maintenance_router
from diarybot.core.errors import (
    DiaryBotException,
    diarybot_exception_handler,
    validation_exception_handler,
    unhandled_exception_handler,
)

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    container = build_container(settings)
    app.state.container = container
    logger.info(f"diarybot started in {settings.APP_ENV} mode (analysis mode: {settings.ANALYSIS_MODE})")
    try:
        yield
    finally:
        await container.aclose()


app = FastAPI(
    title="diarybot API",
    description=(
        "**LINE diary bot backend**\n\n"
        "Stores diary messages received over the LINE webhook and answers with an "
        "analysis chosen by a tiered, latency-budgeted pipeline "
        "(LLM + heuristic → heuristic → fixed message).\n\n"
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
app.add_exception_handler(DiaryBotException, diarybot_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# --- Routers ---
app.include_router(webhook_router.router)
app.include_router(performance_router.router)
app.include_router(maintenance_router.router)


@app.get("/health", tags=["health"], summary="Health check")
def health(
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    """
    Returns `{"status": "ok", "db": "ok", ...}` when the API and the database
    are reachable, with the current circuit breaker states. Returns HTTP 503
    if the DB is down. Used by Railway / Render for liveness probes.
    """
    try:
        db.execute(text("SELECT 1"))
        db_status = "ok"
    except Exception:
        logger.exception("Health check could not reach the database")
        db_status = "unreachable"

    circuits = {
        key: status["state"] for key, status in container.resilience.all_circuit_status().items()
    }
    if db_status != "ok":
        return JSONResponse(
            status_code=503,
            content={"status": "error", "db": db_status, "circuits": circuits},
        )
    return {"status": "ok", "db": "ok", "env": settings.APP_ENV, "circuits": circuits}
