import asyncio
import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.config import settings
from app.database import Base, engine, get_db
from app.logging_config import get_logger, setup_logging
from app.routers import analysis, analytics, complaints, line_webhook
from app.services.enrichment_service import get_orchestrator
from app.services.session_service import get_session_manager

setup_logging(settings.log_level, json_output=not settings.debug)

app = FastAPI(
    title="Complaint Bot API",
    description="LINE complaint chat-bot with AI complaint analysis",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(line_webhook.router)
app.include_router(complaints.router)
app.include_router(analysis.router)
app.include_router(analytics.router)

worker_logger = get_logger("maintenance_worker")
_worker_task: asyncio.Task | None = None


def _is_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.worker_enabled


async def _maintenance_worker_loop() -> None:
    """Close idle sessions whose timers were lost and, optionally, catch up on analysis."""
    interval_seconds = max(settings.worker_interval_seconds, 1.0)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            closed = await get_session_manager().sweep_expired_sessions()
            results = {"timed_out": closed}
            if settings.auto_catch_up_enabled:
                outcome = await get_orchestrator().catch_up(limit=settings.auto_catch_up_limit)
                results["analyzed"] = len(outcome["processed"])
                results["analysis_errors"] = len(outcome["errors"])
            if any(results.values()):
                worker_logger.info("Maintenance worker processed", extra={"context": results})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error(
                "Maintenance worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def startup() -> None:
    global _worker_task
    Base.metadata.create_all(bind=engine)
    if not _is_worker_enabled():
        return
    if _worker_task is None or _worker_task.done():
        _worker_task = asyncio.create_task(_maintenance_worker_loop())
        worker_logger.info("Maintenance worker started")


@app.on_event("shutdown")
async def shutdown() -> None:
    global _worker_task
    if _worker_task is not None:
        _worker_task.cancel()
        try:
            await _worker_task
        except asyncio.CancelledError:
            pass
        _worker_task = None

    get_session_manager().timers.cancel_all()
    await get_orchestrator().drain()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}
