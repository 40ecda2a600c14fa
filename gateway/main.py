import os

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from gateway.config import settings
from gateway.database import SessionLocal, init_db
from gateway.logging_config import get_logger, setup_logging
from gateway.routers import message, sessions
from gateway.services.runtime import build_runtime

setup_logging(settings.log_level)
logger = get_logger("main")

app = FastAPI(
    title="Session Gateway",
    description="Routes chat participants between live chat, human handoff and the welcome prompt",
    version="0.1.0",
)

app.include_router(message.router)
app.include_router(sessions.router)

app.state.runtime = build_runtime(settings, SessionLocal)


def _is_background_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.sweeper_enabled


@app.on_event("startup")
async def start_background_jobs() -> None:
    runtime = app.state.runtime

    try:
        init_db()
        tracked = runtime.cache.reconcile(runtime.store.count_tracked())
    except SQLAlchemyError as exc:
        logger.error("Startup session count failed", extra={"context": {"error": str(exc)}})
        tracked = None

    logger.info(f"Found {tracked} tracked sessions on startup")
    if not _is_background_enabled():
        logger.info("Background jobs disabled")
        return
    # Unknown count: start anyway, the first cycle reconciles and stops if idle
    if tracked is None or tracked > 0:
        runtime.sweeper.start()
    runtime.retention.start()


@app.on_event("shutdown")
async def stop_background_jobs() -> None:
    runtime = app.state.runtime
    await runtime.sweeper.stop()
    await runtime.retention.stop()


@app.get("/health")
async def health():
    return {"status": "ok"}
