import asyncio
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.database import SessionLocal
from app.logging_config import get_logger, setup_logging
from app.routers import admin, message
from app.services.maintenance_service import run_maintenance

setup_logging()

app = FastAPI(
    title="Storebot API",
    description="Conversation and order-flow core for the store chatbot",
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

app.include_router(message.router)
app.include_router(admin.router)

maintenance_logger = get_logger("maintenance_worker")
_maintenance_task: asyncio.Task | None = None


def _is_maintenance_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.maintenance_worker_enabled


def _run_maintenance_once() -> dict:
    db = SessionLocal()
    try:
        return run_maintenance(db)
    finally:
        db.close()


async def _maintenance_loop() -> None:
    interval_seconds = max(settings.maintenance_interval_seconds, 1.0)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            await asyncio.to_thread(_run_maintenance_once)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            maintenance_logger.error(
                "Maintenance loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_maintenance_worker() -> None:
    global _maintenance_task
    if not _is_maintenance_worker_enabled():
        return
    if _maintenance_task is None or _maintenance_task.done():
        _maintenance_task = asyncio.create_task(_maintenance_loop())
        maintenance_logger.info("Maintenance worker started")


@app.on_event("shutdown")
async def stop_maintenance_worker() -> None:
    global _maintenance_task
    if _maintenance_task is None:
        return
    _maintenance_task.cancel()
    try:
        await _maintenance_task
    except asyncio.CancelledError:
        pass
    _maintenance_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}
