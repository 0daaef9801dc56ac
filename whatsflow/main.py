import asyncio
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from whatsflow.config import settings
from whatsflow.database import SessionLocal
from whatsflow.logging_config import get_logger, setup_logging
from whatsflow.routers import actions, batch, webhook
from whatsflow.services.action_response_service import process_expired_responses
from whatsflow.services.batch_service import process_message_batches
from whatsflow.services.pipeline_service import process_batch

setup_logging(settings.log_level)

app = FastAPI(
    title="Whatsflow API",
    description="WhatsApp RAG auto-replies with escalation and external actions",
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

app.include_router(webhook.router)
app.include_router(batch.router)
app.include_router(actions.router)

worker_logger = get_logger("batch_worker")
_batch_worker_task: asyncio.Task | None = None


def _is_batch_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.batch_worker_enabled


async def run_worker_tick() -> dict:
    """One worker pass: a batch sweep, then the action timeout sweep."""
    db = SessionLocal()
    try:
        sweep = await process_message_batches(db, process_batch)
        timeouts = await process_expired_responses(db)
    finally:
        db.close()
    return {**sweep.as_dict(), "timeouts": timeouts["processed"]}


async def _batch_worker_loop() -> None:
    while True:
        try:
            await asyncio.sleep(max(settings.batch_window_seconds, 1))
            results = await run_worker_tick()
            if results["batches"] or results["skipped"] or results["timeouts"]:
                worker_logger.info("Batch worker processed", extra={"context": results})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error(
                "Batch worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_batch_worker() -> None:
    global _batch_worker_task
    if not _is_batch_worker_enabled():
        return
    if _batch_worker_task is None or _batch_worker_task.done():
        _batch_worker_task = asyncio.create_task(_batch_worker_loop())
        worker_logger.info("Batch worker started")


@app.on_event("shutdown")
async def stop_batch_worker() -> None:
    global _batch_worker_task
    if _batch_worker_task is None:
        return
    _batch_worker_task.cancel()
    try:
        await _batch_worker_task
    except asyncio.CancelledError:
        pass
    _batch_worker_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}
