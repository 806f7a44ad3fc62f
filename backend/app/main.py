from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import asyncio
import logging
import os

from app.api.prepare_routes import router as prepare_router
from app.api.ws_prepare import router as prepare_ws_router
from app.prepare.gateway import get_gateway
from app.system_metrics import get_metrics_snapshot
from core.config import (
    PREPARE_STORE,
    QA_MODE,
    SESSION_CLEANUP_INTERVAL_SEC,
    SESSION_CLEANUP_TTL_SEC,
    SESSION_IDLE_TTL_SEC,
    STT_PROVIDER,
)

app = FastAPI(title="Interview Prepare – Live Coaching")
logger = logging.getLogger("app.main")


def _get_allowed_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if not raw:
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [item.strip() for item in raw.split(",") if item.strip()]


_allowed_origins = _get_allowed_origins()

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=False,
)

app.include_router(prepare_router)
app.include_router(prepare_ws_router)

_session_cleanup_task: asyncio.Task | None = None


@app.on_event("startup")
async def startup_banner():
    global _session_cleanup_task
    if QA_MODE:
        logger.info("[SYSTEM] QA_MODE ENABLED")
    logger.info("[SYSTEM] CORS allow_origins=%s", _allowed_origins)
    logger.info("[SYSTEM] prepare store=%s stt_provider=%s", PREPARE_STORE, STT_PROVIDER)

    async def _session_cleanup_loop():
        while True:
            await asyncio.sleep(SESSION_CLEANUP_INTERVAL_SEC)
            removed = get_gateway().cleanup(SESSION_CLEANUP_TTL_SEC, idle_ttl_sec=SESSION_IDLE_TTL_SEC)
            if any(removed.values()):
                logger.info(
                    "[SYSTEM] cleanup runtimes=%s voice_buffers=%s outboxes=%s",
                    removed["runtimes_removed"],
                    removed["voice_buffers_expired"],
                    removed["outboxes_released"],
                )

    _session_cleanup_task = asyncio.create_task(_session_cleanup_loop())


@app.on_event("shutdown")
async def shutdown_handler():
    global _session_cleanup_task
    if _session_cleanup_task is not None:
        _session_cleanup_task.cancel()
        try:
            await _session_cleanup_task
        except asyncio.CancelledError:
            pass
        finally:
            _session_cleanup_task = None
    await get_gateway().close()
    logger.info("[SYSTEM] shutdown complete")


@app.get("/health")
async def health():
    return {"status": "ok", "service": "prepare"}


@app.get("/metrics")
async def metrics():
    return get_metrics_snapshot({"sessions_tracked": get_gateway().engine.registry.active_count()})
