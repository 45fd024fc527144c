# eotracker/main.py
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import Settings, setup_logging
from .fetcher import build_fetcher
from .scheduler import DocumentScheduler
from .store import PostgresDocumentStore, build_store

log = logging.getLogger(__name__)


class CronStatus(BaseModel):
    isRunning: bool
    lastRunTime: Optional[str] = None
    errorCount: int
    checkInterval: int


class CronResponse(BaseModel):
    success: bool
    message: str
    timestamp: str
    status: CronStatus


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_scheduler(settings: Settings) -> DocumentScheduler:
    """Composition root: one fetcher, one store, one scheduler per process."""
    return DocumentScheduler(build_fetcher(settings), build_store(settings), settings)


async def _require_cron(request: Request):
    secret = request.app.state.settings.cron_secret
    if not secret:
        return
    if request.headers.get("X-Cron-Secret", "") != secret:
        raise HTTPException(status_code=401, detail="Unauthorized")


def create_app(settings: Optional[Settings] = None, scheduler: Optional[DocumentScheduler] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)

    app = FastAPI(title="Executive Order Ingestion API", version="0.1.0")
    app.state.settings = settings
    app.state.scheduler = scheduler
    app.state.background = set()

    @app.on_event("startup")
    async def _startup():
        if app.state.scheduler is None:
            app.state.scheduler = build_scheduler(settings)
            store = app.state.scheduler.store
            if isinstance(store, PostgresDocumentStore):
                await store.ensure_schema()

    @app.on_event("shutdown")
    async def _shutdown():
        sched = app.state.scheduler
        if app.state.background:
            await asyncio.wait(set(app.state.background), timeout=settings.fetch_timeout_seconds)
        if sched is not None:
            sched.stop()
            await sched.store.close()

    @app.get("/health")
    async def health(request: Request):
        out = {"ok": True, "time": _now_iso()}
        sched = request.app.state.scheduler
        if sched is not None and isinstance(sched.store, PostgresDocumentStore):
            out["db"] = await sched.store.pool.health_check()
        return out

    @app.get("/api/cron/status")
    async def cron_status(request: Request):
        st = request.app.state.scheduler.status()
        return {
            "state": st.state.value,
            "lastError": st.last_error,
            "lastResult": st.last_result,
            **st.to_api(),
        }

    @app.post("/api/cron", response_model=CronResponse, dependencies=[Depends(_require_cron)])
    async def cron(request: Request):
        sched: DocumentScheduler = request.app.state.scheduler
        try:
            background = request.app.state.background
            if sched.is_running and any(not t.done() for t in background):
                # one queued check already covers this trigger
                message = "Manual check already pending"
                log.info("[cron] manual check already pending; trigger folded")
            elif sched.is_running:
                task = asyncio.create_task(sched.manual_check())
                background.add(task)
                task.add_done_callback(background.discard)
                message = "Manual check triggered"
                log.info("[cron] manual check triggered")
            else:
                await sched.start(wait=False)
                message = "Scheduler started"
                log.info("[cron] scheduler started")

            return {
                "success": True,
                "message": message,
                "timestamp": _now_iso(),
                "status": sched.status().to_api(),
            }
        except Exception as e:
            log.error("[cron] error executing cron job: %s", e, exc_info=True)
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "error": "Failed to execute cron job",
                    "details": f"{type(e).__name__}: {e}",
                    "timestamp": _now_iso(),
                },
            )

    return app


app = create_app()
