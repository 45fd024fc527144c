# eotracker/scheduler.py
from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import Settings
from .fetcher import Fetcher
from .pipeline import IngestResult, run_ingestion
from .store import DocumentStore

log = logging.getLogger(__name__)

IngestFn = Callable[[Fetcher, DocumentStore, Settings], Awaitable[IngestResult]]

# listing depth for the one-off backfill into an empty store
SEED_MAX_PAGES = 50


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class SchedulerStatus:
    state: SchedulerState
    is_running: bool
    last_run_time: Optional[datetime]
    error_count: int
    check_interval: int
    last_error: Optional[str] = None
    last_result: Optional[Dict[str, Any]] = None

    def to_api(self) -> Dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "lastRunTime": self.last_run_time.isoformat() if self.last_run_time else None,
            "errorCount": self.error_count,
            "checkInterval": self.check_interval,
        }


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class DocumentScheduler:
    """
    Periodic driver for the ingestion pipeline.

    Cycles never overlap: the timer and manual_check() share one lock.
    After `max_consecutive_failures` failed cycles in a row the scheduler
    stops itself; only start() re-arms it.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        store: DocumentStore,
        settings: Settings,
        *,
        ingest: IngestFn = run_ingestion,
        interval_seconds: Optional[float] = None,
    ):
        self.fetcher = fetcher
        self.store = store
        self.settings = settings
        self.ingest = ingest
        self.interval_minutes = settings.interval_minutes
        self.interval_seconds = interval_seconds if interval_seconds is not None else settings.interval_minutes * 60
        self.max_consecutive_failures = settings.max_consecutive_failures

        self.state = SchedulerState.STOPPED
        self.last_check_time: Optional[datetime] = None
        self.last_result: Optional[IngestResult] = None
        self.last_error: Optional[str] = None
        self.consecutive_failures = 0
        self.cycles = 0

        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._generation = 0
        self._sleeping = False

    @property
    def is_running(self) -> bool:
        return self.state is SchedulerState.RUNNING

    # -----------------------
    # lifecycle
    # -----------------------

    async def start(self, *, wait: bool = True) -> None:
        """
        Go RUNNING, run one check right away (a backfill instead when the
        store is empty), then re-check every interval. With wait=False the
        call returns as soon as the scheduler is armed.
        """
        if self.is_running:
            log.warning("[scheduler] already running")
            return
        self.state = SchedulerState.RUNNING
        self.consecutive_failures = 0
        self._generation += 1
        first_cycle = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._generation, first_cycle), name="eotracker-scheduler")
        log.info("[scheduler] started with %s minute interval", self.interval_minutes)
        if wait:
            await first_cycle.wait()

    def stop(self) -> None:
        """Disarm the timer. An in-flight cycle is left to finish."""
        task, self._task = self._task, None
        if task is not None and self._sleeping and task is not _current_task() and not task.done():
            task.cancel()
        if self.is_running:
            log.info("[scheduler] stopped")
        self.state = SchedulerState.IDLE

    def _active(self, generation: int) -> bool:
        return self.is_running and generation == self._generation

    async def _run(self, generation: int, first_cycle: asyncio.Event) -> None:
        try:
            seeded = await self.initialize_historical_data()
            if not seeded and self._active(generation):
                await self.check_new_documents()
        finally:
            first_cycle.set()

        while self._active(generation):
            self._sleeping = True
            try:
                await asyncio.sleep(self.interval_seconds)
            finally:
                self._sleeping = False
            if not self._active(generation):
                return
            await self.check_new_documents()

    # -----------------------
    # cycles
    # -----------------------

    async def initialize_historical_data(self) -> bool:
        """Backfill the whole floor window when the store is empty. True if a backfill ran."""
        try:
            existing = await self.store.count()
        except Exception as e:
            log.error("[scheduler] could not count stored documents: %s: %s", type(e).__name__, e)
            return False
        if existing > 0:
            log.info("[scheduler] store already holds %d documents; skipping backfill", existing)
            return False

        log.info("[scheduler] empty store; backfilling from %s", self.settings.floor_date.isoformat())
        seed_settings = dataclasses.replace(self.settings, max_pages=max(self.settings.max_pages, SEED_MAX_PAGES))
        await self._run_cycle(seed_settings)
        return True

    async def manual_check(self, *, raise_errors: bool = False) -> Optional[IngestResult]:
        """One out-of-band cycle; the timer is left as it is."""
        return await self.check_new_documents(raise_errors=raise_errors)

    async def check_new_documents(self, *, raise_errors: bool = False) -> Optional[IngestResult]:
        return await self._run_cycle(self.settings, raise_errors=raise_errors)

    async def _run_cycle(self, settings: Settings, *, raise_errors: bool = False) -> Optional[IngestResult]:
        async with self._lock:
            last = self.last_check_time.isoformat() if self.last_check_time else "N/A"
            log.info("[scheduler] starting document check; last check: %s", last)
            self.cycles += 1
            try:
                result = await self.ingest(self.fetcher, self.store, settings)
            except Exception as e:
                self.consecutive_failures += 1
                self.last_error = f"{type(e).__name__}: {e}"
                log.error(
                    "[scheduler] document check failed (%d/%d consecutive): %s",
                    self.consecutive_failures, self.max_consecutive_failures, self.last_error,
                    exc_info=True,
                )
                if self.consecutive_failures >= self.max_consecutive_failures and self.is_running:
                    log.error("[scheduler] too many consecutive failures; stopping scheduler")
                    self.stop()
                if raise_errors:
                    raise
                return None

            self.consecutive_failures = 0
            self.last_error = None
            self.last_check_time = datetime.now(timezone.utc)
            self.last_result = result
            if result.inserted:
                log.info("[scheduler] added %d new documents", result.inserted)
            else:
                log.info("[scheduler] no new documents found")
            return result

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            state=self.state,
            is_running=self.is_running,
            last_run_time=self.last_check_time,
            error_count=self.consecutive_failures,
            check_interval=self.interval_minutes,
            last_error=self.last_error,
            last_result=self.last_result.to_dict() if self.last_result else None,
        )
