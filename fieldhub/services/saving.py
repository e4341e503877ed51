"""
Diagram save coordinator.

One pending SaveRequest per job (latest wins). Non-high requests wait out a debounce
window that restarts on every edit; high requests are processed at once. Actual writes
for one job are serialized by a per-job lock and spaced by a minimum interval; a write
that comes too soon is rescheduled, never dropped. A failed write leaves the request
pending until the next edit or flush.
"""
import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set

import structlog
from pydantic import BaseModel, Field

from ..config import settings
from ..schemas.diagram import DiagramGraph, SavePriority, SaveRequest

logger = structlog.get_logger(__name__)

PersistFn = Callable[[str, DiagramGraph], Awaitable[None]]


class PendingSave(BaseModel):
    job_id: str
    priority: SavePriority
    reason: str
    timestamp: datetime


class SaveStatus(BaseModel):
    pending: List[PendingSave] = Field(default_factory=list)
    in_flight: List[str] = Field(default_factory=list)
    last_saved: Dict[str, datetime] = Field(default_factory=dict)
    failures: Dict[str, str] = Field(default_factory=dict)


class SaveCoordinator:
    def __init__(
        self,
        persist: PersistFn,
        batch_delay: Optional[float] = None,
        min_interval: Optional[float] = None,
    ):
        self._persist = persist
        self.batch_delay = settings.save_batch_delay_s if batch_delay is None else batch_delay
        self.min_interval = settings.save_min_interval_s if min_interval is None else min_interval

        self._pending: Dict[str, SaveRequest] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._urgent: Set[str] = set()
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._last_write: Dict[str, float] = {}
        self._last_saved: Dict[str, datetime] = {}
        self._failures: Dict[str, str] = {}
        self._in_flight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    def request_save(
        self,
        job_id: str,
        graph: DiagramGraph,
        reason: str,
        priority: SavePriority = SavePriority.medium,
    ) -> SaveRequest:
        request = SaveRequest(job_id=job_id, graph=graph.snapshot(), priority=priority, reason=reason)
        replaced = job_id in self._pending
        self._pending[job_id] = request
        logger.debug("save_requested", job_id=job_id, reason=reason, priority=priority.value, replaced=replaced)

        if priority == SavePriority.high:
            self._schedule(job_id, 0, urgent=True)
        elif job_id not in self._urgent:
            self._schedule(job_id, self.batch_delay)
        return request

    def pending_graph(self, job_id: str) -> Optional[DiagramGraph]:
        request = self._pending.get(job_id)
        return request.graph.snapshot() if request else None

    async def flush(self, job_id: Optional[str] = None) -> None:
        """Write pending requests now, ignoring the debounce window and throttle."""
        job_ids = [job_id] if job_id else list(self._pending)
        for jid in job_ids:
            self._cancel_timer(jid)
        await asyncio.gather(*(self._process(jid, force=True) for jid in job_ids))

    def clear(self, job_id: Optional[str] = None) -> None:
        """Drop pending requests without writing them."""
        job_ids = [job_id] if job_id else list(self._pending)
        for jid in job_ids:
            self._cancel_timer(jid)
            if self._pending.pop(jid, None) is not None:
                logger.info("save_dropped", job_id=jid)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for jid in list(self._timers):
            self._cancel_timer(jid)
        await self.wait_idle()

    def get_status(self) -> SaveStatus:
        return SaveStatus(
            pending=[
                PendingSave(job_id=r.job_id, priority=r.priority, reason=r.reason, timestamp=r.timestamp)
                for r in self._pending.values()
            ],
            in_flight=sorted(self._in_flight),
            last_saved=dict(self._last_saved),
            failures=dict(self._failures),
        )

    # ---------- internals ----------
    def _schedule(self, job_id: str, delay: float, urgent: bool = False) -> None:
        self._cancel_timer(job_id)
        loop = asyncio.get_running_loop()
        self._timers[job_id] = loop.call_later(max(delay, 0), self._fire, job_id)
        if urgent:
            self._urgent.add(job_id)

    def _cancel_timer(self, job_id: str) -> None:
        timer = self._timers.pop(job_id, None)
        if timer is not None:
            timer.cancel()
        self._urgent.discard(job_id)

    def _fire(self, job_id: str) -> None:
        self._timers.pop(job_id, None)
        self._urgent.discard(job_id)
        task = asyncio.get_running_loop().create_task(self._process(job_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _process(self, job_id: str, force: bool = False) -> None:
        loop = asyncio.get_running_loop()
        async with self._locks[job_id]:
            request = self._pending.get(job_id)
            if request is None:
                return

            last = self._last_write.get(job_id)
            if not force and last is not None:
                elapsed = loop.time() - last
                if elapsed < self.min_interval:
                    wait = self.min_interval - elapsed
                    logger.info("save_throttled", job_id=job_id, retry_in=round(wait, 3))
                    if job_id not in self._timers:
                        self._schedule(job_id, wait, urgent=True)
                    return

            del self._pending[job_id]
            self._in_flight.add(job_id)
            try:
                await self._persist(job_id, request.graph)
            except Exception as e:
                # a newer request queued meanwhile wins over the failed one
                self._pending.setdefault(job_id, request)
                self._failures[job_id] = str(e) or type(e).__name__
                logger.error("save_failed", job_id=job_id, reason=request.reason, error=repr(e))
            else:
                self._last_write[job_id] = loop.time()
                self._last_saved[job_id] = datetime.utcnow()
                self._failures.pop(job_id, None)
                logger.info("save_written", job_id=job_id, reason=request.reason, priority=request.priority.value)
            finally:
                self._in_flight.discard(job_id)
