from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from config.settings import settings
from core.errors import CapacityError, ConflictError, NotFoundError
from core.models import JobStatus, TaskResult
from crawler.base import Extractor, RecordStore
from crawler.job import CrawlJob, JobConfig
from crawler.registry import build_extractor
from crawler.session import BrowserSession, load_auth_state

log = logging.getLogger(__name__)

BroadcastFn = Callable[[dict], Awaitable[None]]


@dataclass
class _Handle:
    job: CrawlJob
    task: asyncio.Task | None = None


class JobExclusivityManager:
    """At most one running crawl per target and at most N overall.

    All slot bookkeeping lives in this instance and is serialised by one lock.
    Slots exist only in process memory; the durable task table mirrors job
    status for observability. After a crash the two can disagree, which is
    what ``force_reset`` plus ``CrawlStore.fail_orphaned_running`` repair.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        max_concurrent: int | None = None,
        extractor_factory: Callable[[str], Extractor] = build_extractor,
        session_factory: Callable[[], BrowserSession] | None = None,
        job_kwargs: dict | None = None,
        broadcast_fn: BroadcastFn | None = None,
        history_limit: int | None = None,
    ) -> None:
        self._store = store
        self._max_concurrent = max_concurrent or settings.MAX_CONCURRENT_JOBS
        self._extractor_factory = extractor_factory
        self._session_factory = session_factory
        self._job_kwargs = job_kwargs or {}
        self._broadcast = broadcast_fn
        self._history_limit = history_limit or settings.JOB_HISTORY_LIMIT

        self._lock = asyncio.Lock()
        self._slots: dict[str, _Handle] = {}  # target_id -> running job
        self._jobs: dict[str, _Handle] = {}  # job_id -> running job
        self._orphans: dict[str, _Handle] = {}  # job_id -> running job detached by force_reset
        self._finished: OrderedDict[str, CrawlJob] = OrderedDict()

    # ── job control ──────────────────────────────────────────────────

    async def submit(self, target_id: str, config: JobConfig | None = None) -> str:
        """Start a crawl of ``target_id`` and return its job id.

        Raises ConflictError if the target is already being crawled and
        CapacityError when the concurrency limit is reached.
        """
        config = config or JobConfig()
        extractor = self._extractor_factory(config.site)

        async with self._lock:
            existing = self._slots.get(target_id)
            if existing is not None:
                raise ConflictError(target_id, existing.job.job_id)
            if len(self._jobs) >= self._max_concurrent:
                raise CapacityError(self._max_concurrent)

            job_id = await self._store.create_task(target_id, config.site, config.to_dict())
            job = CrawlJob(
                job_id,
                target_id,
                config,
                store=self._store,
                extractor=extractor,
                session_factory=self._session_factory or self._default_session_factory,
                **self._job_kwargs,
            )
            handle = _Handle(job=job)
            self._slots[target_id] = handle
            self._jobs[job_id] = handle
            handle.task = asyncio.create_task(self._run(handle), name=f"crawl-{job_id}")

        log.info("Submitted crawl %s for %s (%d running)", job_id, target_id, len(self._jobs))
        await self._emit({"event": "job_started", "job_id": job_id, "target_id": target_id})
        return job_id

    async def cancel(self, job_id: str) -> None:
        async with self._lock:
            handle = self._live(job_id)
            if handle is None:
                raise NotFoundError(job_id)
            handle.job.cancel()
        log.info("Cancellation requested for crawl %s", job_id)

    def status(self, job_id: str) -> JobStatus:
        """Current counters and state of a running or recently finished job.

        Reads a snapshot without taking the lock.
        """
        handle = self._live(job_id)
        if handle is not None:
            return handle.job.snapshot()
        job = self._finished.get(job_id)
        if job is not None:
            return job.snapshot()
        raise NotFoundError(job_id)

    def result(self, job_id: str) -> TaskResult | None:
        job = self._finished.get(job_id)
        return job.result if job else None

    async def wait(self, job_id: str) -> TaskResult:
        handle = self._live(job_id)
        if handle is not None and handle.task is not None:
            return await asyncio.shield(handle.task)
        result = self.result(job_id)
        if result is None:
            raise NotFoundError(job_id)
        return result

    def list_active(self) -> list[JobStatus]:
        return [h.job.snapshot() for h in list(self._jobs.values())]

    def is_target_busy(self, target_id: str) -> bool:
        return target_id in self._slots

    async def force_reset(self) -> list[str]:
        """Drop every in-memory slot unconditionally.

        Recovery only. Jobs that are somehow still alive keep running to
        completion but no longer hold their target or count towards capacity;
        they stay reachable by ``cancel``, ``wait`` and ``shutdown``. Callers
        must reconcile durable state afterwards
        (``CrawlStore.fail_orphaned_running``).
        """
        async with self._lock:
            cleared = list(self._jobs)
            self._orphans.update(self._jobs)
            self._slots.clear()
            self._jobs.clear()
        log.warning("Force reset cleared %d slot(s): %s", len(cleared), cleared)
        return cleared

    async def shutdown(self) -> None:
        """Cancel all running jobs and wait for them to release their sessions."""
        async with self._lock:
            handles = list(self._jobs.values()) + list(self._orphans.values())
        for h in handles:
            h.job.cancel()
        tasks = [h.task for h in handles if h.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── internals ────────────────────────────────────────────────────

    def _live(self, job_id: str) -> _Handle | None:
        return self._jobs.get(job_id) or self._orphans.get(job_id)

    @staticmethod
    def _default_session_factory() -> BrowserSession:
        return BrowserSession.from_settings(auth_state=load_auth_state())

    async def _run(self, handle: _Handle) -> TaskResult:
        job = handle.job
        try:
            return await job.run()
        finally:
            async with self._lock:
                # identity checks: after a force reset a new job may own the target
                if self._slots.get(job.target_id) is handle:
                    del self._slots[job.target_id]
                if self._jobs.get(job.job_id) is handle:
                    del self._jobs[job.job_id]
                if self._orphans.get(job.job_id) is handle:
                    del self._orphans[job.job_id]
                self._finished[job.job_id] = job
                while len(self._finished) > self._history_limit:
                    self._finished.popitem(last=False)
            result = job.result
            await self._emit(
                {
                    "event": "job_finished",
                    "job_id": job.job_id,
                    "target_id": job.target_id,
                    "end_reason": result.end_reason.value if result else "ERROR",
                    "new": result.new_count if result else 0,
                }
            )

    async def _emit(self, event: dict) -> None:
        if self._broadcast is None:
            return
        try:
            await self._broadcast(event)
        except Exception as e:
            log.debug("Broadcast failed: %s", e)
