from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field

from config.settings import settings
from core.errors import (
    CrawlerError,
    ExtractionError,
    PersistenceError,
    SessionError,
    SessionErrorKind,
)
from core.models import (
    Classification,
    EndReason,
    ErrorDetail,
    JobStatus,
    Record,
    RunState,
    TaskResult,
    now_ms,
)
from core.retry import async_retrying
from crawler.base import Extractor, RecordStore
from crawler.dedup import DedupLedger
from crawler.registry import DEFAULT_SITE
from crawler.scroll import ScrollDriver
from crawler.session import BrowserSession
from crawler.termination import CycleTally, TerminationPolicy

log = logging.getLogger(__name__)

_PERSIST_ATTEMPTS = 2


@dataclass
class JobConfig:
    """Per-run knobs. Defaults come from settings; callers override per submit."""

    site: str = DEFAULT_SITE
    max_records: int = field(default_factory=lambda: settings.CRAWL_MAX_RECORDS)
    duplicate_stop_threshold: int = field(
        default_factory=lambda: settings.CRAWL_DUPLICATE_STOP_THRESHOLD
    )
    settle_delay: float = field(default_factory=lambda: settings.CRAWL_SETTLE_DELAY_SECONDS)
    settle_jitter: float = field(default_factory=lambda: settings.CRAWL_SETTLE_JITTER_SECONDS)
    timeout: float = field(default_factory=lambda: settings.CRAWL_TASK_TIMEOUT_SECONDS)
    extraction_error_limit: int = field(
        default_factory=lambda: settings.CRAWL_EXTRACTION_ERROR_LIMIT
    )
    persistence_outage_limit: int = field(
        default_factory=lambda: settings.CRAWL_PERSISTENCE_OUTAGE_LIMIT
    )
    persist_retry_delay: float = field(
        default_factory=lambda: settings.CRAWL_PERSIST_RETRY_DELAY_SECONDS
    )

    def __post_init__(self) -> None:
        if self.max_records < 1:
            raise ValueError("max_records must be at least 1")
        if self.duplicate_stop_threshold < 1:
            raise ValueError("duplicate_stop_threshold must be at least 1")

    def to_dict(self) -> dict:
        return asdict(self)


class CrawlJob:
    """One run of the scroll/extract/classify/persist loop against one target.

    ``run()`` always returns a TaskResult; errors are folded into an ERROR
    result and the browser session is released on every path.
    """

    def __init__(
        self,
        job_id: str,
        target_id: str,
        config: JobConfig,
        *,
        store: RecordStore,
        extractor: Extractor,
        session_factory: Callable[[], BrowserSession] = BrowserSession.from_settings,
        scroll_factory: Callable[..., ScrollDriver] = ScrollDriver.from_settings,
        policy: TerminationPolicy | None = None,
    ) -> None:
        self.job_id = job_id
        self.target_id = target_id
        self.config = config
        self.state = RunState(
            target_id=target_id,
            max_records=config.max_records,
            duplicate_stop_threshold=config.duplicate_stop_threshold,
        )
        self._store = store
        self._extractor = extractor
        self._session_factory = session_factory
        self._scroll_factory = scroll_factory
        self._policy = policy or TerminationPolicy.from_settings()
        self._ledger = DedupLedger(
            target_id, store, self.state.processed_ids, self.state.persisted_ids
        )
        self._cancel = asyncio.Event()
        self.started_at_ms = now_ms()
        self.result: TaskResult | None = None

    # ── control ──────────────────────────────────────────────────────

    def cancel(self) -> None:
        """Ask the job to stop; observed at the top of the next cycle."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def snapshot(self) -> JobStatus:
        state = self.state.end_reason.value if self.state.end_reason else "RUNNING"
        return JobStatus(
            job_id=self.job_id,
            target_id=self.target_id,
            site=self.config.site,
            state=state,
            counters=self.state.counters(),
            started_at_ms=self.started_at_ms,
            result=self.result,
        )

    # ── run ──────────────────────────────────────────────────────────

    async def run(self) -> TaskResult:
        if self.result is not None:
            return self.result

        t0 = time.monotonic()
        error: ErrorDetail | None = None
        log.info(
            "Starting crawl %s of %s (%s, max_records=%d, duplicate_stop=%d)",
            self.job_id,
            self.target_id,
            self.config.site,
            self.config.max_records,
            self.config.duplicate_stop_threshold,
        )
        await self._mirror("mark_running", self.job_id)

        try:
            await asyncio.wait_for(self._crawl(), timeout=self.config.timeout)
        except asyncio.TimeoutError:
            TerminationPolicy.finish(self.state, EndReason.TIMEOUT)
            error = ErrorDetail(
                code="TASK_TIMEOUT",
                message=f"Crawl exceeded {self.config.timeout:.0f}s and was stopped",
            )
        except CrawlerError as e:
            log.error("Crawl %s of %s failed: %s", self.job_id, self.target_id, e)
            TerminationPolicy.finish(self.state, EndReason.ERROR)
            error = ErrorDetail(code=e.code, message=str(e))
        except Exception as e:
            log.exception("Crawl %s of %s crashed", self.job_id, self.target_id)
            TerminationPolicy.finish(self.state, EndReason.ERROR)
            error = ErrorDetail(code="EXECUTION_ERROR", message=str(e) or type(e).__name__)

        reason = self.state.end_reason or TerminationPolicy.finish(self.state, EndReason.ERROR)
        if reason is EndReason.CANCELLED and error is None:
            error = ErrorDetail(code="CANCELLED", message="Crawl was cancelled")

        # never report zero: callers rely on a positive duration
        elapsed_ms = max(1, int((time.monotonic() - t0) * 1000))
        self.result = self._build_result(reason, elapsed_ms, error)

        if self.result.success:
            await self._mirror("mark_completed", self.job_id, self.result)
        else:
            await self._mirror("mark_failed", self.job_id, self.result)

        log.info(
            "Finished crawl %s | %s | %d new, %d persisted dup, %d task dup, %d skipped | %d scrolls | %.1fs",
            self.job_id,
            reason.value,
            self.state.new_count,
            self.state.persisted_duplicate_count,
            self.state.task_local_duplicate_count,
            self.state.skipped_count,
            self.state.scroll_attempts,
            elapsed_ms / 1000,
        )
        return self.result

    async def _crawl(self) -> None:
        session = self._session_factory()
        try:
            page = await session.open()
            await session.navigate(self._extractor.target_url(self.target_id))
            await session.wait_until_interactive(self._extractor)
            scroller = self._scroll_factory(page, self._extractor.load_more_selector)

            while True:
                if self.cancelled:
                    TerminationPolicy.finish(self.state, EndReason.CANCELLED)
                    return

                await self._run_cycle(session, page)

                reason = self._policy.evaluate(self.state, cancelled=self.cancelled)
                if reason is not None:
                    TerminationPolicy.finish(self.state, reason)
                    return

                report = await scroller.advance()
                self._policy.apply_scroll(self.state, report)
                await self._settle()
        finally:
            await session.close()

    async def _run_cycle(self, session: BrowserSession, page) -> None:
        state = self.state
        tally = CycleTally()
        try:
            records = await self._extractor.read(page, self.target_id)
        except ExtractionError as e:
            state.consecutive_extraction_errors += 1
            log.warning(
                "Extraction failed (%d/%d): %s",
                state.consecutive_extraction_errors,
                self.config.extraction_error_limit,
                e,
            )
            if not await session.is_alive():
                raise SessionError(
                    SessionErrorKind.UNAVAILABLE, "Browser became unhealthy during extraction"
                ) from e
            if state.consecutive_extraction_errors >= self.config.extraction_error_limit:
                raise
            self._policy.apply_cycle(state, tally)
            return
        state.consecutive_extraction_errors = 0

        storage_ops = storage_failures = stored = 0
        for record in records:
            if state.new_count >= state.max_records:
                break

            seen = record.id in self._ledger
            if not seen and self._extractor.is_excluded(record):
                state.processed_ids.add(record.id)
                tally.skipped += 1
                continue

            try:
                classification = await self._ledger.classify(record)
            except PersistenceError as e:
                # outage bookkeeping only: the record is looked up again on its next sighting
                storage_ops += 1
                storage_failures += 1
                log.warning("Duplicate lookup failed for %s: %s", record.id, e)
                continue
            if not seen:
                storage_ops += 1
            if classification is not Classification.NEW:
                tally.add(classification)
                continue

            outcome = await self._persist(record)
            if outcome is None:
                storage_failures += 1
                # still new content: counts as progress, not as a stored record
                tally.new += 1
                tally.skipped += 1
            elif outcome:
                tally.add(Classification.NEW)
                state.new_count += 1
                stored += 1
            else:
                self._ledger.mark_persisted(record.id)
                tally.add(Classification.PERSISTED)

        if storage_ops and storage_failures == storage_ops:
            state.consecutive_persistence_outages += 1
            log.error(
                "Storage unavailable for every record this cycle (%d/%d)",
                state.consecutive_persistence_outages,
                self.config.persistence_outage_limit,
            )
            if state.consecutive_persistence_outages >= self.config.persistence_outage_limit:
                raise PersistenceError("Storage outage persisted past the retry budget")
        elif storage_ops:
            state.consecutive_persistence_outages = 0

        self._policy.apply_cycle(state, tally)
        if stored:
            await self._mirror("update_record_count", self.job_id, state.new_count)

        log.info(
            "Cycle %d: %d read | %d new, %d persisted dup, %d task dup, %d skipped | total new %d/%d",
            state.cycles,
            len(records),
            stored,
            tally.persisted,
            tally.task_local,
            tally.skipped,
            state.new_count,
            state.max_records,
        )

    async def _persist(self, record: Record) -> bool | None:
        """Store a NEW record. True stored, False already present, None failed."""
        try:
            return await async_retrying(
                PersistenceError,
                attempts=_PERSIST_ATTEMPTS,
                initial_delay=self.config.persist_retry_delay,
                logger=log,
            )(self._store.upsert, record, self.job_id)
        except PersistenceError as e:
            log.warning("Could not store %s after %d attempts: %s", record.id, _PERSIST_ATTEMPTS, e)
            return None

    async def _settle(self) -> None:
        delay = self.config.settle_delay
        if self.config.settle_jitter > 0:
            delay += random.uniform(0, self.config.settle_jitter)
        if delay <= 0:
            return
        try:
            # wakes early on cancel; the flag itself is checked at the next cycle
            await asyncio.wait_for(self._cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _mirror(self, method: str, *args) -> None:
        """Mirror status to durable storage; failures are logged, never fatal."""
        try:
            await getattr(self._store, method)(*args)
        except Exception as e:
            log.warning("Could not mirror %s for task %s: %s", method, self.job_id, e)

    def _build_result(
        self, reason: EndReason, elapsed_ms: int, error: ErrorDetail | None
    ) -> TaskResult:
        s = self.state
        if reason.success:
            message = f"Crawl finished ({reason.value}): {s.new_count} new record(s)"
        else:
            detail = f": {error.message}" if error else ""
            message = f"Crawl stopped ({reason.value}){detail}"
        return TaskResult(
            job_id=self.job_id,
            target_id=self.target_id,
            success=reason.success,
            end_reason=reason,
            message=message,
            new_count=s.new_count,
            task_local_duplicate_count=s.task_local_duplicate_count,
            persisted_duplicate_count=s.persisted_duplicate_count,
            skipped_count=s.skipped_count,
            scroll_attempts=s.scroll_attempts,
            execution_time_ms=elapsed_ms,
            error=error,
        )
