from __future__ import annotations

import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config.settings import settings, split_csv
from core.errors import ExclusivityError
from crawler.job import JobConfig
from crawler.manager import JobExclusivityManager
from crawler.registry import DEFAULT_SITE

log = logging.getLogger(__name__)


def parse_scheduled_targets(value: str) -> list[tuple[str, str]]:
    """Parse "site:target,target2" into (site, target) pairs.

    Entries without a site prefix use the default site.
    """
    pairs = []
    for entry in split_csv(value):
        site, sep, target = entry.partition(":")
        if not sep:
            site, target = DEFAULT_SITE, entry
        if target:
            pairs.append((site.strip(), target.strip()))
    return pairs


class CrawlScheduler:
    """Periodically submits the configured targets to the job manager."""

    def __init__(
        self,
        manager: JobExclusivityManager,
        *,
        targets: list[tuple[str, str]] | None = None,
        interval_minutes: int | None = None,
    ) -> None:
        self._manager = manager
        self._scheduler = AsyncIOScheduler()
        self._targets = (
            targets if targets is not None else parse_scheduled_targets(settings.SCHEDULED_TARGETS)
        )
        self._interval = (
            interval_minutes if interval_minutes is not None else settings.SCHEDULE_INTERVAL_MINUTES
        )

    @property
    def enabled(self) -> bool:
        return bool(self._targets) and self._interval > 0

    def start(self) -> None:
        if not self.enabled:
            log.info("Scheduled crawls disabled (no targets or interval)")
            return
        for site, target in self._targets:
            self._scheduler.add_job(
                self.submit_target,
                "interval",
                minutes=self._interval,
                args=[site, target],
                id=f"crawl_{site}_{target}",
                replace_existing=True,
                next_run_time=datetime.now(timezone.utc),
            )
        self._scheduler.start()
        log.info(
            "Crawl scheduler started: %d target(s) every %d min", len(self._targets), self._interval
        )

    def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    async def submit_target(self, site: str, target_id: str) -> str | None:
        try:
            return await self._manager.submit(target_id, JobConfig(site=site))
        except ExclusivityError as e:
            # a run still in progress or a full pool: try again next interval
            log.info("Skipping scheduled crawl of %s: %s", target_id, e)
            return None

    def get_status(self) -> dict:
        jobs = []
        for job in self._scheduler.get_jobs():
            jobs.append(
                {
                    "id": job.id,
                    "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
                }
            )
        return {"running": self._scheduler.running, "jobs": jobs}
