"""
Shared fakes for crawl engine tests.

The engine only talks to its collaborators through small interfaces, so the
tests drive it with scripted stand-ins: a timeline that returns a fixed list
of records per cycle, a scroller that reports fixed distances, a session that
never launches a browser, and an in-memory store.
"""

from __future__ import annotations

import pytest

from core.errors import PersistenceError
from core.models import Record, ScrollReport
from crawler.base import Extractor
from crawler.job import CrawlJob, JobConfig
from crawler.termination import TerminationPolicy


def make_record(n, target_id="list-1", **kwargs) -> Record:
    defaults = dict(
        id=str(n),
        content=f"post number {n}",
        author_handle="alice",
        source_target_id=target_id,
        published_at=1_700_000_000_000 + int(n) * 1000,
        scraped_at=1_700_000_500_000,
        url=f"https://x.com/alice/status/{n}",
        site="twitter_list",
    )
    defaults.update(kwargs)
    return Record(**defaults)


class FakeStore:
    def __init__(self, persisted=()):
        self.records: dict[tuple[str, str], Record] = {}
        for r in persisted:
            self.records[(r.source_target_id, r.id)] = r
        self.tasks: dict[str, dict] = {}
        self.exists_calls = 0
        self.fail_exists = False
        self.exists_failures_left = 0
        self.fail_upserts = False
        self.fail_upsert_ids: set[str] = set()
        self.upsert_failures_left = 0  # transient: fail this many upserts, then recover
        self._next = 0

    async def exists(self, record_id, target_id):
        self.exists_calls += 1
        if self.fail_exists:
            raise PersistenceError("database is locked")
        if self.exists_failures_left:
            self.exists_failures_left -= 1
            raise PersistenceError("database is locked")
        return (target_id, record_id) in self.records

    async def upsert(self, record, task_id=None):
        if self.fail_upserts or record.id in self.fail_upsert_ids:
            raise PersistenceError("disk I/O error")
        if self.upsert_failures_left:
            self.upsert_failures_left -= 1
            raise PersistenceError("database is locked")
        key = (record.source_target_id, record.id)
        if key in self.records:
            return False
        self.records[key] = record
        return True

    async def create_task(self, target_id, site, config):
        self._next += 1
        task_id = f"job-{self._next}"
        self.tasks[task_id] = {"target_id": target_id, "site": site, "status": "created"}
        return task_id

    async def mark_running(self, task_id):
        self.tasks.setdefault(task_id, {})["status"] = "running"

    async def mark_completed(self, task_id, result):
        self.tasks.setdefault(task_id, {}).update(status="completed", result=result)

    async def mark_failed(self, task_id, result):
        self.tasks.setdefault(task_id, {}).update(status="failed", result=result)

    async def update_record_count(self, task_id, count):
        self.tasks.setdefault(task_id, {})["record_count"] = count


class ScriptedExtractor(Extractor):
    """Returns ``frames[i]`` on the i-th read; the last frame repeats.

    A frame that is an exception instance is raised instead.
    """

    site = "twitter_list"

    def __init__(self, frames, excluded_ids=()):
        self.frames = list(frames) or [[]]
        self.reads = 0
        self.excluded_ids = set(excluded_ids)

    def target_url(self, target_id):
        return f"https://example.test/lists/{target_id}"

    async def read(self, page, target_id):
        frame = self.frames[min(self.reads, len(self.frames) - 1)]
        self.reads += 1
        if isinstance(frame, BaseException):
            raise frame
        return list(frame)

    def is_excluded(self, record):
        return record.id in self.excluded_ids


class ScriptedScroller:
    def __init__(self, distances, min_distance_px=100):
        self.distances = list(distances) or [500]
        self.min_distance_px = min_distance_px
        self.calls = 0
        self.position = 0

    async def advance(self):
        d = self.distances[min(self.calls, len(self.distances) - 1)]
        self.calls += 1
        self.position += d
        return ScrollReport(
            distance_px=d, position_after=self.position, effective=d >= self.min_distance_px
        )


class FakeSession:
    def __init__(self, open_error=None, navigate_error=None):
        self.open_error = open_error
        self.navigate_error = navigate_error
        self.opened = False
        self.closed = False
        self.alive = True
        self.navigated: list[str] = []

    async def open(self):
        if self.open_error:
            raise self.open_error
        self.opened = True
        return object()

    async def navigate(self, url):
        if self.navigate_error:
            raise self.navigate_error
        self.navigated.append(url)

    async def wait_until_interactive(self, extractor):
        return None

    async def is_alive(self):
        return self.alive

    async def close(self):
        self.closed = True


def fast_config(**overrides) -> JobConfig:
    values = dict(
        max_records=20,
        duplicate_stop_threshold=2,
        settle_delay=0,
        settle_jitter=0,
        timeout=5,
        extraction_error_limit=3,
        persistence_outage_limit=3,
        persist_retry_delay=0,
    )
    values.update(overrides)
    return JobConfig(**values)


def build_job(
    frames,
    *,
    store=None,
    distances=(500,),
    session=None,
    target_id="list-1",
    job_id="job-1",
    excluded_ids=(),
    max_scroll_attempts=50,
    **config,
):
    store = store if store is not None else FakeStore()
    session = session or FakeSession()
    extractor = ScriptedExtractor(frames, excluded_ids=excluded_ids)
    scroller = ScriptedScroller(distances)
    job = CrawlJob(
        job_id,
        target_id,
        fast_config(**config),
        store=store,
        extractor=extractor,
        session_factory=lambda: session,
        scroll_factory=lambda page, selector: scroller,
        policy=TerminationPolicy(max_ineffective_scrolls=3, max_scroll_attempts=max_scroll_attempts),
    )
    return job, store, session, extractor, scroller


@pytest.fixture
def store():
    return FakeStore()
