from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


def now_ms() -> int:
    """Current wall-clock time as integer epoch milliseconds."""
    return time.time_ns() // 1_000_000


class Classification(str, Enum):
    NEW = "NEW"
    TASK_LOCAL = "TASK_LOCAL"
    PERSISTED = "PERSISTED"


class EndReason(str, Enum):
    TARGET_REACHED = "TARGET_REACHED"
    CONSECUTIVE_DUPLICATES = "CONSECUTIVE_DUPLICATES"
    SCROLL_EXHAUSTED = "SCROLL_EXHAUSTED"
    MAX_SCROLL_ATTEMPTS = "MAX_SCROLL_ATTEMPTS"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"
    ERROR = "ERROR"

    @property
    def success(self) -> bool:
        return self in _SUCCESSFUL_END_REASONS


_SUCCESSFUL_END_REASONS = frozenset(
    {
        EndReason.TARGET_REACHED,
        EndReason.CONSECUTIVE_DUPLICATES,
        EndReason.SCROLL_EXHAUSTED,
        EndReason.MAX_SCROLL_ATTEMPTS,
    }
)


@dataclass
class Record:
    """A single item extracted from a timeline (a post, a video entry)."""

    id: str  # site-native identifier
    content: str
    author_handle: str
    source_target_id: str
    published_at: int  # epoch ms, kept as int end to end
    scraped_at: int = field(default_factory=now_ms)
    engagement_counters: dict[str, int] = field(default_factory=dict)
    media_urls: list[str] = field(default_factory=list)
    url: str = ""
    author_name: str = ""
    site: str = ""
    is_repost: bool = False
    is_reply: bool = False


@dataclass
class ScrollReport:
    distance_px: int
    position_after: int
    effective: bool


@dataclass
class ErrorDetail:
    code: str
    message: str


@dataclass
class RunState:
    """Mutable counters of one crawl run. Owned by exactly one CrawlJob."""

    target_id: str
    max_records: int
    duplicate_stop_threshold: int
    processed_ids: set[str] = field(default_factory=set)
    persisted_ids: set[str] = field(default_factory=set)  # subset of processed_ids
    consecutive_persisted_duplicates: int = 0
    consecutive_ineffective_scrolls: int = 0
    consecutive_extraction_errors: int = 0
    consecutive_persistence_outages: int = 0
    new_count: int = 0
    task_local_duplicate_count: int = 0
    persisted_duplicate_count: int = 0
    skipped_count: int = 0
    scroll_attempts: int = 0
    cycles: int = 0
    end_reason: EndReason | None = None

    def counters(self) -> dict[str, int]:
        return {
            "new_count": self.new_count,
            "task_local_duplicate_count": self.task_local_duplicate_count,
            "persisted_duplicate_count": self.persisted_duplicate_count,
            "skipped_count": self.skipped_count,
            "scroll_attempts": self.scroll_attempts,
            "cycles": self.cycles,
            "consecutive_persisted_duplicates": self.consecutive_persisted_duplicates,
            "consecutive_ineffective_scrolls": self.consecutive_ineffective_scrolls,
        }


@dataclass(frozen=True)
class TaskResult:
    """Outcome of a single crawl run. Produced once, never mutated."""

    job_id: str
    target_id: str
    success: bool
    end_reason: EndReason
    message: str
    new_count: int
    task_local_duplicate_count: int
    persisted_duplicate_count: int
    skipped_count: int
    scroll_attempts: int
    execution_time_ms: int
    error: ErrorDetail | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["end_reason"] = self.end_reason.value
        return data


@dataclass
class JobStatus:
    job_id: str
    target_id: str
    site: str
    state: str  # "RUNNING" or an EndReason value
    counters: dict[str, int]
    started_at_ms: int
    result: TaskResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "target_id": self.target_id,
            "site": self.site,
            "state": self.state,
            "counters": dict(self.counters),
            "started_at_ms": self.started_at_ms,
            "result": self.result.to_dict() if self.result else None,
        }
