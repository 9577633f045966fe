from __future__ import annotations

import re
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Protocol

from core.models import Record, TaskResult


class Extractor(ABC):
    """Reads the records currently rendered on one site's timeline page."""

    site: str
    # Clicked before each scroll when present (e.g. a "Show more" button).
    load_more_selector: str | None = None

    @abstractmethod
    def target_url(self, target_id: str) -> str:
        """URL of the timeline for ``target_id``."""
        ...

    async def wait_until_ready(self, page) -> None:
        """Wait until the first records are rendered."""
        return None

    @abstractmethod
    async def read(self, page, target_id: str) -> list[Record]:
        """Return the visible records in on-screen order.

        Raises ExtractionError when the page cannot be read at all.
        """
        ...

    def is_excluded(self, record: Record) -> bool:
        """Domain rule for records that are read but never stored."""
        return False


class RecordStore(Protocol):
    """Durable storage capability consumed by crawl jobs."""

    async def exists(self, record_id: str, target_id: str) -> bool: ...

    async def upsert(self, record: Record, task_id: str | None = None) -> bool: ...

    async def create_task(self, target_id: str, site: str, config: dict) -> str: ...

    async def mark_running(self, task_id: str) -> None: ...

    async def mark_completed(self, task_id: str, result: TaskResult) -> None: ...

    async def mark_failed(self, task_id: str, result: TaskResult) -> None: ...

    async def update_record_count(self, task_id: str, count: int) -> None: ...


_COUNT_RE = re.compile(r"([\d.,]+)\s*([KMB])?", re.IGNORECASE)
_SUFFIX = {"K": 1_000, "M": 1_000_000, "B": 1_000_000_000}


def parse_compact_count(text: str | None) -> int:
    """Parse engagement counters as rendered: "1,024", "1.2K", "3M"."""
    if not text:
        return 0
    m = _COUNT_RE.search(text.strip())
    if not m:
        return 0
    number, suffix = m.group(1), (m.group(2) or "").upper()
    if suffix:
        number = number.replace(",", ".") if number.count(",") == 1 and "." not in number else number.replace(",", "")
    else:
        number = number.replace(",", "")
    try:
        value = Decimal(number)
    except InvalidOperation:
        return 0
    return int(value * _SUFFIX.get(suffix, 1))
