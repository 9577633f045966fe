from __future__ import annotations

import logging

from core.models import Classification, Record

log = logging.getLogger(__name__)


class DedupLedger:
    """Classifies records as new, seen earlier in this run, or already stored.

    A long record (an expanded thread, a pinned post) stays on screen across
    many scroll frames. Repeats of a record first seen as NEW are TASK_LOCAL
    and say nothing about whether the crawl has reached old history. A record
    found in storage stays PERSISTED on every sighting, so an old post that
    lingers on screen keeps feeding the duplicate streak.

    The ledger is a view over the run's ``processed_ids`` and ``persisted_ids``
    and never caches storage answers beyond the run.
    """

    def __init__(
        self,
        target_id: str,
        store,
        processed_ids: set[str],
        persisted_ids: set[str] | None = None,
    ) -> None:
        self._target_id = target_id
        self._store = store
        self._processed = processed_ids
        self._persisted = persisted_ids if persisted_ids is not None else set()

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._processed

    def __len__(self) -> int:
        return len(self._processed)

    def mark_persisted(self, record_id: str) -> None:
        """Record that storage already held ``record_id`` (e.g. a concurrent writer won)."""
        self._processed.add(record_id)
        self._persisted.add(record_id)

    async def classify(self, record: Record) -> Classification:
        if record.id in self._persisted:
            return Classification.PERSISTED
        if record.id in self._processed:
            return Classification.TASK_LOCAL

        # Raises PersistenceError; the id stays unrecorded so a later sighting retries.
        stored = await self._store.exists(record.id, self._target_id)
        if stored:
            log.debug("Persisted duplicate: %s", record.id)
            self.mark_persisted(record.id)
            return Classification.PERSISTED
        self._processed.add(record.id)
        return Classification.NEW
