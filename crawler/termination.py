"""When to stop scrolling.

Three independent signals feed one decision: the target count, duplicates
already in storage, and the page physically refusing to scroll. The rules are
checked in a fixed order so that a cycle which reaches its target while also
hitting stale content reports success.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from config.settings import settings
from core.models import Classification, EndReason, RunState, ScrollReport

log = logging.getLogger(__name__)


@dataclass
class CycleTally:
    """Classifications observed during one extraction cycle."""

    new: int = 0
    task_local: int = 0
    persisted: int = 0
    skipped: int = 0

    def add(self, classification: Classification) -> None:
        if classification is Classification.NEW:
            self.new += 1
        elif classification is Classification.TASK_LOCAL:
            self.task_local += 1
        else:
            self.persisted += 1


class TerminationPolicy:
    def __init__(
        self,
        *,
        max_ineffective_scrolls: int = 3,
        max_scroll_attempts: int = 50,
    ) -> None:
        self.max_ineffective_scrolls = max_ineffective_scrolls
        self.max_scroll_attempts = max_scroll_attempts

    @classmethod
    def from_settings(cls) -> TerminationPolicy:
        return cls(
            max_ineffective_scrolls=settings.CRAWL_MAX_INEFFECTIVE_SCROLLS,
            max_scroll_attempts=settings.CRAWL_MAX_SCROLL_ATTEMPTS,
        )

    def apply_cycle(self, state: RunState, tally: CycleTally) -> None:
        """Fold a finished cycle's classifications into the run counters.

        Any NEW record in the cycle proves progress and clears the persisted
        duplicate streak; TASK_LOCAL repeats never move it.
        """
        state.task_local_duplicate_count += tally.task_local
        state.persisted_duplicate_count += tally.persisted
        state.skipped_count += tally.skipped
        if tally.new > 0:
            state.consecutive_persisted_duplicates = 0
        else:
            state.consecutive_persisted_duplicates += tally.persisted
        state.cycles += 1

    def apply_scroll(self, state: RunState, report: ScrollReport) -> None:
        state.scroll_attempts += 1
        if report.effective:
            state.consecutive_ineffective_scrolls = 0
        else:
            state.consecutive_ineffective_scrolls += 1

    def evaluate(self, state: RunState, *, cancelled: bool = False) -> EndReason | None:
        """Return the terminal reason for this cycle, or None to keep crawling."""
        if state.end_reason is not None:
            return state.end_reason
        if state.new_count >= state.max_records:
            return EndReason.TARGET_REACHED
        if state.consecutive_persisted_duplicates >= state.duplicate_stop_threshold:
            return EndReason.CONSECUTIVE_DUPLICATES
        if state.consecutive_ineffective_scrolls >= self.max_ineffective_scrolls:
            return EndReason.SCROLL_EXHAUSTED
        if state.scroll_attempts >= self.max_scroll_attempts:
            return EndReason.MAX_SCROLL_ATTEMPTS
        if cancelled:
            return EndReason.CANCELLED
        return None

    @staticmethod
    def finish(state: RunState, reason: EndReason) -> EndReason:
        """Set the run's end reason. The first terminal state wins."""
        if state.end_reason is None:
            state.end_reason = reason
            log.info("Crawl of %s ending: %s", state.target_id, reason.value)
        return state.end_reason
