from __future__ import annotations

import asyncio
import logging

from config.settings import settings
from core.models import ScrollReport

log = logging.getLogger(__name__)

_POSITION_JS = "() => Math.round(window.pageYOffset || document.documentElement.scrollTop || 0)"
_SCROLL_JS = "(ratio) => window.scrollBy(0, Math.round(window.innerHeight * ratio))"


class ScrollDriver:
    """Triggers the next page of an infinite timeline and measures whether it moved.

    The measured distance is the only physical signal that the timeline has
    stopped growing: a page full of already-seen records can still scroll.
    """

    def __init__(
        self,
        page,
        *,
        min_distance_px: int = 100,
        step_ratio: float = 1.5,
        animation_wait: float = 1.5,
        load_more_selector: str | None = None,
    ) -> None:
        self._page = page
        self.min_distance_px = min_distance_px
        self._step_ratio = step_ratio
        self._animation_wait = animation_wait
        self._load_more_selector = load_more_selector

    @classmethod
    def from_settings(cls, page, load_more_selector: str | None = None) -> ScrollDriver:
        return cls(
            page,
            min_distance_px=settings.CRAWL_MIN_SCROLL_DISTANCE_PX,
            step_ratio=settings.CRAWL_SCROLL_STEP_RATIO,
            animation_wait=settings.CRAWL_SCROLL_ANIMATION_SECONDS,
            load_more_selector=load_more_selector,
        )

    async def position(self) -> int:
        return int(await self._page.evaluate(_POSITION_JS) or 0)

    async def advance(self) -> ScrollReport:
        before = await self.position()

        if self._load_more_selector:
            await self._click_load_more()

        await self._page.evaluate(_SCROLL_JS, self._step_ratio)
        if self._animation_wait > 0:
            await asyncio.sleep(self._animation_wait)

        after = await self.position()
        distance = after - before
        report = ScrollReport(
            distance_px=distance,
            position_after=after,
            effective=distance >= self.min_distance_px,
        )
        if report.effective:
            log.debug("Scrolled %dpx (%d -> %d)", distance, before, after)
        else:
            log.info("Ineffective scroll: %dpx (%d -> %d)", distance, before, after)
        return report

    async def _click_load_more(self) -> None:
        button = await self._page.query_selector(self._load_more_selector)
        if button is None:
            return
        try:
            await button.click(timeout=2000)
        except Exception as e:
            # the affordance is optional; a failed click falls back to plain scrolling
            log.debug("Load-more click failed: %s", e)
