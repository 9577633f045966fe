from __future__ import annotations

import logging
import re
from urllib.parse import parse_qs, urlparse

from playwright.async_api import Error as PlaywrightError

from core.errors import ExtractionError
from core.models import Record, now_ms
from crawler.base import Extractor, parse_compact_count

log = logging.getLogger(__name__)

VIDEO = "ytd-rich-item-renderer"

_READ_JS = """
(sel) => Array.from(document.querySelectorAll(sel)).map((el) => {
  const link = el.querySelector('a#video-title-link, a#thumbnail');
  const title = el.querySelector('#video-title');
  const meta = Array.from(el.querySelectorAll('#metadata-line span'))
    .map((n) => n.innerText.trim());
  const thumb = el.querySelector('img');
  const duration = el.querySelector('ytd-thumbnail-overlay-time-status-renderer');
  return {
    href: link ? link.getAttribute('href') : "",
    title: title ? (title.getAttribute('title') || title.innerText.trim()) : "",
    meta: meta,
    thumbnail: thumb ? (thumb.src || "") : "",
    duration: duration ? duration.innerText.trim() : "",
  };
})
"""

_RELATIVE_RE = re.compile(
    r"(\d+)\s*(second|minute|hour|day|week|month|year)s?\s+ago", re.IGNORECASE
)
_UNIT_MS = {
    "second": 1_000,
    "minute": 60_000,
    "hour": 3_600_000,
    "day": 86_400_000,
    "week": 7 * 86_400_000,
    "month": 30 * 86_400_000,
    "year": 365 * 86_400_000,
}


def relative_to_ms(text: str, reference_ms: int) -> int:
    """Turn "3 weeks ago" / "Streamed 2 hours ago" into epoch ms.

    Unparseable text yields ``reference_ms``.
    """
    m = _RELATIVE_RE.search(text or "")
    if not m:
        return reference_ms
    return reference_ms - int(m.group(1)) * _UNIT_MS[m.group(2).lower()]


def video_id_from_href(href: str) -> str | None:
    if not href:
        return None
    parsed = urlparse(href)
    if parsed.path.startswith("/shorts/"):
        return parsed.path.split("/")[2] or None
    return (parse_qs(parsed.query).get("v") or [None])[0]


class YouTubeChannelExtractor(Extractor):
    """Reads the video grid of a channel's ``/videos`` tab."""

    site = "youtube_channel"

    def target_url(self, target_id: str) -> str:
        handle = target_id if target_id.startswith("@") else f"@{target_id}"
        return f"https://www.youtube.com/{handle}/videos"

    async def wait_until_ready(self, page) -> None:
        await page.wait_for_selector(VIDEO)

    async def read(self, page, target_id: str) -> list[Record]:
        try:
            raw_items = await page.evaluate(_READ_JS, VIDEO)
        except PlaywrightError as e:
            raise ExtractionError(f"Could not read video grid: {e}") from e

        scraped_at = now_ms()
        handle = target_id.lstrip("@")
        records = []
        for raw in raw_items or []:
            video_id = video_id_from_href(raw.get("href", ""))
            if not video_id:
                continue
            meta = raw.get("meta") or []
            views = next((m for m in meta if "view" in m.lower()), "")
            age = next((m for m in meta if "ago" in m.lower()), "")
            records.append(
                Record(
                    id=video_id,
                    content=raw.get("title", ""),
                    author_handle=handle,
                    source_target_id=target_id,
                    published_at=relative_to_ms(age, scraped_at),
                    scraped_at=scraped_at,
                    engagement_counters={"views": parse_compact_count(views)},
                    media_urls=[raw["thumbnail"]] if raw.get("thumbnail") else [],
                    url=f"https://www.youtube.com/watch?v={video_id}",
                    site=self.site,
                )
            )
        return records
