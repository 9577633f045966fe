from __future__ import annotations

import logging
import re
from datetime import datetime

from playwright.async_api import Error as PlaywrightError

from core.errors import ExtractionError
from core.models import Record, now_ms
from crawler.base import Extractor, parse_compact_count

log = logging.getLogger(__name__)

TWEET = 'article[data-testid="tweet"]'
LOGIN_WALL = '[data-testid="loginButton"], a[href="/login"], input[name="text"]'

_STATUS_RE = re.compile(r"/([^/]+)/status/(\d+)")

# Runs in the page: one round trip per cycle instead of one per field.
_READ_JS = """
(sel) => Array.from(document.querySelectorAll(sel)).map((el) => {
  const q = (s) => el.querySelector(s);
  const text = (s) => { const n = q(s); return n ? n.innerText.trim() : ""; };
  const time = q('time[datetime]');
  const link = time ? time.closest('a[href*="/status/"]') : q('a[href*="/status/"]');
  const names = Array.from(el.querySelectorAll('[data-testid="User-Name"] span'))
    .map((n) => n.innerText.trim()).filter(Boolean);
  return {
    href: link ? link.getAttribute('href') : "",
    text: text('[data-testid="tweetText"]'),
    name: names.length ? names[0] : "",
    handle: names.find((n) => n.startsWith('@')) || "",
    datetime: time ? time.getAttribute('datetime') : "",
    reply: text('[data-testid="reply"]'),
    retweet: text('[data-testid="retweet"]'),
    like: text('[data-testid="like"]'),
    view: text('a[href*="/analytics"]'),
    images: Array.from(el.querySelectorAll('img[src*="pbs.twimg.com/media"]')).map((i) => i.src),
    social: text('[data-testid="socialContext"]'),
    replying: Array.from(el.querySelectorAll('div')).some(
      (d) => d.childElementCount <= 2 && /^Replying to/.test(d.innerText || "")),
  };
})
"""


def iso_to_ms(value: str) -> int:
    """ISO-8601 timestamp to integer epoch milliseconds (no float round trip)."""
    if not value:
        return 0
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    seconds = int(dt.timestamp())
    return seconds * 1000 + dt.microsecond // 1000


def tweet_id_from_href(href: str) -> tuple[str, str] | None:
    m = _STATUS_RE.search(href or "")
    if not m:
        return None
    return m.group(2), m.group(1)


class TwitterListExtractor(Extractor):
    """Reads tweets from an X/Twitter list timeline (``/i/lists/<id>``).

    Replies are read but excluded from storage. Reposts are stored and flagged.
    """

    site = "twitter_list"

    def target_url(self, target_id: str) -> str:
        return f"https://x.com/i/lists/{target_id}"

    async def wait_until_ready(self, page) -> None:
        await page.wait_for_selector(f"{TWEET}, {LOGIN_WALL}")
        if await page.query_selector(TWEET) is None:
            raise ExtractionError("Redirected to a login wall; the saved auth state has expired")

    async def read(self, page, target_id: str) -> list[Record]:
        try:
            raw_items = await page.evaluate(_READ_JS, TWEET)
        except PlaywrightError as e:
            raise ExtractionError(f"Could not read timeline: {e}") from e

        scraped_at = now_ms()
        records: list[Record] = []
        for raw in raw_items or []:
            try:
                record = self._build_record(raw, target_id, scraped_at)
            except (KeyError, TypeError, ValueError) as e:
                log.debug("Skipping malformed tweet element: %s", e)
                continue
            if record is not None:
                records.append(record)
        return records

    def _build_record(self, raw: dict, target_id: str, scraped_at: int) -> Record | None:
        ids = tweet_id_from_href(raw.get("href", ""))
        if ids is None:
            # promoted items and "show more" cells carry no status link
            return None
        tweet_id, path_handle = ids
        handle = (raw.get("handle") or f"@{path_handle}").lstrip("@")
        return Record(
            id=tweet_id,
            content=raw.get("text", ""),
            author_handle=handle,
            author_name=raw.get("name", ""),
            source_target_id=target_id,
            published_at=iso_to_ms(raw.get("datetime", "")),
            scraped_at=scraped_at,
            engagement_counters={
                "replies": parse_compact_count(raw.get("reply")),
                "reposts": parse_compact_count(raw.get("retweet")),
                "likes": parse_compact_count(raw.get("like")),
                "views": parse_compact_count(raw.get("view")),
            },
            media_urls=list(dict.fromkeys(raw.get("images") or [])),
            url=f"https://x.com/{path_handle}/status/{tweet_id}",
            site=self.site,
            is_repost="repost" in (raw.get("social") or "").lower(),
            is_reply=bool(raw.get("replying")),
        )

    def is_excluded(self, record: Record) -> bool:
        return record.is_reply
