from __future__ import annotations

from crawler.base import Extractor
from crawler.twitter import TwitterListExtractor
from crawler.youtube import YouTubeChannelExtractor

EXTRACTORS: dict[str, type[Extractor]] = {
    TwitterListExtractor.site: TwitterListExtractor,
    YouTubeChannelExtractor.site: YouTubeChannelExtractor,
}

DEFAULT_SITE = TwitterListExtractor.site


def build_extractor(site: str) -> Extractor:
    try:
        return EXTRACTORS[site]()
    except KeyError:
        raise ValueError(f"No extractor registered for site: {site}") from None
