"""Bandwidth control for browser sessions.

Heavy resources (images, video, fonts) are answered locally with a tiny valid
payload instead of being fetched. Page scripts still get a response, so nothing
on the page throws; document and xhr traffic always goes through untouched
because record extraction depends on it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlparse

from config.settings import settings, split_csv

log = logging.getLogger(__name__)

# 1x1 transparent PNG
TRANSPARENT_PNG = bytes(
    [
        0x89, 0x50, 0x4E, 0x47, 0x0D, 0x0A, 0x1A, 0x0A,
        0x00, 0x00, 0x00, 0x0D, 0x49, 0x48, 0x44, 0x52,
        0x00, 0x00, 0x00, 0x01, 0x00, 0x00, 0x00, 0x01,
        0x08, 0x06, 0x00, 0x00, 0x00, 0x1F, 0x15, 0xC4,
        0x89, 0x00, 0x00, 0x00, 0x0B, 0x49, 0x44, 0x41,
        0x54, 0x78, 0x9C, 0x63, 0x00, 0x01, 0x00, 0x00,
        0x05, 0x00, 0x01, 0x0D, 0x0A, 0x2D, 0xB4, 0x00,
        0x00, 0x00, 0x00, 0x49, 0x45, 0x4E, 0x44, 0xAE,
        0x42, 0x60, 0x82,
    ]
)

ALWAYS_ALLOWED_TYPES = frozenset(
    {"document", "script", "stylesheet", "xhr", "fetch", "websocket", "eventsource"}
)

_SYNTHETIC_BODIES: dict[str, tuple[str, bytes]] = {
    "image": ("image/png", TRANSPARENT_PNG),
    "font": ("font/woff2", b""),
    "media": ("video/mp4", b""),
}


class Decision(str, Enum):
    ALLOW = "allow"
    BLOCK = "block"


def _host_matches(host: str, allowed: str) -> bool:
    return host == allowed or host.endswith("." + allowed)


@dataclass(frozen=True)
class BandwidthPolicy:
    blocked_types: frozenset[str] = frozenset({"image", "media", "font", "other"})
    allowed_hosts: tuple[str, ...] = ()
    log_decisions: bool = False

    @classmethod
    def from_settings(cls) -> BandwidthPolicy:
        return cls(
            blocked_types=frozenset(split_csv(settings.BLOCKED_RESOURCE_TYPES)),
            allowed_hosts=tuple(h.lower() for h in split_csv(settings.ALLOWED_RESOURCE_HOSTS)),
            log_decisions=settings.LOG_BLOCKED_REQUESTS,
        )

    def decide(self, resource_type: str, url: str) -> Decision:
        if resource_type in ALWAYS_ALLOWED_TYPES:
            return Decision.ALLOW
        if resource_type not in self.blocked_types:
            return Decision.ALLOW
        host = (urlparse(url).hostname or "").lower()
        if host and any(_host_matches(host, h) for h in self.allowed_hosts):
            return Decision.ALLOW
        return Decision.BLOCK


def synthetic_response(resource_type: str) -> tuple[str, bytes]:
    """Content type and body served in place of a blocked resource."""
    return _SYNTHETIC_BODIES.get(resource_type, ("text/plain", b""))


@dataclass
class InterceptionStats:
    allowed: int = 0
    blocked: int = 0
    by_type: dict[str, int] = field(default_factory=dict)


def make_route_handler(policy: BandwidthPolicy, stats: InterceptionStats | None = None):
    """Build a Playwright route handler applying ``policy`` to every request."""

    async def handle(route, request) -> None:
        rtype = request.resource_type
        url = request.url
        if policy.decide(rtype, url) is Decision.BLOCK:
            content_type, body = synthetic_response(rtype)
            if stats is not None:
                stats.blocked += 1
                stats.by_type[rtype] = stats.by_type.get(rtype, 0) + 1
            if policy.log_decisions:
                log.debug("Blocked %s %s", rtype, url[:120])
            await route.fulfill(status=200, content_type=content_type, body=body)
            return
        if stats is not None:
            stats.allowed += 1
        await route.continue_()

    return handle
