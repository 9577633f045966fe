import pytest

from crawler.interception import (
    TRANSPARENT_PNG,
    BandwidthPolicy,
    Decision,
    InterceptionStats,
    make_route_handler,
    synthetic_response,
)

POLICY = BandwidthPolicy(
    blocked_types=frozenset({"image", "media", "font", "other"}),
    allowed_hosts=("x.com", "abs.twimg.com"),
)


class StubRequest:
    def __init__(self, resource_type, url):
        self.resource_type = resource_type
        self.url = url


class StubRoute:
    def __init__(self):
        self.fulfilled = None
        self.continued = False

    async def fulfill(self, **kwargs):
        self.fulfilled = kwargs

    async def continue_(self):
        self.continued = True


@pytest.mark.parametrize(
    "rtype,url,expected",
    [
        ("document", "https://ads.example.com/page", Decision.ALLOW),
        ("xhr", "https://cdn.example.com/api/timeline", Decision.ALLOW),
        ("script", "https://cdn.example.com/app.js", Decision.ALLOW),
        ("image", "https://pbs.twimg.com/media/a.jpg", Decision.BLOCK),
        ("image", "https://abs.twimg.com/icons/logo.png", Decision.ALLOW),
        ("image", "https://video.x.com/thumb.jpg", Decision.ALLOW),
        ("image", "https://notx.com/thumb.jpg", Decision.BLOCK),
        ("font", "https://fonts.example.com/a.woff2", Decision.BLOCK),
        ("media", "https://video.example.com/clip.mp4", Decision.BLOCK),
        ("other", "https://tracker.example.com/beacon", Decision.BLOCK),
        ("manifest", "https://example.com/manifest.json", Decision.ALLOW),
    ],
)
def test_decide(rtype, url, expected):
    assert POLICY.decide(rtype, url) is expected


def test_synthetic_payloads_are_valid_per_type():
    content_type, body = synthetic_response("image")
    assert content_type == "image/png"
    assert body == TRANSPARENT_PNG
    assert body.startswith(b"\x89PNG\r\n\x1a\n")

    assert synthetic_response("font")[0] == "font/woff2"
    assert synthetic_response("media")[0] == "video/mp4"
    assert synthetic_response("other") == ("text/plain", b"")


@pytest.mark.asyncio
async def test_route_handler_fulfills_blocked_and_continues_allowed():
    stats = InterceptionStats()
    handler = make_route_handler(POLICY, stats)

    blocked = StubRoute()
    await handler(blocked, StubRequest("image", "https://pbs.twimg.com/media/a.jpg"))
    allowed = StubRoute()
    await handler(allowed, StubRequest("xhr", "https://x.com/i/api/graphql"))

    assert blocked.fulfilled == {"status": 200, "content_type": "image/png", "body": TRANSPARENT_PNG}
    assert not blocked.continued
    assert allowed.continued
    assert allowed.fulfilled is None
    assert (stats.blocked, stats.allowed) == (1, 1)
    assert stats.by_type == {"image": 1}
