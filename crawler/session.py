"""One browser, one context, one page: the unit a crawl job runs on."""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from config.settings import settings, split_csv
from core.errors import SessionError, SessionErrorKind
from core.retry import async_retrying
from crawler.interception import BandwidthPolicy, InterceptionStats, make_route_handler

log = logging.getLogger(__name__)

_NAVIGATION_ATTEMPTS = 2


def load_auth_state(path: str | None = None) -> bytes | None:
    """Read a saved login snapshot (Playwright storage state) as opaque bytes."""
    path = path if path is not None else settings.AUTH_STATE_PATH
    if not path:
        return None
    p = Path(path)
    if not p.is_file():
        log.info("No saved auth state at %s, starting a clean session", p)
        return None
    return p.read_bytes()


class BrowserSession:
    """Owns a Playwright browser for the lifetime of one crawl job.

    ``close()`` releases every resource that was acquired, in reverse order,
    whatever state ``open()`` reached.
    """

    def __init__(
        self,
        *,
        headless: bool = True,
        user_agent: str | None = None,
        viewport: tuple[int, int] = (1280, 720),
        launch_args: list[str] | None = None,
        open_timeout: float = 60.0,
        navigation_timeout: float = 30.0,
        retry_delay: float = 1.0,
        auth_state: bytes | None = None,
        bandwidth_policy: BandwidthPolicy | None = None,
    ) -> None:
        self._headless = headless
        self._user_agent = user_agent
        self._viewport = viewport
        self._launch_args = launch_args or []
        self._open_timeout = open_timeout
        self.navigation_timeout = navigation_timeout
        self._retry_delay = retry_delay
        self._auth_state = auth_state
        self._policy = bandwidth_policy
        self._auth_file: str | None = None

        self._pw = None
        self._browser = None
        self._context = None
        self.page = None
        self.healthy = False
        self.interception = InterceptionStats()

    @classmethod
    def from_settings(cls, auth_state: bytes | None = None) -> BrowserSession:
        return cls(
            headless=settings.BROWSER_HEADLESS,
            user_agent=settings.BROWSER_USER_AGENT,
            viewport=(settings.VIEWPORT_WIDTH, settings.VIEWPORT_HEIGHT),
            launch_args=split_csv(settings.BROWSER_ARGS),
            open_timeout=settings.SESSION_OPEN_TIMEOUT_SECONDS,
            navigation_timeout=settings.NAVIGATION_TIMEOUT_SECONDS,
            retry_delay=settings.NAVIGATION_RETRY_DELAY_SECONDS,
            auth_state=auth_state,
            bandwidth_policy=BandwidthPolicy.from_settings() if settings.BLOCK_RESOURCES else None,
        )

    async def __aenter__(self) -> BrowserSession:
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ── lifecycle ────────────────────────────────────────────────────

    async def open(self):
        try:
            await asyncio.wait_for(self._launch(), timeout=self._open_timeout)
        except asyncio.TimeoutError as e:
            await self.close()
            raise SessionError(
                SessionErrorKind.UNAVAILABLE,
                f"Browser did not start within {self._open_timeout:.0f}s",
            ) from e
        except PlaywrightError as e:
            await self.close()
            raise SessionError(
                SessionErrorKind.UNAVAILABLE, f"Browser failed to start: {e}"
            ) from e
        log.info(
            "Browser session open (headless=%s, auth_state=%s, interception=%s)",
            self._headless,
            self._auth_state is not None,
            self._policy is not None,
        )
        return self.page

    async def _launch(self) -> None:
        self._pw = await async_playwright().start()
        self._browser = await self._pw.chromium.launch(
            headless=self._headless, args=list(self._launch_args)
        )
        self._browser.on("disconnected", self._mark_unhealthy("browser disconnected"))

        width, height = self._viewport
        context_kwargs: dict = {"viewport": {"width": width, "height": height}}
        if self._user_agent:
            context_kwargs["user_agent"] = self._user_agent
        if self._auth_state is not None:
            context_kwargs["storage_state"] = self._write_auth_file()
        self._context = await self._browser.new_context(**context_kwargs)

        self.page = await self._context.new_page()
        self.page.set_default_timeout(self.navigation_timeout * 1000)
        self.page.on("crash", self._mark_unhealthy("page crashed"))
        self.page.on("close", self._mark_unhealthy("page closed"))
        self.healthy = True

        if self._policy is not None:
            await self.intercept_requests(self._policy)

    def _write_auth_file(self) -> str:
        # Handed to Playwright verbatim; the snapshot is never parsed here.
        fd, path = tempfile.mkstemp(prefix="auth-state-", suffix=".json")
        with os.fdopen(fd, "wb") as fh:
            fh.write(self._auth_state or b"")
        self._auth_file = path
        return path

    def _mark_unhealthy(self, reason: str):
        def handler(*_args) -> None:
            if self.healthy:
                log.warning("Browser session unhealthy: %s", reason)
            self.healthy = False

        return handler

    async def intercept_requests(self, policy: BandwidthPolicy) -> None:
        if self.page is None:
            raise SessionError(SessionErrorKind.UNAVAILABLE, "Session is not open")
        await self.page.route("**/*", make_route_handler(policy, self.interception))
        log.debug("Bandwidth interception installed: blocking %s", sorted(policy.blocked_types))

    async def close(self) -> None:
        page, context, browser, pw = self.page, self._context, self._browser, self._pw
        self.page = self._context = self._browser = self._pw = None
        self.healthy = False

        for name, closer in (
            ("page", page.close if page else None),
            ("context", context.close if context else None),
            ("browser", browser.close if browser else None),
            ("playwright", pw.stop if pw else None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as e:
                log.warning("Error while closing %s: %s", name, e)

        if self._auth_file:
            try:
                os.unlink(self._auth_file)
            except OSError as e:
                log.debug("Could not remove auth state file %s: %s", self._auth_file, e)
            self._auth_file = None

        if self.interception.blocked:
            log.info(
                "Session closed; blocked %d request(s), allowed %d",
                self.interception.blocked,
                self.interception.allowed,
            )

    # ── navigation ───────────────────────────────────────────────────

    async def navigate(self, url: str) -> None:
        """Load ``url``; one retry on a transient failure before giving up."""
        if self.page is None:
            raise SessionError(SessionErrorKind.UNAVAILABLE, "Session is not open")

        try:
            async for attempt in async_retrying(
                PlaywrightError,
                attempts=_NAVIGATION_ATTEMPTS,
                initial_delay=self._retry_delay,
                logger=log,
            ):
                with attempt:
                    if self.page is None or self.page.is_closed() or not self.healthy:
                        raise SessionError(
                            SessionErrorKind.UNAVAILABLE,
                            "Page is closed or the browser has gone away",
                        )
                    await self.page.goto(
                        url,
                        wait_until="domcontentloaded",
                        timeout=self.navigation_timeout * 1000,
                    )
        except PlaywrightTimeoutError as e:
            raise SessionError(
                SessionErrorKind.NAVIGATION_TIMEOUT,
                f"{url} did not load within {self.navigation_timeout:.0f}s",
            ) from e
        except PlaywrightError as e:
            raise SessionError(
                SessionErrorKind.NAVIGATION_FAILED, f"Navigation to {url} failed: {e}"
            ) from e
        log.info("Navigated to %s", url)

    async def wait_until_interactive(self, extractor) -> None:
        """Block until the extractor sees its content, bounded by the navigation deadline."""
        try:
            await asyncio.wait_for(
                extractor.wait_until_ready(self.page),
                timeout=self.navigation_timeout,
            )
        except (asyncio.TimeoutError, PlaywrightTimeoutError) as e:
            raise SessionError(
                SessionErrorKind.NAVIGATION_TIMEOUT,
                f"Page content did not appear within {self.navigation_timeout:.0f}s",
            ) from e

    async def is_alive(self) -> bool:
        """Liveness check: the page still evaluates script."""
        if self.page is None or not self.healthy:
            return False
        try:
            await self.page.evaluate("() => document.title")
        except PlaywrightError as e:
            log.warning("Browser health check failed: %s", e)
            self.healthy = False
        return self.healthy
