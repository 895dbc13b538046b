"""Shared headless-browser session.

This module provides the single Playwright browser the whole process uses:
- Lazy, idempotent acquisition (a healthy handle is reused)
- A fresh temporary profile directory per launch, removed on release
- Request filtering that aborts images, fonts and media
- Disconnect detection so the next acquisition relaunches

Design Rationale:
    One browser bounds memory and keeps the request rate towards the
    exchange website low. Each extraction strategy still gets its own
    browser context (and therefore its own cookies, listeners and
    downloads), which is cheap compared to a process launch. The
    scheduler serializes browser users; this class only guarantees that
    concurrent acquisitions never launch two processes.
"""

import asyncio
import shutil
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Self

from playwright.async_api import (
    Browser,
    Error as PlaywrightError,
    Page,
    Playwright,
    Route,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from config.settings import GlobalConfig, get_config
from nepse_ingest.exceptions import LaunchError, NavigationError
from nepse_ingest.logger import get_logger

log = get_logger(__name__)

_LAUNCH_ARGS = [
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-gpu",
    "--no-first-run",
    "--no-zygote",
]


class SessionManager:
    """Owns the process-wide Playwright browser.

    Attributes:
        config: GlobalConfig instance for runtime configuration.
        _playwright: Playwright driver (started on first launch).
        _browser: Connected browser or None.
        _profile_dir: Temporary profile/download directory of the current launch.

    Example:
        async with SessionManager.create() as session:
            page = await session.new_page()
            await session.navigate(page, session.config.today_price_url)
            ...
            await session.close_page(page)
    """

    def __init__(self, config: GlobalConfig | None = None) -> None:
        self.config = config or get_config()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._profile_dir: Path | None = None
        self._lock = asyncio.Lock()
        self.launch_count = 0

    @classmethod
    @asynccontextmanager
    async def create(cls, config: GlobalConfig | None = None) -> AsyncGenerator[Self, None]:
        """Yield a session manager and release it on exit.

        The browser itself is launched lazily by the first ``acquire()``.
        """
        instance = cls(config)
        try:
            yield instance
        finally:
            await instance.release()

    @property
    def is_connected(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    @property
    def profile_dir(self) -> Path | None:
        """Directory downloads are saved into for the current launch."""
        return self._profile_dir

    async def acquire(self) -> Browser:
        """Return the live browser, launching one if needed.

        Raises:
            LaunchError: If the browser cannot be started.
        """
        async with self._lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser

            if self._browser is not None:
                log.warning("Browser handle no longer connected, relaunching")
                await self._teardown()

            return await self._launch()

    async def _launch(self) -> Browser:
        executable = self.config.browser_executable_path
        self._profile_dir = Path(tempfile.mkdtemp(prefix=self.config.browser_profile_prefix))

        log.info(
            "Launching browser",
            headless=self.config.headless,
            executable=str(executable) if executable else "bundled",
            profile_dir=str(self._profile_dir),
        )

        try:
            if self._playwright is None:
                self._playwright = await async_playwright().start()

            browser = await self._playwright.chromium.launch(
                headless=self.config.headless,
                executable_path=str(executable) if executable else None,
                downloads_path=str(self._profile_dir),
                args=_LAUNCH_ARGS,
            )
        except Exception as exc:
            await self._teardown()
            raise LaunchError(
                reason=str(exc),
                executable_path=str(executable) if executable else None,
            ) from exc

        browser.on("disconnected", self._on_disconnected)
        self._browser = browser
        self.launch_count += 1
        log.info("Browser launched", launch_count=self.launch_count)
        return browser

    def _on_disconnected(self, browser: Browser) -> None:
        """Forget a crashed or closed browser so the next acquire relaunches."""
        if browser is not self._browser:
            return
        log.warning("Browser disconnected unexpectedly")
        self._browser = None
        self._remove_profile()

    async def new_page(self) -> Page:
        """Open a page in a fresh, filtered browser context.

        Raises:
            LaunchError: If the browser cannot be started.
        """
        browser = await self.acquire()
        context = await browser.new_context(
            user_agent=self.config.user_agent,
            accept_downloads=True,
            ignore_https_errors=True,
            locale="en-US",
        )
        await context.route("**/*", self._filter_request)

        page = await context.new_page()
        page.set_default_timeout(self.config.request_timeout_ms)
        page.set_default_navigation_timeout(self.config.request_timeout_ms)

        log.debug("New page created")
        return page

    async def _filter_request(self, route: Route) -> None:
        if route.request.resource_type in self.config.blocked_resource_types:
            await route.abort()
        else:
            await route.continue_()

    async def close_page(self, page: Page) -> None:
        """Close a page together with its browser context."""
        try:
            await page.context.close()
        except PlaywrightError as exc:
            log.warning("Error closing page context", error=str(exc))

    async def navigate(
        self,
        page: Page,
        url: str,
        wait_until: str = "domcontentloaded",
    ) -> None:
        """Navigate to URL with error handling.

        Args:
            page: Playwright Page instance.
            url: Target URL to navigate to.
            wait_until: Navigation wait condition (load, domcontentloaded, networkidle).

        Raises:
            NavigationError: If navigation fails, times out or returns an HTTP error.
        """
        log.debug("Navigating to URL", url=url, wait_until=wait_until)

        try:
            response = await page.goto(url, wait_until=wait_until)
        except PlaywrightTimeoutError as exc:
            raise NavigationError(
                url=url,
                reason=f"Navigation timeout after {self.config.request_timeout_ms}ms",
            ) from exc
        except PlaywrightError as exc:
            raise NavigationError(url=url, reason=str(exc)) from exc

        if response is None:
            raise NavigationError(url=url, reason="No response received")

        if response.status >= 400:
            raise NavigationError(
                url=url,
                reason=f"HTTP {response.status}",
                status_code=response.status,
            )

        log.info("Navigation successful", url=url, status_code=response.status)

    async def release(self) -> None:
        """Close the browser and delete the temporary profile. Safe to repeat."""
        async with self._lock:
            await self._teardown()

    async def _teardown(self) -> None:
        """Clean up browser resources in reverse initialization order."""
        browser, self._browser = self._browser, None
        if browser is not None:
            try:
                await browser.close()
            except PlaywrightError as exc:
                log.warning("Error closing browser", error=str(exc))

        playwright, self._playwright = self._playwright, None
        if playwright is not None:
            try:
                await playwright.stop()
            except PlaywrightError as exc:
                log.warning("Error stopping playwright", error=str(exc))

        if self._remove_profile() or browser is not None:
            log.info("Browser resources cleaned up")

    def _remove_profile(self) -> bool:
        profile_dir, self._profile_dir = self._profile_dir, None
        if profile_dir is None:
            return False
        shutil.rmtree(profile_dir, ignore_errors=True)
        log.debug("Temporary profile removed", profile_dir=str(profile_dir))
        return True
