"""Headless Chromium page fetching for snapshots.

One ``BrowserManager`` is owned by each snapshot worker process and passed
to its jobs. The browser is launched lazily, reused across jobs, checked
before every fetch and relaunched if it has disconnected or crashed.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from bookmark_pipeline.config import DEFAULT_USER_AGENT, Settings
from bookmark_pipeline.core.errors import PageFetchError
from bookmark_pipeline.routers.metrics import BROWSER_LAUNCHES

logger = structlog.get_logger(__name__)

LAUNCH_ARGS = ["--no-sandbox", "--disable-setuid-sandbox"]


@dataclass
class FetchedPage:
    url: str
    html: str
    screenshot: bytes
    status: Optional[int] = None


class BrowserManager:
    """Owns a reusable Playwright browser with a health-check/respawn wrapper."""

    def __init__(
        self,
        headless: bool = True,
        viewport: tuple[int, int] = (1280, 720),
        user_agent: str = DEFAULT_USER_AGENT,
        page_timeout_s: float = 30.0,
        settle_delay_s: float = 1.0,
        screenshot_quality: int = 80,
        launcher: Optional[Callable[[], Awaitable[Any]]] = None,
    ):
        self.headless = headless
        self.viewport = viewport
        self.user_agent = user_agent
        self.page_timeout_s = page_timeout_s
        self.settle_delay_s = settle_delay_s
        self.screenshot_quality = screenshot_quality
        self._launcher = launcher or self._launch_chromium
        self._playwright = None
        self._browser = None
        self._lock = asyncio.Lock()
        self.launch_count = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "BrowserManager":
        return cls(
            headless=settings.browser_headless,
            viewport=(settings.browser_viewport_width, settings.browser_viewport_height),
            user_agent=settings.browser_user_agent,
            page_timeout_s=settings.page_timeout_s,
            settle_delay_s=settings.page_settle_delay_s,
            screenshot_quality=settings.thumbnail_quality,
        )

    async def _launch_chromium(self):
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(headless=self.headless, args=LAUNCH_ARGS)

    async def _ensure_browser(self):
        async with self._lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser

            if self._browser is not None:
                logger.warning("browser_disconnected_relaunching", launches=self.launch_count)
                await self._discard_browser()

            self._browser = await self._launcher()
            self.launch_count += 1
            BROWSER_LAUNCHES.inc()
            logger.info("browser_launched", headless=self.headless, launches=self.launch_count)
            return self._browser

    async def _discard_browser(self) -> None:
        browser, self._browser = self._browser, None
        if browser is None:
            return
        try:
            await browser.close()
        except PlaywrightError as e:
            logger.debug("browser_close_failed", error=str(e))

    async def fetch(self, url: str) -> FetchedPage:
        """Render ``url`` and capture its HTML and a viewport screenshot.

        The whole step, browser launch included, is bounded by ``page_timeout_s``.

        Raises:
            PageFetchError: On timeout, launch, navigation or browser failure
        """
        try:
            return await asyncio.wait_for(self._fetch(url), timeout=self.page_timeout_s)
        except asyncio.TimeoutError as e:
            raise PageFetchError(
                f"Timed out after {self.page_timeout_s}s fetching {url}", url=url, timed_out=True
            ) from e

    async def _fetch(self, url: str) -> FetchedPage:
        try:
            browser = await self._ensure_browser()
        except PlaywrightError as e:
            raise PageFetchError(f"Failed to launch browser for {url}: {e}", url=url) from e

        try:
            return await self._render(browser, url)
        except PlaywrightError as e:
            if not browser.is_connected():
                logger.warning("browser_crashed", url=url, error=str(e))
                async with self._lock:
                    if self._browser is browser:
                        await self._discard_browser()
            raise PageFetchError(f"Failed to fetch {url}: {e}", url=url) from e

    async def _render(self, browser, url: str) -> FetchedPage:
        width, height = self.viewport
        context = await browser.new_context(
            viewport={"width": width, "height": height},
            user_agent=self.user_agent,
        )
        try:
            page = await context.new_page()
            response = await page.goto(
                url,
                wait_until="networkidle",
                timeout=self.page_timeout_s * 1000,
            )
            if self.settle_delay_s:
                await asyncio.sleep(self.settle_delay_s)

            html = await page.content()
            screenshot = await page.screenshot(
                type="jpeg", quality=self.screenshot_quality, full_page=False
            )
            status = response.status if response is not None else None
            if status is not None and status >= 400:
                logger.warning("snapshot_http_error_status", url=url, status=status)
            return FetchedPage(url=page.url, html=html, screenshot=screenshot, status=status)
        finally:
            try:
                await context.close()
            except PlaywrightError as e:
                logger.debug("browser_context_close_failed", error=str(e))

    async def close(self) -> None:
        async with self._lock:
            await self._discard_browser()
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        logger.info("browser_closed")
