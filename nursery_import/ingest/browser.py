"""Playwright browser session: navigate, settle, snapshot."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

from playwright.async_api import Browser, BrowserContext, Page, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from nursery_import import metrics
from nursery_import.config import settings
from nursery_import.ingest.errors import PageLoadError

logger = logging.getLogger(__name__)

STEALTH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-infobars",
    "--disable-extensions",
]

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# Hides the webdriver flag most bot checks look at first
STEALTH_INIT_SCRIPT = "Object.defineProperty(navigator, 'webdriver', {get: () => undefined});"

SCROLL_SCRIPT = """
() => {
    window.scrollTo(0, document.body.scrollHeight);
    return document.body.scrollHeight;
}
"""


@dataclass
class PageSnapshot:
    """Serialized state of a page after it settled."""

    url: str
    html: str
    text: str
    title: str = ""


class BrowserSession:
    """One Chromium context and page, owned by a single scraper."""

    def __init__(self, headless: bool = True, navigation_timeout: Optional[float] = None):
        self.headless = headless
        self.navigation_timeout_ms = int((navigation_timeout or settings.navigation_timeout_seconds) * 1000)
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    async def start(self) -> None:
        if self._page is not None:
            return
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.headless,
            args=STEALTH_ARGS,
        )
        self._context = await self._browser.new_context(
            user_agent=USER_AGENT,
            viewport={"width": 1920, "height": 1080},
            locale="en-AU",
        )
        await self._context.add_init_script(STEALTH_INIT_SCRIPT)
        self._page = await self._context.new_page()
        self._page.set_default_navigation_timeout(self.navigation_timeout_ms)
        logger.info("Browser session started")

    def _require_page(self) -> Page:
        if self._page is None:
            raise RuntimeError("Browser session not started")
        return self._page

    async def snapshot(self) -> PageSnapshot:
        page = self._require_page()
        html = await page.content()
        text = await page.evaluate("() => document.body ? document.body.innerText : ''")
        return PageSnapshot(url=page.url, html=html, text=text or "", title=await page.title())

    async def _scroll_until_stable(self, max_rounds: int, pause: float = 1.0) -> None:
        """Scroll to the bottom until the page height stops growing (virtual scroll)."""
        page = self._require_page()
        last_height = 0
        for _ in range(max_rounds):
            height = await page.evaluate(SCROLL_SCRIPT)
            if height == last_height:
                break
            last_height = height
            await asyncio.sleep(pause)

    async def goto(
        self,
        url: str,
        settle_seconds: float = 0.0,
        wait_selector: Optional[str] = None,
        wait_timeout: Optional[float] = None,
        scroll_rounds: int = 0,
        kind: str = "page",
    ) -> PageSnapshot:
        """
        Navigate and return a snapshot once the page settled.

        The site has no reliable ready signal, so a fixed settle delay follows
        DOMContentLoaded. A missing wait_selector is not an error; callers
        decide from the snapshot whether content is there.

        Raises:
            PageLoadError: navigation failed or timed out
        """
        page = self._require_page()
        started = time.monotonic()
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
        except PlaywrightTimeoutError as e:
            metrics.record_source_request(kind, success=False, duration=time.monotonic() - started)
            raise PageLoadError(url, f"navigation timed out: {e}", kind="timeout") from e
        except PlaywrightError as e:
            metrics.record_source_request(kind, success=False, duration=time.monotonic() - started)
            raise PageLoadError(url, str(e)) from e

        if settle_seconds:
            await asyncio.sleep(settle_seconds)

        if wait_selector:
            try:
                await page.wait_for_selector(
                    wait_selector,
                    timeout=int((wait_timeout or settings.listing_selector_timeout_seconds) * 1000),
                )
            except PlaywrightTimeoutError:
                logger.debug(f"Selector {wait_selector} did not appear on {url}")

        if scroll_rounds:
            await self._scroll_until_stable(scroll_rounds)

        snapshot = await self.snapshot()
        metrics.record_source_request(kind, success=True, duration=time.monotonic() - started)
        return snapshot

    async def submit_login(
        self,
        login_url: str,
        username_field_id: str,
        password_field_id: str,
        username: str,
        password: str,
        settle_seconds: float = 0.0,
    ) -> PageSnapshot:
        """Fill and submit the login form, then snapshot the resulting page."""
        page = self._require_page()
        await self.goto(login_url, kind="login")
        try:
            await page.fill(f"#{username_field_id}", username)
            await page.fill(f"#{password_field_id}", password)
            await page.press(f"#{password_field_id}", "Enter")
            await page.wait_for_load_state("domcontentloaded")
        except PlaywrightError as e:
            raise PageLoadError(login_url, f"login form interaction failed: {e}") from e
        if settle_seconds:
            await asyncio.sleep(settle_seconds)
        return await self.snapshot()

    async def cookies(self) -> list[dict]:
        if self._context is None:
            return []
        return [dict(cookie) for cookie in await self._context.cookies()]

    async def add_cookies(self, cookies: list[dict]) -> None:
        if self._context is not None and cookies:
            await self._context.add_cookies(cookies)

    async def close(self) -> None:
        """Close page, context, browser and the driver. Safe to call twice."""
        if self._context is not None:
            try:
                await self._context.close()
            except PlaywrightError as e:
                logger.error(f"Error closing browser context: {e}")
            self._context = None
            self._page = None

        if self._browser is not None:
            await self._browser.close()
            self._browser = None

        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
