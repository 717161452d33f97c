"""Catalog scraper driving a headless browser against the source site."""

import dataclasses
import logging
from typing import Optional
from urllib.parse import urljoin, urlparse

from nursery_import.config import Settings, settings as default_settings
from nursery_import.ingest.base import ListingPage, ProductSource, ScrapedProduct, ScrapeSession
from nursery_import.ingest.browser import BrowserSession
from nursery_import.ingest.detail_parser import parse_product_detail
from nursery_import.ingest.errors import SourceAuthError, SourceError
from nursery_import.ingest.listing_parser import (
    PRODUCT_READY_SELECTOR,
    build_listing_url,
    extract_listing_category,
    extract_total_results,
    has_next_control,
    has_visible_prices,
    parse_listing,
)
from nursery_import.ingest.rate_limiter import UpstreamGate, upstream_gate
from nursery_import.ingest.session_manager import SessionManager, session_manager

logger = logging.getLogger(__name__)


def _normalize_path(path: str) -> str:
    return "/" + path.strip("/").lower()


def login_succeeded(
    url: str,
    body_text: str,
    cookie_names: list[str],
    login_path: str,
    text_markers: list[str],
    cookie_markers: list[str],
) -> bool:
    """
    Decide whether a login attempt produced a session.

    The browser must have left the login page, and the page must show a
    session marker in its text or the context must hold an auth cookie.
    """
    if _normalize_path(urlparse(url).path) == _normalize_path(urlparse(login_path).path):
        return False
    text = body_text.lower()
    has_text = any(marker in text for marker in text_markers)
    has_cookie = any(
        marker.lower() in name.lower() for name in cookie_names for marker in cookie_markers
    )
    return has_text or has_cookie


class CatalogScraper(ProductSource):
    """Enumerates listing pages and extracts product detail pages.

    Owns one browser session for its lifetime. Every navigation passes
    through the shared upstream gate. Navigation errors propagate to the
    caller; only authentication failure is absorbed.
    """

    def __init__(
        self,
        browser: Optional[BrowserSession] = None,
        gate: Optional[UpstreamGate] = None,
        sessions: Optional[SessionManager] = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or default_settings
        self.browser = browser or BrowserSession()
        self.gate = gate or upstream_gate
        self.sessions = sessions or session_manager
        self.base_url = self.config.source_base_url.rstrip("/")
        self.authenticated = False
        self._initialized = False

    def get_source_name(self) -> str:
        return "SCRAPED"

    @property
    def has_credentials(self) -> bool:
        return bool(self.config.source_username and self.config.source_password)

    async def initialize(self) -> None:
        """Start the browser and log in when credentials are configured.

        A failed login is logged and the scraper carries on unauthenticated;
        prices will usually be missing in that case.
        """
        if self._initialized:
            return

        await self.browser.start()
        await self.browser.add_cookies(self.sessions.load_cookies(self.config.source_name))
        self._initialized = True

        if not self.has_credentials:
            logger.info("No source credentials configured, scraping anonymously")
            return

        try:
            await self._login()
            self.authenticated = True
            logger.info("Authenticated with catalog source")
        except SourceError as e:
            self.authenticated = False
            logger.warning(f"Source login failed, continuing unauthenticated: {e}")

    async def _login(self) -> None:
        login_url = self.base_url + self.config.source_login_path
        async with self.gate.slot("login"):
            snapshot = await self.browser.submit_login(
                login_url,
                self.config.source_username_field_id,
                self.config.source_password_field_id,
                self.config.source_username,
                self.config.source_password,
                settle_seconds=self.config.login_settle_seconds,
            )

        cookies = await self.browser.cookies()
        if not login_succeeded(
            snapshot.url,
            snapshot.text,
            [cookie.get("name", "") for cookie in cookies],
            self.config.source_login_path,
            self.config.source_session_text_markers,
            self.config.source_auth_cookie_markers,
        ):
            self.sessions.clear_session(self.config.source_name)
            raise SourceAuthError(f"Login not confirmed (landed on {snapshot.url})")

        # Prices are only rendered for logged-in trade accounts
        async with self.gate.slot("listing"):
            listing = await self.browser.goto(
                build_listing_url(self.base_url, self.config.source_listing_path),
                settle_seconds=self.config.listing_settle_seconds,
                wait_selector=PRODUCT_READY_SELECTOR,
                kind="listing",
            )
        if not has_visible_prices(listing.html):
            logger.warning("Logged in but no prices visible on the listing page")

        self.sessions.save_cookies(self.config.source_name, cookies)

    def new_session(self) -> ScrapeSession:
        return ScrapeSession(page_size=self.config.listing_page_size)

    async def scrape_products(
        self,
        page: int = 1,
        category: Optional[str] = None,
        session: Optional[ScrapeSession] = None,
    ) -> ListingPage:
        """
        Load one listing page and extract its products.

        Pagination ends when the mined total result count says this was the
        last page; without a total, an enabled "next" control means more.
        """
        await self.initialize()
        session = session or self.new_session()

        url = build_listing_url(self.base_url, self.config.source_listing_path, page, category)
        async with self.gate.slot("listing"):
            snapshot = await self.browser.goto(
                url,
                settle_seconds=self.config.listing_settle_seconds,
                wait_selector=PRODUCT_READY_SELECTOR,
                wait_timeout=self.config.listing_selector_timeout_seconds,
                scroll_rounds=self.config.max_scroll_rounds,
                kind="listing",
            )

        products = parse_listing(snapshot.html, self.base_url)
        label = extract_listing_category(snapshot.html, url, category)
        if label:
            for product in products:
                product.category = product.category or label

        total = session.total_results
        if total is None:
            total = extract_total_results(snapshot.text)
        session = dataclasses.replace(session, total_results=total, pages_seen=session.pages_seen + 1)

        if session.total_pages is not None:
            has_more = page < session.total_pages
        else:
            has_more = has_next_control(snapshot.html)

        logger.info(
            f"Listing page {page}: {len(products)} products, "
            f"total={total if total is not None else '?'}, has_more={has_more}"
        )
        return ListingPage(products=products, has_more=has_more, session=session)

    async def list_products(
        self,
        page: int = 1,
        category: Optional[str] = None,
        session: Optional[ScrapeSession] = None,
    ) -> ListingPage:
        return await self.scrape_products(page, category, session)

    async def scrape_product_detail(self, url: str) -> Optional[ScrapedProduct]:
        """
        Extract a product detail page. Returns None for non-product pages.

        Raises:
            PageLoadError: navigation failed
        """
        await self.initialize()
        absolute = urljoin(self.base_url + "/", url)
        async with self.gate.slot("detail"):
            snapshot = await self.browser.goto(
                absolute,
                settle_seconds=self.config.detail_settle_seconds,
                kind="detail",
            )
        product = parse_product_detail(snapshot.html, absolute, self.base_url)
        if product is None:
            logger.info(f"Not a product page: {absolute}")
        return product

    async def close(self) -> None:
        """Release the browser session."""
        await self.browser.close()
        self._initialized = False
