"""Shared fixtures: in-memory database and fake browser/scraper doubles."""

from typing import Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from nursery_import.db.models import Base
from nursery_import.ingest.base import ListingPage, ProductSource, ScrapedProduct, ScrapeSession
from nursery_import.ingest.browser import PageSnapshot
from nursery_import.ingest.errors import PageLoadError
from nursery_import.ingest.listing_parser import page_text


@pytest.fixture
async def session_factory():
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


class FakeBrowser:
    """Serves canned HTML per URL in place of Playwright."""

    def __init__(self, pages: dict[str, str], login_result: Optional[PageSnapshot] = None, cookies=None):
        self.pages = pages
        self.login_result = login_result
        self._cookies = cookies or []
        self.visited: list[str] = []
        self.started = False
        self.closed = False
        self.login_attempts = 0

    async def start(self):
        self.started = True

    async def add_cookies(self, cookies):
        self._cookies.extend(cookies)

    async def cookies(self):
        return list(self._cookies)

    async def goto(self, url, settle_seconds=0.0, wait_selector=None, wait_timeout=None, scroll_rounds=0, kind="page"):
        self.visited.append(url)
        if url not in self.pages:
            raise PageLoadError(url, "net::ERR_NAME_NOT_RESOLVED", kind="dns")
        html = self.pages[url]
        return PageSnapshot(url=url, html=html, text=page_text(html))

    async def submit_login(self, login_url, username_field_id, password_field_id, username, password, settle_seconds=0.0):
        self.login_attempts += 1
        if self.login_result is None:
            raise PageLoadError(login_url, "login page unavailable")
        return self.login_result

    async def close(self):
        self.closed = True


class FakeScraper(ProductSource):
    """Listing pages and detail records supplied by the test."""

    def __init__(self, pages: list[list[ScrapedProduct]], details: Optional[dict] = None, fail_listing: bool = False):
        self.pages = pages
        self.details = details or {}
        self.fail_listing = fail_listing
        self.closed = False
        self.listing_calls: list[int] = []
        self.detail_calls: list[str] = []

    def get_source_name(self) -> str:
        return "SCRAPED"

    async def list_products(self, page=1, category=None, session: Optional[ScrapeSession] = None) -> ListingPage:
        self.listing_calls.append(page)
        if self.fail_listing:
            raise PageLoadError("https://example.test/plant-finder", "timed out", kind="timeout")
        products = self.pages[page - 1] if page <= len(self.pages) else []
        return ListingPage(products=products, has_more=page < len(self.pages), session=session)

    async def scrape_product_detail(self, url: str):
        self.detail_calls.append(url)
        detail = self.details.get(url)
        if isinstance(detail, Exception):
            raise detail
        return detail

    async def close(self):
        self.closed = True


def make_product(product_id: str, name: Optional[str] = None, **overrides) -> ScrapedProduct:
    values = dict(
        id=product_id,
        name=name or f"Plant {product_id}",
        source_url=f"https://www.plantmark.com.au/trees/plant-{product_id}",
        source_id=product_id,
        category="Trees",
    )
    values.update(overrides)
    return ScrapedProduct(**values)
