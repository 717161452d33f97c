"""Client for the source's first-party JSON API.

No endpoint has been discovered yet, so every call waits on the rate
limiter and then raises EndpointNotAvailableError. The importer treats that
as the signal to fall back to scraping.
"""

import logging
from typing import Optional

from nursery_import.config import settings
from nursery_import.ingest.base import ListingPage, ProductSource, ScrapedProduct, ScrapeSession
from nursery_import.ingest.errors import EndpointNotAvailableError
from nursery_import.ingest.rate_limiter import IntervalLimiter

logger = logging.getLogger(__name__)


class SourceApiClient(ProductSource):
    """Rate-limited API client; an extension point until endpoints exist."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        request_interval: Optional[float] = None,
    ):
        self.base_url = (base_url or settings.source_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.source_api_key
        self.limiter = IntervalLimiter(
            settings.request_interval_seconds if request_interval is None else request_interval
        )

    def get_source_name(self) -> str:
        return "API"

    async def _unavailable(self, endpoint: str):
        await self.limiter.wait()
        logger.debug(f"API endpoint {endpoint} not available")
        raise EndpointNotAvailableError(endpoint)

    async def get_products(
        self,
        page: int = 1,
        page_size: int = 50,
        category: Optional[str] = None,
    ) -> tuple[list[ScrapedProduct], bool]:
        """Paginated product listing. Returns (products, has_more)."""
        await self._unavailable(f"/api/products?page={page}&pageSize={page_size}")

    async def get_product(self, product_id: str) -> Optional[ScrapedProduct]:
        await self._unavailable(f"/api/products/{product_id}")

    async def search_products(self, query: str, page: int = 1) -> tuple[list[ScrapedProduct], bool]:
        await self._unavailable(f"/api/products/search?q={query}&page={page}")

    async def get_categories(self) -> list[dict]:
        await self._unavailable("/api/categories")

    async def list_products(
        self,
        page: int = 1,
        category: Optional[str] = None,
        session: Optional[ScrapeSession] = None,
    ) -> ListingPage:
        products, has_more = await self.get_products(page=page, category=category)
        return ListingPage(products=products, has_more=has_more, session=session)

