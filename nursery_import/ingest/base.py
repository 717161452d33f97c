"""Base types shared by catalog sources."""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

SpecValue = Union[str, list[str], bool]


class Availability(str, Enum):
    IN_STOCK = "IN_STOCK"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    PRE_ORDER = "PRE_ORDER"
    DISCONTINUED = "DISCONTINUED"


@dataclass
class Variant:
    """One size/price/stock combination of a scraped product."""

    id: Optional[str] = None  # Source combination id
    size: Optional[str] = None
    price: Optional[Decimal] = None
    stock: Optional[int] = None
    availability: Optional[str] = None

    def to_metadata(self) -> dict:
        return {
            "id": self.id,
            "size": self.size,
            "price": str(self.price) if self.price is not None else None,
            "stock": self.stock,
            "availability": self.availability,
        }


@dataclass
class ScrapedProduct:
    """Transient product record produced by a source, before persistence."""

    id: str
    name: str
    source_url: str
    slug: Optional[str] = None
    description: Optional[str] = None
    botanical_name: Optional[str] = None
    common_name: Optional[str] = None
    common_names: list[str] = field(default_factory=list)
    price: Optional[Decimal] = None
    availability: Optional[str] = None
    variants: list[Variant] = field(default_factory=list)
    category: Optional[str] = None
    image_url: Optional[str] = None
    images: list[str] = field(default_factory=list)
    source_id: Optional[str] = None
    specifications: dict[str, SpecValue] = field(default_factory=dict)
    care_instructions: Optional[str] = None
    planting_instructions: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class ScrapeSession:
    """Pagination state carried between listing page requests."""

    page_size: int
    total_results: Optional[int] = None
    pages_seen: int = 0

    @property
    def total_pages(self) -> Optional[int]:
        if self.total_results is None:
            return None
        return max(1, math.ceil(self.total_results / self.page_size))


@dataclass
class ListingPage:
    """One page of products from a source."""

    products: list[ScrapedProduct]
    has_more: bool
    session: Optional[ScrapeSession] = None


class ProductSource(ABC):
    """Abstract catalog source that can enumerate products page by page."""

    @abstractmethod
    async def list_products(
        self,
        page: int = 1,
        category: Optional[str] = None,
        session: Optional[ScrapeSession] = None,
    ) -> ListingPage:
        """
        Fetch one page of products.

        Args:
            page: 1-based page number
            category: Optional category filter
            session: Pagination state returned by the previous page

        Returns:
            ListingPage with products and continuation state

        Raises:
            SourceError: If the source cannot serve the page
        """
        pass

    @abstractmethod
    def get_source_name(self) -> str:
        """Get the source label stored on products ('API' or 'SCRAPED')."""
        pass

    async def close(self) -> None:
        """Release any resources held by the source."""
        return None
