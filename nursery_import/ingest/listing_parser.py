"""Pure extraction of product listings from captured listing-page HTML."""

import logging
import re
from typing import Optional
from urllib.parse import parse_qs, urlencode, urljoin, urlparse

from selectolax.parser import HTMLParser, Node

from nursery_import.ingest.base import ScrapedProduct, Variant
from nursery_import.ingest.pricing import parse_price_text

logger = logging.getLogger(__name__)

PRODUCT_NODE_SELECTORS = [
    "div[data-productid]",
    ".product-item[data-productid]",
    "._ProductBoxWithLocation",
]
PRODUCT_READY_SELECTOR = "div[data-productid], .product-item[data-productid]"

NAME_SELECTORS = [".product-title", ".product-name", "h2", "h3", ".name"]
SIZE_SELECTORS = [".size", ".product-size", "[data-size]", ".size-name"]
PRICE_SELECTORS = [".price", "[class*=\"price\"]", "[data-price]"]
NEXT_SELECTORS = [".pagination .next", "[data-next-page]", "a[rel=\"next\"]", ".pager .next-page"]
BREADCRUMB_SELECTORS = [
    ".breadcrumb a",
    ".breadcrumbs a",
    "nav[aria-label=\"breadcrumb\"] a",
    "[class*=\"breadcrumb\"] a",
]

GENERIC_CRUMBS = {"home", "plant finder", "plant-finder", "products", "shop", "all products"}
LISTING_SEGMENTS = {"plant-finder"}

# Tried in order, first match wins
TOTAL_RESULT_PATTERNS = [
    re.compile(r"showing\s+\d+\s*(?:-|–|to)\s*\d+\s+of\s+(\d[\d,]*)", re.IGNORECASE),
    re.compile(r"(\d[\d,]*)\s+(?:results|products|items|plants)\s+found", re.IGNORECASE),
    re.compile(r"of\s+(\d[\d,]*)\s+(?:results|products|items|plants)", re.IGNORECASE),
    re.compile(r"total[:\s]+(\d[\d,]*)\s*(?:results|products|items|plants)?", re.IGNORECASE),
    re.compile(r"(\d[\d,]*)\s+(?:results|products|items|plants)\b", re.IGNORECASE),
]

_STOCK_CLASS = re.compile(r"stock-(\d+)")
_DETAILS_PREFIX = re.compile(r"^show details for\s*", re.IGNORECASE)


def node_text(node: Optional[Node]) -> str:
    """Visible text of a node with whitespace collapsed."""
    if node is None:
        return ""
    return re.sub(r"\s+", " ", node.text(separator=" ")).strip()


def is_placeholder_image(src: str) -> bool:
    lowered = src.lower()
    return (
        lowered.startswith("data:")
        or "placeholder" in lowered
        or "blank" in lowered
        or "logo" in lowered
        or "banner" in lowered
    )


def title_from_slug(slug: str) -> str:
    return " ".join(part.capitalize() for part in re.split(r"[-_]+", slug) if part)


def build_listing_url(
    base_url: str,
    listing_path: str,
    page: int = 1,
    category: Optional[str] = None,
) -> str:
    """Listing URL with the hash-fragment route the source uses for filters."""
    url = base_url.rstrip("/") + listing_path
    params = {}
    if category:
        params["category"] = category
    if page > 1:
        params["page"] = str(page)
    if params:
        url += "#/" + urlencode(params)
    return url


def _first(node: Node, selectors: list[str]) -> Optional[Node]:
    for selector in selectors:
        found = node.css_first(selector)
        if found is not None:
            return found
    return None


def _image_src(node: Node, base_url: str) -> Optional[str]:
    for img in node.css("img"):
        attrs = img.attributes
        src = attrs.get("data-src") or attrs.get("data-original") or attrs.get("src")
        if src and not is_placeholder_image(src):
            return urljoin(base_url, src.strip())
    return None


def _variant_from_node(node: Node) -> Optional[Variant]:
    attrs = node.attributes
    combo_id = attrs.get("data-combinationid") or attrs.get("data-combination-id")

    size = attrs.get("data-size")
    if not size:
        size_node = _first(node, SIZE_SELECTORS)
        if size_node is not None:
            size = size_node.attributes.get("data-size") or node_text(size_node)
    size = re.sub(r"^size:\s*", "", size or "", flags=re.IGNORECASE).strip() or None

    price = None
    price_node = _first(node, PRICE_SELECTORS)
    if price_node is not None:
        price = parse_price_text(price_node.attributes.get("data-price") or node_text(price_node))

    stock = None
    stock_match = _STOCK_CLASS.search(attrs.get("class") or "")
    if stock_match:
        stock = int(stock_match.group(1))
    elif (attrs.get("data-stock") or "").isdigit():
        stock = int(attrs["data-stock"])

    if not (combo_id or size):
        return None

    availability = None
    if stock is not None:
        availability = "IN_STOCK" if stock > 0 else "OUT_OF_STOCK"
    return Variant(id=combo_id, size=size, price=price, stock=stock, availability=availability)


def _product_from_node(node: Node, base_url: str) -> Optional[ScrapedProduct]:
    product_id = node.attributes.get("data-productid")

    link = node.css_first("a[href*=\"/\"]")
    href = link.attributes.get("href") if link is not None else None
    source_url = urljoin(base_url, href) if href else None
    slug = None
    if source_url:
        segments = [s for s in urlparse(source_url).path.split("/") if s]
        slug = segments[-1] if segments else None

    if not source_url:
        logger.debug(f"Listing node {product_id or '<no id>'} has no product link, skipping")
        return None
    if not product_id:
        product_id = slug
    if not product_id:
        return None

    name = ""
    name_node = _first(node, NAME_SELECTORS)
    if name_node is not None:
        name = node_text(name_node)
    if not name and link is not None:
        name = link.attributes.get("title") or node_text(link)
    name = _DETAILS_PREFIX.sub("", name).strip()
    if not name and slug:
        name = title_from_slug(slug)

    variant = _variant_from_node(node)
    price = variant.price if variant else None
    if price is None:
        price_node = _first(node, PRICE_SELECTORS)
        if price_node is not None:
            price = parse_price_text(price_node.attributes.get("data-price") or node_text(price_node))

    return ScrapedProduct(
        id=product_id,
        source_id=node.attributes.get("data-productid"),
        name=name,
        source_url=source_url,
        price=price,
        image_url=_image_src(node, base_url),
        variants=[variant] if variant else [],
    )


def _nested_in_product(node: Node) -> bool:
    """Wrapper boxes without an id that hold (or sit inside) an id-bearing node."""
    if node.attributes.get("data-productid"):
        return False
    if node.css_first("[data-productid]") is not None:
        return True
    parent = node.parent
    while parent is not None:
        if parent.attributes.get("data-productid"):
            return True
        parent = parent.parent
    return False


def _same_variant(a: Variant, b: Variant) -> bool:
    if a.id and b.id:
        return a.id == b.id
    return a.size == b.size


def _merge(existing: ScrapedProduct, incoming: ScrapedProduct) -> None:
    for variant in incoming.variants:
        if not any(_same_variant(variant, known) for known in existing.variants):
            existing.variants.append(variant)
    if not existing.image_url:
        existing.image_url = incoming.image_url
    if existing.price is None:
        existing.price = incoming.price
    if not existing.name:
        existing.name = incoming.name


def parse_listing(html: str, base_url: str) -> list[ScrapedProduct]:
    """
    Extract one record per distinct product id from a listing page.

    Repeated nodes with the same id are variant rows of one product and are
    merged into its variants list, in page order.
    """
    tree = HTMLParser(html)
    seen_nodes: set[int] = set()
    products: dict[str, ScrapedProduct] = {}

    for selector in PRODUCT_NODE_SELECTORS:
        for node in tree.css(selector):
            if node.mem_id in seen_nodes:
                continue
            seen_nodes.add(node.mem_id)
            if _nested_in_product(node):
                continue

            product = _product_from_node(node, base_url)
            if product is None:
                continue
            if product.id in products:
                _merge(products[product.id], product)
            else:
                products[product.id] = product

    return list(products.values())


def extract_total_results(text: str) -> Optional[int]:
    """Mine a total result count from page text; first matching pattern wins."""
    for pattern in TOTAL_RESULT_PATTERNS:
        match = pattern.search(text)
        if match:
            total = int(match.group(1).replace(",", ""))
            if total > 0:
                return total
    return None


def _is_disabled(node: Node) -> bool:
    attrs = node.attributes
    if "disabled" in attrs:
        return True
    if (attrs.get("aria-disabled") or "").lower() == "true":
        return True
    classes = attrs.get("class") or ""
    if "disabled" in classes:
        return True
    parent = node.parent
    return parent is not None and "disabled" in (parent.attributes.get("class") or "")


def has_next_control(html: str) -> bool:
    """True when the page shows an enabled "next page" control."""
    tree = HTMLParser(html)
    for selector in NEXT_SELECTORS:
        for node in tree.css(selector):
            if not _is_disabled(node):
                return True
    return False


def page_text(html: str) -> str:
    tree = HTMLParser(html)
    return node_text(tree.body) if tree.body is not None else ""


def breadcrumb_labels(tree: HTMLParser) -> list[str]:
    for selector in BREADCRUMB_SELECTORS:
        labels = [node_text(node) for node in tree.css(selector)]
        labels = [label for label in labels if label]
        if labels:
            return labels
    return []


def extract_listing_category(html: str, url: str, category_filter: Optional[str] = None) -> Optional[str]:
    """
    Category label for a listing page.

    Breadcrumb (skipping generic crumbs) first, then the page heading, then
    the category filter or last path segment of the URL.
    """
    tree = HTMLParser(html)

    crumbs = [c for c in breadcrumb_labels(tree) if c.lower() not in GENERIC_CRUMBS]
    if crumbs:
        return crumbs[-1]

    heading = node_text(tree.css_first("h1"))
    if heading and heading.lower() not in GENERIC_CRUMBS:
        return heading

    if category_filter:
        return title_from_slug(category_filter)

    parsed = urlparse(url)
    fragment_params = parse_qs(parsed.fragment.lstrip("/"))
    if fragment_params.get("category"):
        return title_from_slug(fragment_params["category"][0])

    segments = [s for s in parsed.path.split("/") if s and s.lower() not in LISTING_SEGMENTS]
    if segments:
        return title_from_slug(segments[-1])
    return None


def has_visible_prices(html: str) -> bool:
    """True when at least one price element with a number is rendered."""
    tree = HTMLParser(html)
    for selector in PRICE_SELECTORS:
        for node in tree.css(selector):
            if re.search(r"\d", node_text(node)):
                return True
    return False


def category_from_url(url: str) -> Optional[str]:
    """First path segment of a nested product URL, as a title-cased label."""
    segments = [s for s in urlparse(url).path.split("/") if s]
    if len(segments) > 1 and segments[0].lower() not in LISTING_SEGMENTS:
        return title_from_slug(segments[0])
    return None
