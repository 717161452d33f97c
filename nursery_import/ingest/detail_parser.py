"""Layered extraction of product fields from captured detail-page HTML.

Each ``extract_*`` function is an independent strategy over a parsed tree or
plain text. ``parse_product_detail`` composes them in priority order: itemprop
attributes, class/id patterns, label/value pairs, tables, definition lists and
finally regex mining over the visible page text. A later strategy only fills
fields an earlier one left empty.
"""

import logging
import re
from decimal import Decimal
from typing import Optional
from urllib.parse import urljoin, urlparse

from selectolax.parser import HTMLParser, Node

from nursery_import.ingest.base import Availability, ScrapedProduct, SpecValue, Variant
from nursery_import.ingest.listing_parser import (
    GENERIC_CRUMBS,
    breadcrumb_labels,
    category_from_url,
    is_placeholder_image,
    node_text,
)
from nursery_import.ingest.pricing import parse_price_text
from nursery_import.normalize.processor import slug_from_source_url

logger = logging.getLogger(__name__)

NAME_SELECTORS = ["h1", ".product-title", "[data-product-name]", ".product-name"]
GALLERY_IMAGE_SELECTORS = [
    ".cloudzoom-gallery img",
    ".product-gallery img",
    ".cloudzoom img",
    ".picture-img",
    "img[class*=\"gallery\"]",
    "img[class*=\"cloudzoom\"]",
]
FALLBACK_IMAGE_SELECTORS = [
    ".product-images img",
    "[data-image]",
    ".photo img",
    "img[src*=\"thumbs\"]",
    ".product-image img",
]
DESCRIPTION_SELECTORS = [
    ".product-description",
    ".full-description",
    "[itemprop=\"description\"]",
    ".short-description",
    "#description",
    ".description",
]
PRICE_SELECTORS = [".product-price", "[itemprop=\"price\"]", ".price", "[data-price]"]
VARIANT_SELECTORS = [".size.combo", ".location-box.combo"]
CARE_SELECTORS = [".care", ".care-instructions", "[class*=\"care\"]", ".planting-care", ".maintenance"]
PLANTING_SELECTORS = [".planting", ".planting-instructions", "[class*=\"planting\"]", ".how-to-plant"]
BOTANICAL_SELECTORS = [".botanical-name", "#botanical-name", "[class*=\"botanical\"]", "[id*=\"botanical\"]"]
COMMON_NAME_SELECTORS = [".common-name", ".common-names", "#common-name", "[class*=\"common-name\"]"]
LABEL_VALUE_CONTAINERS = [".attribute-pair", ".spec-row", ".product-spec", ".label-value"]
LABEL_SELECTORS = [".label", ".attribute-label", ".spec-label", "dt", "strong"]
VALUE_SELECTORS = [".value", ".attribute-value", ".spec-value", "dd", "span"]
NON_CONTENT_TAGS = "header, footer, aside, nav, script, style, noscript"

# Normalized label -> specification key
SPEC_KEY_MAP = {
    "height": "height",
    "matureheight": "height",
    "width": "width",
    "maturewidth": "width",
    "spread": "width",
    "growthrate": "growthRate",
    "position": "sunRequirements",
    "aspect": "sunRequirements",
    "sun": "sunRequirements",
    "sunrequirements": "sunRequirements",
    "soil": "soilType",
    "soiltype": "soilType",
    "hardiness": "hardinessZone",
    "hardinesszone": "hardinessZone",
    "climatezone": "hardinessZone",
    "flowering": "bloomTime",
    "floweringtime": "bloomTime",
    "bloomtime": "bloomTime",
    "flowercolour": "flowerColor",
    "flowercolor": "flowerColor",
    "foliagecolour": "foliageColor",
    "foliagecolor": "foliageColor",
    "foliage": "foliage",
    "evergreen": "evergreen",
    "deciduous": "deciduous",
    "native": "native",
    "planttype": "plantType",
    "habit": "plantHabit",
    "planthabit": "plantHabit",
}
BOOLEAN_SPECS = {"native", "evergreen", "deciduous"}
LIST_SPECS = {"plantHabit"}

# Table rows whose label starts with one of these are cart/footer rows
TABLE_SKIP_KEYWORDS = ("total", "subtotal", "gst", "shipping", "quantity", "qty", "price", "add to")
MAX_TABLE_ROWS = 20

TEXT_SPEC_PATTERNS = {
    "height": re.compile(r"mature\s+height[:\s]+([^\n.;,|]+)", re.IGNORECASE),
    "width": re.compile(r"mature\s+width[:\s]+([^\n.;,|]+)", re.IGNORECASE),
    "growthRate": re.compile(r"growth\s+rate[:\s]+([^\n.;,|]+)", re.IGNORECASE),
    "sunRequirements": re.compile(r"\bposition[:\s]+([^\n.;|]+)", re.IGNORECASE),
    "soilType": re.compile(r"soil\s+type[:\s]+([^\n.;|]+)", re.IGNORECASE),
    "flowerColor": re.compile(r"flower\s+colou?r[:\s]+([^\n.;,|]+)", re.IGNORECASE),
    "bloomTime": re.compile(r"flowering\s+(?:time|season)[:\s]+([^\n.;,|]+)", re.IGNORECASE),
}
TEXT_MINING_LIMIT = 5000
MAX_SPEC_VALUE_LENGTH = 100

ITEMPROP_FIELDS = ["botanical-name", "common-names", "native", "foliage", "plant-type", "habit"]

_COMBO_ID_PREFIX = re.compile(r"^(?:mobile-)?size-")
_STOCK_CLASS = re.compile(r"stock-(\d+)")
_VARIANT_SIZE = re.compile(r"\d+(?:\.\d+)?\s*(?:cm|mm|l|lt|ltr|litre)\b", re.IGNORECASE)
_SIZE_NUMBER = re.compile(r"\d+(?:\.\d+)?")
_THUMB_SUFFIX = re.compile(r"_\d+\.(?:jpe?g|png|gif|webp)$", re.IGNORECASE)


def _first_node(tree, selectors: list[str]) -> Optional[Node]:
    for selector in selectors:
        node = tree.css_first(selector)
        if node is not None and node_text(node):
            return node
    return None


def normalize_spec_key(label: str) -> str:
    """Map a free-text label to a specification key."""
    compact = re.sub(r"[^a-z0-9]", "", label.lower())
    return SPEC_KEY_MAP.get(compact, compact)


def coerce_spec_value(key: str, value: str) -> Optional[SpecValue]:
    value = re.sub(r"\s+", " ", value).strip(" :")
    if not value:
        return None
    if key in BOOLEAN_SPECS:
        lowered = value.lower()
        if lowered in ("yes", "true", "y"):
            return True
        if lowered in ("no", "false", "n"):
            return False
        return value
    if key in LIST_SPECS and "," in value:
        return [part.strip() for part in value.split(",") if part.strip()]
    return value[:MAX_SPEC_VALUE_LENGTH] if len(value) > MAX_SPEC_VALUE_LENGTH else value


def _fill(target: dict, source: dict) -> None:
    for key, value in source.items():
        if key and value not in (None, "", []) and key not in target:
            target[key] = value


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def extract_itemprop_attributes(tree: HTMLParser) -> dict:
    """Fields marked up with itemprop attributes (the most reliable source)."""
    found: dict = {}
    for prop in ITEMPROP_FIELDS:
        node = tree.css_first(f"[itemprop=\"{prop}\"]")
        if node is None:
            continue
        value = node.attributes.get("content") or node_text(node)
        if value:
            found[prop] = value

    result: dict = {"specifications": {}}
    if "botanical-name" in found:
        result["botanical_name"] = found["botanical-name"]
    if "common-names" in found:
        names: list[str] = []
        for name in found["common-names"].split(","):
            name = name.strip()
            if name and name not in names:
                names.append(name)
        result["common_names"] = names
    specs = result["specifications"]
    if "native" in found:
        specs["native"] = found["native"].strip().lower() in ("yes", "true")
    if "foliage" in found:
        specs["foliage"] = found["foliage"]
    if "plant-type" in found:
        specs["plantType"] = found["plant-type"]
    if "habit" in found:
        specs["plantHabit"] = [h.strip() for h in found["habit"].split(",") if h.strip()]
    return result


def extract_class_pattern_names(tree: HTMLParser) -> dict:
    """Botanical and common names from class/id naming conventions."""
    result: dict = {}
    botanical = _first_node(tree, BOTANICAL_SELECTORS)
    if botanical is not None:
        result["botanical_name"] = re.sub(r"^botanical name:?\s*", "", node_text(botanical), flags=re.IGNORECASE)
    common = _first_node(tree, COMMON_NAME_SELECTORS)
    if common is not None:
        text = re.sub(r"^common names?:?\s*", "", node_text(common), flags=re.IGNORECASE)
        result["common_names"] = [n.strip() for n in text.split(",") if n.strip()]
    return result


def extract_label_value_specs(tree: HTMLParser) -> dict[str, SpecValue]:
    """Specs from label/value element pairs such as "Mature Height" / "2m"."""
    specs: dict[str, SpecValue] = {}
    for container_selector in LABEL_VALUE_CONTAINERS:
        for container in tree.css(container_selector):
            label = _first_node(container, LABEL_SELECTORS)
            if label is None:
                continue
            value = next(
                (
                    node
                    for selector in VALUE_SELECTORS
                    for node in container.css(selector)
                    if node.mem_id != label.mem_id and node_text(node)
                ),
                None,
            )
            if value is None:
                continue
            key = normalize_spec_key(node_text(label))
            coerced = coerce_spec_value(key, node_text(value))
            if key and coerced is not None and key not in specs:
                specs[key] = coerced
    return specs


def extract_table_specs(tree: HTMLParser) -> dict[str, SpecValue]:
    """Key/value rows from tables, skipping cart and footer rows."""
    specs: dict[str, SpecValue] = {}
    for table in tree.css("table"):
        for row in table.css("tr")[:MAX_TABLE_ROWS]:
            cells = row.css("th, td")
            if len(cells) < 2:
                continue
            label = node_text(cells[0])
            if not label or label.lower().startswith(TABLE_SKIP_KEYWORDS):
                continue
            key = normalize_spec_key(label)
            coerced = coerce_spec_value(key, node_text(cells[1]))
            if key and coerced is not None and key not in specs:
                specs[key] = coerced
    return specs


def extract_definition_list_specs(tree: HTMLParser) -> dict[str, SpecValue]:
    """Key/value pairs from <dl><dt>label</dt><dd>value</dd></dl> blocks."""
    specs: dict[str, SpecValue] = {}
    for dl in tree.css("dl"):
        pending_key = None
        for child in dl.iter():
            if child.tag == "dt":
                pending_key = normalize_spec_key(node_text(child))
            elif child.tag == "dd" and pending_key:
                coerced = coerce_spec_value(pending_key, node_text(child))
                if coerced is not None and pending_key not in specs:
                    specs[pending_key] = coerced
                pending_key = None
    return specs


def extract_text_pattern_specs(text: str) -> dict[str, SpecValue]:
    """Last resort: regex mining over the start of the visible page text."""
    window = text[:TEXT_MINING_LIMIT]
    specs: dict[str, SpecValue] = {}
    for key, pattern in TEXT_SPEC_PATTERNS.items():
        match = pattern.search(window)
        if match:
            coerced = coerce_spec_value(key, match.group(1))
            if coerced is not None:
                specs[key] = coerced
    return specs


def extract_breadcrumb_category(tree: HTMLParser, url: str, product_name: Optional[str] = None) -> Optional[str]:
    """Last non-generic breadcrumb, else the first URL path segment of a nested path."""
    excluded = set(GENERIC_CRUMBS)
    if product_name:
        excluded.add(product_name.lower())
    crumbs = [c for c in breadcrumb_labels(tree) if c.lower() not in excluded]
    if crumbs:
        return crumbs[-1]

    return category_from_url(url)


def extract_product_id(tree: HTMLParser, url: str) -> Optional[str]:
    for selector in ("[data-product-id]", "[data-productid]"):
        node = tree.css_first(selector)
        if node is not None:
            value = node.attributes.get("data-product-id") or node.attributes.get("data-productid")
            if value:
                return value.strip()
    return slug_from_source_url(url)


def extract_name(tree: HTMLParser) -> Optional[str]:
    """Name from a name-bearing element, else the first segment of the document title."""
    node = _first_node(tree, NAME_SELECTORS)
    if node is not None:
        return node_text(node)
    title = node_text(tree.css_first("title"))
    if title:
        return title.split("|")[0].strip() or None
    return None


def _image_url(node: Node) -> Optional[str]:
    attrs = node.attributes
    return (
        attrs.get("data-zoom-image")
        or attrs.get("data-large")
        or attrs.get("data-image")
        or attrs.get("data-src")
        or attrs.get("src")
    )


def extract_images(tree: HTMLParser, base_url: str) -> list[str]:
    """
    Gallery images first, generic product image selectors otherwise.

    Thumbnail suffixes are kept; the downloader tries the full-size variant.
    Two thumbnails of one asset (e.g. _100 and _400) collapse to the first.
    """
    for selectors in (GALLERY_IMAGE_SELECTORS, FALLBACK_IMAGE_SELECTORS):
        images: list[str] = []
        seen_assets: set[str] = set()
        for selector in selectors:
            for node in tree.css(selector):
                src = _image_url(node)
                if not src or is_placeholder_image(src):
                    continue
                absolute = urljoin(base_url, src.strip())
                asset = _THUMB_SUFFIX.sub("", urlparse(absolute).path)
                if asset in seen_assets:
                    continue
                seen_assets.add(asset)
                images.append(absolute)
        if images:
            return images
    return []


def _size_sort_key(variant: Variant) -> float:
    match = _SIZE_NUMBER.search(variant.size or "")
    return float(match.group(0)) if match else float("inf")


def _variant_price(tree: HTMLParser, node: Node, combo_id: Optional[str]) -> Optional[Decimal]:
    if combo_id:
        ex_node = tree.css_first(f"#price-exgst-{combo_id}")
        if ex_node is not None:
            price = parse_price_text(node_text(ex_node))
            if price is not None:
                return price
        inc_node = tree.css_first(f"#price-incgst-{combo_id}")
        if inc_node is not None:
            price = parse_price_text(node_text(inc_node), assume_inc_gst=True)
            if price is not None:
                return price

    data_price = node.attributes.get("data-price")
    if data_price:
        price = parse_price_text(data_price)
        if price is not None:
            return price

    price_node = node.css_first(".price, [class*=\"price\"]")
    if price_node is not None:
        return parse_price_text(node_text(price_node))
    return None


def extract_variants(tree: HTMLParser) -> list[Variant]:
    """Size combinations with stock and ex-GST price, sorted by numeric size."""
    variants: list[Variant] = []
    seen: set[str] = set()

    for selector in VARIANT_SELECTORS:
        for node in tree.css(selector):
            attrs = node.attributes
            raw_id = attrs.get("data-combinationid") or attrs.get("id") or ""
            combo_id = _COMBO_ID_PREFIX.sub("", raw_id) or None

            size_node = node.css_first(".size-name, .size-label, .name")
            size_text = node_text(size_node) if size_node is not None else node_text(node)
            size_text = re.sub(r"^size:\s*", "", size_text, flags=re.IGNORECASE)
            size_match = _VARIANT_SIZE.search(size_text)
            if not size_match:
                continue
            size = size_match.group(0).replace(" ", "")

            key = combo_id or size
            if key in seen:
                continue
            seen.add(key)

            stock = None
            stock_match = _STOCK_CLASS.search(attrs.get("class") or "")
            if stock_match:
                stock = int(stock_match.group(1))
            elif (attrs.get("data-stock") or "").isdigit():
                stock = int(attrs["data-stock"])

            availability = None
            if stock is not None:
                availability = (
                    Availability.IN_STOCK.value if stock > 0 else Availability.OUT_OF_STOCK.value
                )

            variants.append(Variant(
                id=combo_id,
                size=size,
                price=_variant_price(tree, node, combo_id),
                stock=stock,
                availability=availability,
            ))

    variants.sort(key=_size_sort_key)
    return variants


def extract_price(tree: HTMLParser, variants: list[Variant]) -> Optional[Decimal]:
    """First priced variant, else the page's main price element."""
    for variant in variants:
        if variant.price is not None:
            return variant.price
    for selector in PRICE_SELECTORS:
        node = tree.css_first(selector)
        if node is None:
            continue
        raw = node.attributes.get("content") or node.attributes.get("data-price") or node_text(node)
        price = parse_price_text(raw)
        if price is not None:
            return price
    return None


def clean_description(text: str) -> Optional[str]:
    text = re.sub(r"back to results", "", text, flags=re.IGNORECASE)
    text = re.sub(r"\s+", " ", text).strip()
    return text[:2000] or None


def extract_description(tree: HTMLParser) -> Optional[str]:
    node = _first_node(tree, DESCRIPTION_SELECTORS)
    if node is not None:
        return clean_description(node_text(node))
    meta = tree.css_first("meta[name=\"description\"]")
    if meta is not None and meta.attributes.get("content"):
        return clean_description(meta.attributes["content"])
    return None


def _section_text(tree: HTMLParser, selectors: list[str]) -> Optional[str]:
    for selector in selectors:
        for node in tree.css(selector):
            text = node_text(node)
            if 20 <= len(text) <= 2000:
                return text
    return None


def extract_care_sections(tree: HTMLParser) -> tuple[Optional[str], Optional[str]]:
    """Care and planting instruction blocks of plausible length."""
    return _section_text(tree, CARE_SELECTORS), _section_text(tree, PLANTING_SELECTORS)


def extract_availability(text: str, variants: list[Variant]) -> Optional[str]:
    """
    Variant stock decides when present. Otherwise page wording is checked;
    None means the page gave no availability signal.
    """
    statuses = [v.availability for v in variants if v.availability]
    if statuses:
        if Availability.IN_STOCK.value in statuses:
            return Availability.IN_STOCK.value
        return Availability.OUT_OF_STOCK.value

    lowered = text.lower()
    if "out of stock" in lowered or "unavailable" in lowered:
        return Availability.OUT_OF_STOCK.value
    if "pre-order" in lowered or "preorder" in lowered:
        return Availability.PRE_ORDER.value
    if "discontinued" in lowered:
        return Availability.DISCONTINUED.value
    return None


def content_text(html: str) -> str:
    """Visible text with page chrome removed, one line per block."""
    tree = HTMLParser(html)
    for node in tree.css(NON_CONTENT_TAGS):
        node.decompose()
    body = tree.body
    if body is None:
        return ""
    text = body.text(separator="\n")
    return "\n".join(line.strip() for line in text.splitlines() if line.strip())


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


def parse_product_detail(html: str, url: str, base_url: Optional[str] = None) -> Optional[ScrapedProduct]:
    """
    Extract a product from a detail page.

    Returns None when the page does not look like a product page at all: no
    name-bearing element and no usable document title.
    """
    tree = HTMLParser(html)
    base_url = base_url or url

    name = extract_name(tree)
    if not name:
        logger.debug(f"No product name found on {url}")
        return None

    text = content_text(html)
    itemprop = extract_itemprop_attributes(tree)
    class_names = extract_class_pattern_names(tree)

    specifications: dict[str, SpecValue] = {}
    _fill(specifications, itemprop["specifications"])
    _fill(specifications, extract_label_value_specs(tree))
    _fill(specifications, extract_table_specs(tree))
    _fill(specifications, extract_definition_list_specs(tree))
    _fill(specifications, extract_text_pattern_specs(text))

    common_names = itemprop.get("common_names") or class_names.get("common_names") or []
    variants = extract_variants(tree)
    images = extract_images(tree, base_url)
    care, planting = extract_care_sections(tree)
    product_id = extract_product_id(tree, url) or name

    return ScrapedProduct(
        id=product_id,
        source_id=product_id,
        name=name,
        slug=slug_from_source_url(url),
        source_url=url,
        description=extract_description(tree),
        botanical_name=itemprop.get("botanical_name") or class_names.get("botanical_name") or None,
        common_name=common_names[0] if common_names else None,
        common_names=common_names,
        price=extract_price(tree, variants),
        availability=extract_availability(text, variants),
        variants=variants,
        category=extract_breadcrumb_category(tree, url, name),
        image_url=images[0] if images else None,
        images=images,
        specifications=specifications,
        care_instructions=care,
        planting_instructions=planting,
    )
