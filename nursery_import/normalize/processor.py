"""Validate and normalize scraped product records."""

import dataclasses
import logging
import re
import unicodedata
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Union
from urllib.parse import urlparse

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, ValidationError, field_validator

from nursery_import.ingest.base import Availability, ScrapedProduct, Variant

logger = logging.getLogger(__name__)

_SLUG_STRIP = re.compile(r"[^\w\s-]", re.ASCII)
_SLUG_COLLAPSE = re.compile(r"[\s_-]+")

# Listing root segment, never a product slug
_LISTING_SEGMENTS = {"plant-finder"}


class VariantSchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    size: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    stock: Optional[int] = None
    availability: Optional[Availability] = None


class ProductSchema(BaseModel):
    """Schema a scraped record must satisfy before it may be persisted."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    source_url: AnyHttpUrl
    slug: Optional[str] = None
    description: Optional[str] = None
    botanical_name: Optional[str] = None
    common_name: Optional[str] = None
    common_names: list[str] = []
    price: Optional[Decimal] = Field(default=None, gt=0)
    availability: Optional[Availability] = None
    variants: list[VariantSchema] = []
    category: Optional[str] = None
    image_url: Optional[AnyHttpUrl] = None
    images: list[AnyHttpUrl] = []
    source_id: Optional[str] = None
    specifications: dict[str, Union[bool, str, list[str]]] = {}
    care_instructions: Optional[str] = None
    planting_instructions: Optional[str] = None
    metadata: dict = {}

    @field_validator("id", "name")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value


@dataclass
class ValidationResult:
    valid: bool
    product: Optional[ScrapedProduct] = None
    errors: list[str] = field(default_factory=list)


def _format_errors(exc: ValidationError) -> list[str]:
    messages = []
    for error in exc.errors():
        path = ".".join(str(part) for part in error["loc"]) or "<root>"
        messages.append(f"{path}: {error['msg']}")
    return messages


def _as_dict(raw: Union[dict, ScrapedProduct]) -> dict:
    if isinstance(raw, ScrapedProduct):
        return dataclasses.asdict(raw)
    return dict(raw)


def _from_dict(data: dict) -> ScrapedProduct:
    names = {f.name for f in dataclasses.fields(ScrapedProduct)}
    values = {key: value for key, value in data.items() if key in names}
    values["variants"] = [
        variant if isinstance(variant, Variant) else Variant(**{
            k: v for k, v in variant.items() if k in {f.name for f in dataclasses.fields(Variant)}
        })
        for variant in values.get("variants") or []
    ]
    return ScrapedProduct(**values)


def validate_product(raw: Union[dict, ScrapedProduct]) -> ValidationResult:
    """
    Validate a scraped record against the product schema.

    Fails closed: any violation rejects the record as a whole. The returned
    product is the input unchanged (as a ScrapedProduct), not a repaired copy.
    """
    try:
        data = _as_dict(raw)
    except (TypeError, ValueError) as e:
        return ValidationResult(valid=False, errors=[f"<root>: {e}"])

    try:
        ProductSchema.model_validate(data)
    except ValidationError as e:
        return ValidationResult(valid=False, errors=_format_errors(e))

    product = raw if isinstance(raw, ScrapedProduct) else _from_dict(data)
    return ValidationResult(valid=True, product=product)


def generate_slug(text: str) -> str:
    """
    Build a URL slug: lowercase, drop punctuation, hyphenate whitespace.

    Accented letters are folded to ASCII first so the result only ever
    contains [a-z0-9-].
    """
    folded = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    slug = folded.lower().strip()
    slug = _SLUG_STRIP.sub("", slug)
    slug = _SLUG_COLLAPSE.sub("-", slug)
    return slug.strip("-")


def slug_from_source_url(url: str) -> Optional[str]:
    """Return the last meaningful path segment of a product URL, if any."""
    segments = [s for s in urlparse(url).path.split("/") if s]
    segments = [s for s in segments if s.lower() not in _LISTING_SEGMENTS]
    if not segments:
        return None
    return generate_slug(segments[-1]) or None


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def normalize_product(product: ScrapedProduct) -> ScrapedProduct:
    """
    Trim string fields and derive a slug from the name when absent.

    Pure and idempotent: normalizing an already normalized record returns
    an equal record.
    """
    name = product.name.strip()
    slug = _clean(product.slug)
    if not slug:
        slug = generate_slug(name) or generate_slug(product.id) or None

    images: list[str] = []
    for url in product.images:
        url = url.strip()
        if url and url not in images:
            images.append(url)

    common_names: list[str] = []
    for common in product.common_names:
        common = common.strip()
        if common and common not in common_names:
            common_names.append(common)

    return dataclasses.replace(
        product,
        id=product.id.strip(),
        name=name,
        slug=slug,
        source_url=product.source_url.strip(),
        description=_clean(product.description),
        botanical_name=_clean(product.botanical_name),
        common_name=_clean(product.common_name),
        common_names=common_names,
        category=_clean(product.category),
        image_url=_clean(product.image_url),
        images=images,
        source_id=_clean(product.source_id),
        care_instructions=_clean(product.care_instructions),
        planting_instructions=_clean(product.planting_instructions),
        variants=list(product.variants),
        specifications=dict(product.specifications),
        metadata=dict(product.metadata),
    )


def resolve_availability(product: ScrapedProduct) -> str:
    """
    Overall availability for persistence.

    An explicit value wins. Otherwise any in-stock variant makes the product
    in stock; variants that agree on another status pass it through; mixed
    non-in-stock variants mean out of stock. With no signal at all the
    product is treated as in stock.
    """
    if product.availability:
        return Availability(product.availability).value

    statuses = [v.availability for v in product.variants if v.availability]
    if not statuses:
        return Availability.IN_STOCK.value
    if Availability.IN_STOCK.value in statuses:
        return Availability.IN_STOCK.value
    if len(set(statuses)) == 1:
        return Availability(statuses[0]).value
    return Availability.OUT_OF_STOCK.value
