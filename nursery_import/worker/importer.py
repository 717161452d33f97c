"""Import orchestrator: job lifecycle, candidate iteration and product upsert."""

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nursery_import import metrics
from nursery_import.config import Settings, settings as default_settings
from nursery_import.db.models import Category, ImportJob, JobStatus, Product
from nursery_import.db.session import AsyncSessionLocal
from nursery_import.ingest.api_client import SourceApiClient
from nursery_import.ingest.base import ListingPage, ProductSource, ScrapedProduct
from nursery_import.ingest.errors import (
    CategoryResolutionError,
    EndpointNotAvailableError,
    ProductValidationError,
    SourceAuthError,
    SourceNetworkError,
)
from nursery_import.ingest.images import ImageDownloadService
from nursery_import.ingest.listing_parser import category_from_url
from nursery_import.ingest.pricing import to_cents
from nursery_import.ingest.scraper import CatalogScraper
from nursery_import.logging_config import get_logger
from nursery_import.normalize.processor import (
    generate_slug,
    normalize_product,
    resolve_availability,
    validate_product,
)

logger = logging.getLogger(__name__)

# API failures that mean "use the scraper instead"; anything else is fatal
FALLBACK_ERRORS = (EndpointNotAvailableError, SourceNetworkError, SourceAuthError)


@dataclass
class ImportOptions:
    job_type: str = "FULL"
    use_api: bool = False
    category: Optional[str] = None
    max_products: Optional[int] = None
    scrape_details: bool = True
    download_images: bool = False

    def to_metadata(self) -> dict:
        return dataclasses.asdict(self)

    @classmethod
    def from_metadata(cls, metadata: Optional[dict]) -> "ImportOptions":
        names = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in (metadata or {}).items() if k in names})


@dataclass
class ImportResult:
    created: int = 0
    updated: int = 0
    errors: list[dict] = field(default_factory=list)


@dataclass
class ProductImportResult:
    created: bool
    updated: bool


@dataclass
class ProductMatch:
    product: Optional[Product]
    matched_on: Optional[str] = None
    conflicting_ids: list[int] = field(default_factory=list)


@dataclass
class _RunState:
    processed: int = 0
    created: int = 0
    updated: int = 0
    errors: list[dict] = field(default_factory=list)


def _now() -> datetime:
    return datetime.utcnow()


def error_entry(message: str, product_id: Optional[str] = None, url: Optional[str] = None) -> dict:
    return {
        "product_id": product_id,
        "url": url,
        "message": message,
        "timestamp": _now().isoformat() + "Z",
    }


def normalize_category_name(name: str) -> str:
    """Collapse whitespace and capitalize the first letter only ("ROSES" -> "Roses")."""
    name = " ".join(name.split())
    return name[:1].upper() + name[1:].lower()


def resolve_price(product: ScrapedProduct, multiplier: float) -> Optional[Decimal]:
    """
    Retail price for persistence.

    Variant prices are wholesale, so the cheapest one is marked up by the
    multiplier and takes precedence. Otherwise the scraped price is used.
    None means no price signal at all.
    """
    variant_prices = [v.price for v in product.variants if v.price is not None]
    if variant_prices:
        return to_cents(min(variant_prices) * Decimal(str(multiplier)))
    if product.price is not None:
        return to_cents(Decimal(product.price))
    return None


def merge_listing_into_detail(detail: ScrapedProduct, listing: ScrapedProduct) -> ScrapedProduct:
    """Detail page fields win; the listing record fills what the page lacked."""
    return dataclasses.replace(
        detail,
        id=listing.id or detail.id,
        source_id=listing.source_id or detail.source_id,
        category=detail.category or listing.category,
        price=detail.price if detail.price is not None else listing.price,
        image_url=detail.image_url or listing.image_url,
        images=detail.images or ([listing.image_url] if listing.image_url else []),
        variants=detail.variants or listing.variants,
    )


class ImportOrchestrator:
    """Runs import jobs: listing, detail scrape, validation and upsert."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        api_client: Optional[ProductSource] = None,
        scraper_factory: Optional[Callable[[], CatalogScraper]] = None,
        image_service: Optional[ImageDownloadService] = None,
        config: Optional[Settings] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.api_client = api_client or SourceApiClient()
        self.scraper_factory = scraper_factory or CatalogScraper
        self.image_service = image_service
        self.config = config or default_settings

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    async def start_import_job(self, options: Optional[ImportOptions] = None) -> int:
        """Create a PENDING job with zeroed counters and the options as metadata."""
        options = options or ImportOptions()
        async with self.session_factory() as db:
            job = ImportJob(
                job_type=options.job_type,
                status=JobStatus.PENDING.value,
                products_processed=0,
                products_created=0,
                products_updated=0,
                errors=[],
                job_metadata=options.to_metadata(),
            )
            db.add(job)
            await db.commit()
            logger.info(f"Created import job {job.id} ({options.job_type})")
            return job.id

    async def get_job_status(self, job_id: int) -> Optional[ImportJob]:
        async with self.session_factory() as db:
            return await db.get(ImportJob, job_id)

    async def list_jobs(self, status: Optional[str] = None, limit: int = 50) -> list[ImportJob]:
        async with self.session_factory() as db:
            query = select(ImportJob).order_by(ImportJob.id.desc()).limit(limit)
            if status:
                query = query.where(ImportJob.status == status)
            result = await db.execute(query)
            return list(result.scalars().all())

    async def stop_import(self, job_id: int, force: bool = False) -> Optional[ImportJob]:
        """
        Ask a job to stop.

        A running job finishes its in-flight product and then fails with
        metadata.stopped set. Pending jobs, or any job when force is set,
        fail immediately. Terminal jobs are returned unchanged.
        """
        async with self.session_factory() as db:
            job = await db.get(ImportJob, job_id)
            if job is None or job.is_terminal:
                return job

            now = _now()
            metadata = dict(job.job_metadata or {})
            metadata["stop_requested"] = True
            metadata["stop_requested_at"] = now.isoformat() + "Z"

            if force or job.status == JobStatus.PENDING.value:
                metadata["stopped"] = True
                metadata["stopped_at"] = now.isoformat() + "Z"
                job.status = JobStatus.FAILED.value
                job.completed_at = now
                metrics.record_job_finished(JobStatus.FAILED.value)
                logger.info(f"Import job {job_id} stopped")
            else:
                logger.info(f"Stop requested for import job {job_id}")

            job.job_metadata = metadata
            await db.commit()
            return job

    async def _mark_running(self, job_id: int) -> ImportJob:
        async with self.session_factory() as db:
            job = await db.get(ImportJob, job_id)
            if job is None:
                raise ValueError(f"Import job {job_id} not found")
            if job.is_terminal:
                raise ValueError(f"Import job {job_id} already finished ({job.status})")
            job.status = JobStatus.RUNNING.value
            job.started_at = _now()
            await db.commit()
            return job

    async def _persist_progress(self, job_id: int, state: _RunState) -> bool:
        """Write counters and the error list. Returns True if the job should stop."""
        async with self.session_factory() as db:
            job = await db.get(ImportJob, job_id)
            if job is None:
                return True
            if job.is_terminal:
                return True
            job.products_processed = state.processed
            job.products_created = state.created
            job.products_updated = state.updated
            job.errors = list(state.errors)
            await db.commit()
            return bool((job.job_metadata or {}).get("stop_requested"))

    async def _finish(self, job_id: int, state: _RunState, status: JobStatus, stopped: bool = False) -> None:
        async with self.session_factory() as db:
            job = await db.get(ImportJob, job_id)
            if job is None or job.is_terminal:
                return
            now = _now()
            job.products_processed = state.processed
            job.products_created = state.created
            job.products_updated = state.updated
            job.errors = list(state.errors)
            job.status = status.value
            job.completed_at = now
            if stopped:
                job.job_metadata = {
                    **(job.job_metadata or {}),
                    "stopped": True,
                    "stopped_at": now.isoformat() + "Z",
                }
            await db.commit()
        metrics.record_job_finished(status.value)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _api_first_page(self, options: ImportOptions, log) -> Optional[ListingPage]:
        """First listing page from the API, or None when the scraper should take over."""
        if not options.use_api:
            return None
        try:
            return await self.api_client.list_products(1, options.category)
        except FALLBACK_ERRORS as e:
            log.warning(f"API listing unavailable, falling back to scraper: {e}")
            return None

    async def execute_import(self, job_id: int, options: Optional[ImportOptions] = None) -> ImportResult:
        """
        Run a job to completion.

        Per-product failures are recorded on the job and skipped. Progress
        is written after every product. Listing failures, once the API
        fallback is exhausted, fail the job and are re-raised.
        """
        job = await self._mark_running(job_id)
        options = options or ImportOptions.from_metadata(job.job_metadata)
        log = get_logger(__name__, job_id=job_id)
        log.info(f"Import job {job_id} running (use_api={options.use_api}, category={options.category})")

        state = _RunState()
        scraper: Optional[CatalogScraper] = None
        stopped = False

        try:
            source: ProductSource = self.api_client
            page = await self._api_first_page(options, log)
            if page is None:
                scraper = self.scraper_factory()
                source = scraper
                page = await scraper.list_products(1, options.category, None)
            detail_scraper = scraper if options.scrape_details else None

            page_number = 1
            empty_streak = 0
            cap_reached = False

            while True:
                empty_streak = empty_streak + 1 if not page.products else 0

                for candidate in page.products:
                    if stopped:
                        break
                    await self._process_candidate(
                        candidate, job_id, options, source, detail_scraper, state, log
                    )
                    stopped = await self._persist_progress(job_id, state)

                    if options.max_products and state.created + state.updated >= options.max_products:
                        log.info(f"Reached max_products={options.max_products}")
                        cap_reached = True
                        break

                if stopped or cap_reached or not page.has_more:
                    break
                if empty_streak >= self.config.max_consecutive_empty_pages:
                    log.info(f"Stopping after {empty_streak} empty listing pages")
                    break
                if page_number >= self.config.max_listing_pages:
                    log.warning(f"Stopping at listing page limit {page_number}")
                    break

                page_number += 1
                page = await source.list_products(page_number, options.category, page.session)

            if stopped:
                log.info(f"Import job {job_id} stopped after {state.processed} products")
                await self._finish(job_id, state, JobStatus.FAILED, stopped=True)
            else:
                await self._finish(job_id, state, JobStatus.COMPLETED)
                log.info(
                    f"Import job {job_id} completed: processed={state.processed} "
                    f"created={state.created} updated={state.updated} errors={len(state.errors)}"
                )

            return ImportResult(created=state.created, updated=state.updated, errors=list(state.errors))

        except Exception as e:
            log.error(f"Import job {job_id} failed: {e}", exc_info=True)
            metrics.record_import_error(type(e).__name__)
            state.errors.append(error_entry(f"Import failed: {e}"))
            await self._finish(job_id, state, JobStatus.FAILED)
            raise

        finally:
            if scraper is not None:
                await scraper.close()

    async def _process_candidate(
        self,
        candidate: ScrapedProduct,
        job_id: int,
        options: ImportOptions,
        source: ProductSource,
        detail_scraper: Optional[CatalogScraper],
        state: _RunState,
        log,
    ) -> None:
        """Import one candidate, recording any failure instead of raising."""
        try:
            product = candidate
            if detail_scraper is not None:
                detail = await detail_scraper.scrape_product_detail(candidate.source_url)
                if detail is not None:
                    product = merge_listing_into_detail(detail, candidate)

            result = await self.import_product(
                product, job_id, options, source_name=source.get_source_name()
            )
            if result.created:
                state.created += 1
                metrics.record_product_result("created")
            elif result.updated:
                state.updated += 1
                metrics.record_product_result("updated")
        except Exception as e:
            log.warning(f"Failed to import {candidate.id} ({candidate.source_url}): {e}")
            metrics.record_product_result("error")
            metrics.record_import_error(type(e).__name__)
            state.errors.append(error_entry(str(e), candidate.id, candidate.source_url))
        finally:
            state.processed += 1

    # ------------------------------------------------------------------
    # Upsert
    # ------------------------------------------------------------------

    async def _localize_images(self, product: ScrapedProduct) -> ScrapedProduct:
        """Swap remote image URLs for local paths where the download succeeds."""
        if self.image_service is None:
            logger.warning(f"Image download requested for {product.id} but no image service is configured")
            return product

        local: dict[str, str] = {}
        urls = [u for u in [product.image_url, *product.images] if u]
        for url in dict.fromkeys(urls):
            outcome = await self.image_service.download_image(url, product.slug)
            if outcome.success and outcome.local_path:
                local[url] = outcome.local_path
            else:
                logger.info(f"Keeping remote image for {product.id}: {outcome.error}")

        return dataclasses.replace(
            product,
            image_url=local.get(product.image_url, product.image_url) if product.image_url else None,
            images=[local.get(u, u) for u in product.images],
        )

    async def find_or_create_category(self, db: AsyncSession, name: str) -> Category:
        """
        Find a root category by normalized name, then by slug; create one if absent.

        Child categories are never matched, even when their name equals the label.

        Raises:
            CategoryResolutionError: the label has no slug, or its slug belongs to a child category
        """
        normalized = normalize_category_name(name)
        slug = generate_slug(normalized)
        if not slug:
            raise CategoryResolutionError(f"Category label {name!r} produces an empty slug")

        roots = select(Category).where(Category.parent_id.is_(None))
        result = await db.execute(
            roots.where(Category.name == normalized).order_by(Category.id).limit(1)
        )
        category = result.scalar_one_or_none()
        if category is None:
            result = await db.execute(roots.where(Category.slug == slug))
            category = result.scalar_one_or_none()
        if category is None:
            taken = await db.execute(select(Category.id).where(Category.slug == slug))
            if taken.scalar_one_or_none() is not None:
                raise CategoryResolutionError(
                    f"Category slug {slug!r} is already used by a child category"
                )
            category = Category(name=normalized, slug=slug, parent_id=None)
            db.add(category)
            await db.flush()
            logger.info(f"Created category {normalized} ({slug})")
        return category

    async def find_existing_product(
        self,
        db: AsyncSession,
        source_id: Optional[str],
        source_url: Optional[str],
        slug: Optional[str],
    ) -> ProductMatch:
        """
        Match an existing product by source id, then source URL, then slug.

        Keys are checked independently. When they point at different rows
        the highest-precedence match wins and the others are reported.
        """
        keys = [
            ("source_id", Product.source_id, source_id),
            ("source_url", Product.source_url, source_url),
            ("slug", Product.slug, slug),
        ]
        matches: list[tuple[str, Product]] = []
        for key, column, value in keys:
            if not value:
                continue
            result = await db.execute(select(Product).where(column == value).order_by(Product.id).limit(1))
            found = result.scalar_one_or_none()
            if found is not None:
                matches.append((key, found))

        if not matches:
            return ProductMatch(product=None)

        matched_on, product = matches[0]
        conflicting = sorted({p.id for _, p in matches if p.id != product.id})
        if conflicting:
            logger.warning(
                f"Identity conflict: {matched_on} matched product {product.id}, "
                f"other keys matched {conflicting}"
            )
        return ProductMatch(product=product, matched_on=matched_on, conflicting_ids=conflicting)

    def _metadata(self, product: ScrapedProduct) -> dict:
        return {
            "specifications": dict(product.specifications),
            "careInstructions": product.care_instructions,
            "plantingInstructions": product.planting_instructions,
            "commonNames": list(product.common_names),
            "variants": [variant.to_metadata() for variant in product.variants],
            "scrapedAt": _now().isoformat() + "Z",
        }

    async def import_product(
        self,
        scraped: ScrapedProduct,
        job_id: Optional[int] = None,
        options: Optional[ImportOptions] = None,
        source_name: str = "SCRAPED",
    ) -> ProductImportResult:
        """
        Validate, normalize and upsert one product.

        Missing price persists as 0 and missing availability as IN_STOCK.
        On update, fields the scrape did not produce keep their stored values.

        Raises:
            ProductValidationError: the record failed the schema
            CategoryResolutionError: no category could be derived
        """
        options = options or ImportOptions()
        validation = validate_product(scraped)
        if not validation.valid:
            raise ProductValidationError(scraped.id, validation.errors)

        product = normalize_product(validation.product)
        if options.download_images:
            product = await self._localize_images(product)

        category_label = product.category or category_from_url(product.source_url)
        if not category_label:
            raise CategoryResolutionError(f"Product {product.id} has no category")

        price = resolve_price(product, self.config.variant_price_multiplier)
        availability = resolve_availability(product)
        metadata = self._metadata(product)

        async with self.session_factory() as db:
            category = await self.find_or_create_category(db, category_label)
            match = await self.find_existing_product(db, product.source_id, product.source_url, product.slug)

            if match.product is None:
                db.add(Product(
                    name=product.name,
                    slug=product.slug,
                    description=product.description,
                    price=price if price is not None else Decimal("0"),
                    availability=availability,
                    category_id=category.id,
                    source=source_name,
                    source_id=product.source_id,
                    source_url=product.source_url,
                    botanical_name=product.botanical_name,
                    common_name=product.common_name,
                    image_url=product.image_url,
                    images=list(product.images),
                    product_metadata=metadata,
                ))
                await db.commit()
                logger.debug(f"Created product {product.slug} (job {job_id})")
                return ProductImportResult(created=True, updated=False)

            existing = match.product
            existing.name = product.name
            existing.category_id = category.id
            existing.availability = availability
            existing.source = source_name
            if not existing.slug:
                existing.slug = product.slug
            if price is not None:
                existing.price = price
            for attr in ("description", "source_id", "source_url", "botanical_name", "common_name", "image_url"):
                value = getattr(product, attr)
                if value is not None:
                    setattr(existing, attr, value)
            if product.images:
                existing.images = list(product.images)

            previous = dict(existing.product_metadata or {})
            existing.product_metadata = {
                **previous,
                **{k: v for k, v in metadata.items() if v not in (None, [], {})},
                "specifications": {**previous.get("specifications", {}), **metadata["specifications"]},
                "scrapedAt": metadata["scrapedAt"],
            }
            await db.commit()
            logger.debug(f"Updated product {existing.id} via {match.matched_on} (job {job_id})")
            return ProductImportResult(created=False, updated=True)
