"""Secondary pass that downloads images for already-imported products."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from nursery_import.db.models import Product
from nursery_import.ingest.images import ImageDownloadService

logger = logging.getLogger(__name__)


@dataclass
class BackfillResult:
    processed: int = 0
    updated: int = 0
    failed: int = 0


async def backfill_product_images(
    session_factory: async_sessionmaker,
    image_service: ImageDownloadService,
    url_pattern: str,
    limit: Optional[int] = None,
) -> BackfillResult:
    """
    Download images for products whose image_url still points at a remote
    URL containing url_pattern, and store the local paths.

    Products are handled one at a time; a failed image keeps its remote URL.
    """
    result = BackfillResult()

    async with session_factory() as db:
        query = (
            select(Product.id)
            .where(Product.image_url.contains(url_pattern))
            .order_by(Product.id)
        )
        if limit:
            query = query.limit(limit)
        product_ids = list((await db.execute(query)).scalars().all())

    logger.info(f"Backfilling images for {len(product_ids)} products matching {url_pattern!r}")

    for product_id in product_ids:
        async with session_factory() as db:
            product = await db.get(Product, product_id)
            if product is None:
                continue
            result.processed += 1

            remote = [u for u in [product.image_url, *(product.images or [])] if u and url_pattern in u]
            local: dict[str, str] = {}
            failed = False
            for url in dict.fromkeys(remote):
                outcome = await image_service.download_image(url, product.slug)
                if outcome.success and outcome.local_path:
                    local[url] = outcome.local_path
                else:
                    failed = True
                    logger.warning(f"Image backfill failed for product {product.id} ({url}): {outcome.error}")

            if failed:
                result.failed += 1
            if not local:
                continue

            product.image_url = local.get(product.image_url, product.image_url)
            product.images = [local.get(u, u) for u in (product.images or [])]
            await db.commit()
            result.updated += 1

    logger.info(
        f"Image backfill done: processed={result.processed} updated={result.updated} failed={result.failed}"
    )
    return result
