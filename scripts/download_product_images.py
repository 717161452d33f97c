#!/usr/bin/env python3
"""
Download images for imported products that still reference remote URLs.

Runs after an import as a separate, sequential pass. Products whose
image_url contains --pattern get their images fetched and rewritten to
local paths.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from nursery_import.db.session import AsyncSessionLocal
from nursery_import.ingest.images import ImageDownloadService
from nursery_import.logging_config import setup_logging
from nursery_import.worker.image_backfill import backfill_product_images


async def main() -> int:
    parser = argparse.ArgumentParser(description="Backfill product images")
    parser.add_argument("--pattern", default="plantmark.com.au", help="Substring of remote image URLs to download")
    parser.add_argument("--limit", type=int, help="Maximum number of products to process")
    args = parser.parse_args()

    setup_logging()
    async with ImageDownloadService() as images:
        result = await backfill_product_images(AsyncSessionLocal, images, args.pattern, args.limit)

    print(f"Processed: {result.processed}")
    print(f"Updated:   {result.updated}")
    print(f"Failed:    {result.failed}")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
