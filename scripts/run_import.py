#!/usr/bin/env python3
"""
Run a catalog import from the command line.

Creates an import job, executes it in the foreground and prints the
summary. The job row is updated exactly as it is for API-triggered runs.

Usage:
  python scripts/run_import.py --category roses --max-products 50
  python scripts/run_import.py --download-images --no-details
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from nursery_import.db.models import Base
from nursery_import.db.session import engine
from nursery_import.ingest.images import ImageDownloadService
from nursery_import.logging_config import setup_logging
from nursery_import.worker.importer import ImportOptions, ImportOrchestrator


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Import the nursery catalog")
    parser.add_argument("--category", help="Category filter passed to the listing route")
    parser.add_argument("--max-products", type=int, help="Stop once this many products were created or updated")
    parser.add_argument("--use-api", action="store_true", help="Try the source API before scraping")
    parser.add_argument("--download-images", action="store_true", help="Download images inline")
    parser.add_argument("--no-details", action="store_true", help="Import listing data only")
    parser.add_argument("--incremental", action="store_true", help="Mark the job as INCREMENTAL")
    return parser.parse_args()


async def main() -> int:
    args = parse_args()
    setup_logging()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    options = ImportOptions(
        job_type="INCREMENTAL" if args.incremental else "FULL",
        use_api=args.use_api,
        category=args.category,
        max_products=args.max_products,
        scrape_details=not args.no_details,
        download_images=args.download_images,
    )

    async with ImageDownloadService() as images:
        orchestrator = ImportOrchestrator(image_service=images)
        job_id = await orchestrator.start_import_job(options)
        print(f"Started import job {job_id}")
        try:
            result = await orchestrator.execute_import(job_id, options)
        except Exception as e:
            print(f"Import job {job_id} failed: {e}")
            return 1

    print(f"Created: {result.created}")
    print(f"Updated: {result.updated}")
    print(f"Errors:  {len(result.errors)}")
    for error in result.errors[:10]:
        print(f"  - {error.get('product_id') or '-'}: {error['message']}")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
