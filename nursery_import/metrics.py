"""Prometheus metrics for the catalog import pipeline."""

from prometheus_client import Counter, Histogram, Info

app_info = Info("nursery_import", "Nursery catalog import application info")
app_info.info({"version": "0.1.0", "name": "nursery-import"})

# Job metrics
import_jobs_total = Counter(
    "import_jobs_total",
    "Total number of import jobs that reached a terminal state",
    ["status"],
)

products_imported_total = Counter(
    "products_imported_total",
    "Products handled by the importer, by outcome",
    ["result"],
)

import_errors_total = Counter(
    "import_errors_total",
    "Per-product and job-level import errors",
    ["error_type"],
)

# Upstream metrics
source_requests_total = Counter(
    "source_requests_total",
    "Requests issued to the upstream catalog source",
    ["kind", "status"],
)

scrape_duration_seconds = Histogram(
    "scrape_duration_seconds",
    "Time spent loading and extracting a source page",
    ["kind"],
    buckets=[1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0],
)

# Image metrics
image_downloads_total = Counter(
    "image_downloads_total",
    "Image download outcomes",
    ["status"],
)


def record_job_finished(status: str):
    """Record a job reaching COMPLETED or FAILED."""
    import_jobs_total.labels(status=status).inc()


def record_product_result(result: str):
    """Record one product outcome (created, updated, error)."""
    products_imported_total.labels(result=result).inc()


def record_import_error(error_type: str):
    """Record an import error by exception class name."""
    import_errors_total.labels(error_type=error_type).inc()


def record_source_request(kind: str, success: bool, duration: float | None = None):
    """Record an upstream page load."""
    status = "success" if success else "error"
    source_requests_total.labels(kind=kind, status=status).inc()
    if duration is not None:
        scrape_duration_seconds.labels(kind=kind).observe(duration)


def record_image_download(status: str):
    """Record an image download outcome (downloaded, skipped, failed)."""
    image_downloads_total.labels(status=status).inc()
