"""FastAPI dependencies."""

from fastapi import Header, HTTPException, status

from nursery_import.config import settings
from nursery_import.ingest.images import ImageDownloadService
from nursery_import.worker.importer import ImportOrchestrator

_orchestrator: ImportOrchestrator | None = None


def get_orchestrator() -> ImportOrchestrator:
    """Shared orchestrator; one scraper is created per job, not per app."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ImportOrchestrator(image_service=ImageDownloadService())
    return _orchestrator


async def close_orchestrator() -> None:
    """Release the shared image download client."""
    global _orchestrator
    if _orchestrator is not None and _orchestrator.image_service is not None:
        await _orchestrator.image_service.close()
    _orchestrator = None


async def require_admin_api_key(
    x_admin_api_key: str = Header(..., alias="X-Admin-API-Key")
) -> None:
    """
    Require the admin API key on job control endpoints.

    Raises:
        HTTPException: 503 if no key is configured, 403 if the key is wrong
    """
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured"
        )

    if x_admin_api_key != settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key"
        )
