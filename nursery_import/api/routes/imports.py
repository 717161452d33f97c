"""Import job control API endpoints."""

import logging
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from nursery_import.api.deps import get_orchestrator, require_admin_api_key
from nursery_import.db.models import ImportJob
from nursery_import.worker.importer import ImportOptions, ImportOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/import-jobs",
    tags=["imports"],
    dependencies=[Depends(require_admin_api_key)],
)

ERRORS_TAIL = 50


class StartImportRequest(BaseModel):
    """Request model for starting an import."""
    job_type: Literal["FULL", "INCREMENTAL"] = "FULL"
    use_api: bool = False
    category: Optional[str] = None
    max_products: Optional[int] = Field(default=None, gt=0)
    scrape_details: bool = True
    download_images: bool = False


class StartImportResponse(BaseModel):
    id: int
    status: str


class ImportJobResponse(BaseModel):
    """Response model for an import job."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    job_type: str
    status: str
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    products_processed: int
    products_created: int
    products_updated: int
    error_count: int
    errors_tail: List[dict]
    metadata: dict
    created_at: datetime

    @classmethod
    def from_job(cls, job: ImportJob) -> "ImportJobResponse":
        errors = job.errors or []
        return cls(
            id=job.id,
            job_type=job.job_type,
            status=job.status,
            started_at=job.started_at,
            completed_at=job.completed_at,
            products_processed=job.products_processed,
            products_created=job.products_created,
            products_updated=job.products_updated,
            error_count=len(errors),
            errors_tail=errors[-ERRORS_TAIL:],
            metadata=job.job_metadata or {},
            created_at=job.created_at,
        )


async def run_import_job(orchestrator: ImportOrchestrator, job_id: int, options: ImportOptions) -> None:
    """Background task wrapper; the job row already records the failure."""
    try:
        await orchestrator.execute_import(job_id, options)
    except Exception:
        logger.exception(f"Background import job {job_id} failed")


@router.post("/start", response_model=StartImportResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_import(
    request: StartImportRequest,
    background_tasks: BackgroundTasks,
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """Create an import job and run it in the background."""
    options = ImportOptions(**request.model_dump())
    job_id = await orchestrator.start_import_job(options)
    background_tasks.add_task(run_import_job, orchestrator, job_id, options)
    return StartImportResponse(id=job_id, status="PENDING")


@router.get("", response_model=List[ImportJobResponse])
async def list_import_jobs(
    status: Optional[str] = None,
    limit: int = 50,
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """List recent import jobs, optionally filtered by status."""
    jobs = await orchestrator.list_jobs(status=status, limit=limit)
    return [ImportJobResponse.from_job(job) for job in jobs]


@router.get("/{job_id}", response_model=ImportJobResponse)
async def get_import_job(
    job_id: int,
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """Get one import job with its counters and the tail of its error list."""
    job = await orchestrator.get_job_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Import job not found")
    return ImportJobResponse.from_job(job)


@router.post("/{job_id}/stop", response_model=ImportJobResponse)
async def stop_import_job(
    job_id: int,
    force: bool = False,
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """
    Stop an import job.

    Running jobs stop after the product in flight. force=true fails the job
    immediately, for runs whose worker is gone.
    """
    job = await orchestrator.stop_import(job_id, force=force)
    if job is None:
        raise HTTPException(status_code=404, detail="Import job not found")
    return ImportJobResponse.from_job(job)
