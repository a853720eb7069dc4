"""
Evidence Export API Routes

Provides endpoints for:
- Creating an export job (returns immediately; processing is asynchronous)
- Polling job status and progress
- Getting a fresh download link for a completed export
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException

from evidence_export import factory
from evidence_export.collaborators import BlobPublisher
from evidence_export.config import get_settings
from evidence_export.jobs.job_store import JobStore
from evidence_export.jobs.job_types import (
    CreateExportRequest,
    CreateExportResponse,
    DownloadLinkResponse,
    ExportJob,
    ExportJobStatus,
    ExportJobStatusResponse,
)
from evidence_export.jobs.runner import ExportJobRunner
from evidence_export.supabase_adapters import SupabaseBlobPublisher
from evidence_export.supabase_client import get_supabase, get_user_profile, verify_supabase_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/compliance/exports", tags=["exports"])

API_WORKER_ID = "api-background"


# =============================================================================
# DEPENDENCIES
# =============================================================================

async def get_current_user(authorization: str = Header(None)):
    """Extract and verify user from Supabase JWT token."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header missing")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid authorization header")

    user_data = verify_supabase_token(parts[1])
    if not user_data:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return user_data


async def get_organization_id(user: Dict[str, Any] = Depends(get_current_user)) -> str:
    profile = get_user_profile(get_supabase(), user["id"]) or {}
    org_id = profile.get("organization_id")
    if not org_id:
        raise HTTPException(status_code=400, detail="User has no organization")
    return org_id


def get_job_store() -> JobStore:
    return factory.get_job_store()


def get_export_runner() -> ExportJobRunner:
    return factory.get_runner()


def get_blob_publisher() -> BlobPublisher:
    return SupabaseBlobPublisher(get_supabase(), get_settings().bucket)


def _load_org_job(store: JobStore, job_id: str, org_id: str) -> ExportJob:
    job = store.get(job_id)
    # Jobs of other organizations look the same as missing ones
    if job is None or job.organization_id != org_id:
        raise HTTPException(status_code=404, detail="Export job not found")
    return job


async def run_export_job_task(runner: ExportJobRunner, job_id: str):
    """Background task wrapper for the push path."""
    try:
        # Workers started with --max-attempts must use the same value as EXPORT_MAX_ATTEMPTS
        result = await runner.process_export_job(job_id, API_WORKER_ID, get_settings().max_attempts)
        if not result.ok and not result.skipped:
            logger.warning(f"Background export {job_id} did not complete: {result.error}")
    except Exception:
        # The job stays claimable; the worker scan will pick it up.
        logger.exception(f"Background export task failed for job {job_id}")


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/create", response_model=CreateExportResponse)
async def create_export(
    request: CreateExportRequest,
    background_tasks: BackgroundTasks,
    user: Dict[str, Any] = Depends(get_current_user),
    org_id: str = Depends(get_organization_id),
    store: JobStore = Depends(get_job_store),
    runner: ExportJobRunner = Depends(get_export_runner),
):
    """
    Create an evidence export for a framework.

    Returns immediately with the job id; poll the status endpoint for progress.
    """
    job_id = factory.create_export_job(
        org_id,
        request.framework_id,
        user["id"],
        store=store,
        enqueue=lambda jid: background_tasks.add_task(run_export_job_task, runner, jid),
    )
    logger.info(f"Export job {job_id} requested by {user['id']} for {request.framework_id}")
    return CreateExportResponse(job_id=job_id, status=ExportJobStatus.PENDING)


@router.get("/{job_id}/status", response_model=ExportJobStatusResponse)
async def get_export_status(
    job_id: str,
    org_id: str = Depends(get_organization_id),
    store: JobStore = Depends(get_job_store),
):
    """Get status, progress and (when completed) the download URL of an export."""
    return ExportJobStatusResponse.from_job(_load_org_job(store, job_id, org_id))


@router.get("/{job_id}/download", response_model=DownloadLinkResponse)
async def get_export_download(
    job_id: str,
    org_id: str = Depends(get_organization_id),
    store: JobStore = Depends(get_job_store),
    publisher: BlobPublisher = Depends(get_blob_publisher),
):
    """Issue a fresh signed URL for a completed export."""
    job = _load_org_job(store, job_id, org_id)
    if not job.is_completed:
        raise HTTPException(status_code=409, detail=f"Export is {job.status.value}, not completed")

    metadata = job.metadata or {}
    storage_path = metadata.get("storage_path")
    if not storage_path:
        return DownloadLinkResponse(job_id=job.id, url=job.file_url, expires_in=0, files=metadata.get("files", []))

    ttl = get_settings().signed_url_ttl_seconds
    try:
        url = publisher.signed_url(storage_path, ttl)
    except Exception as e:
        logger.error(f"Error signing download for export {job_id}: {e}")
        raise HTTPException(status_code=503, detail="Download link unavailable, try again shortly")

    return DownloadLinkResponse(job_id=job.id, url=url, expires_in=ttl, files=metadata.get("files", []))
