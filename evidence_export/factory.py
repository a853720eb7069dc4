"""
Composition root.

Builds the job store, pipeline and runner from settings and a Supabase
client, and exposes the submission/worker entrypoints used by the API and
the worker process.
"""

import logging
from typing import Callable, Optional

from evidence_export.collaborators import ZipArchiveBuilder
from evidence_export.config import ExportSettings, get_settings
from evidence_export.jobs.job_store import JobStore, SupabaseJobStore
from evidence_export.jobs.job_types import ExportJob, ProcessResult
from evidence_export.jobs.pipeline import ExportPipeline
from evidence_export.jobs.retry import RetryController, RetryPolicy
from evidence_export.jobs.runner import ExportJobRunner
from evidence_export.supabase_adapters import SupabaseBlobPublisher, SupabaseDataProvider
from evidence_export.supabase_client import get_supabase

logger = logging.getLogger(__name__)


def build_retry_controller(settings: ExportSettings) -> RetryController:
    return RetryController(RetryPolicy(
        max_attempts=settings.max_attempts,
        base_delay_seconds=settings.retry_base_delay_seconds,
        max_delay_seconds=settings.retry_max_delay_seconds,
        jitter_seconds=settings.retry_jitter_seconds,
    ))


def build_job_store(supabase, settings: ExportSettings) -> SupabaseJobStore:
    return SupabaseJobStore(
        supabase,
        stale_lock_seconds=settings.effective_stale_lock_seconds,
        retention_days=settings.retention_days,
    )


def build_runner(
    supabase,
    settings: ExportSettings,
    store: Optional[JobStore] = None
) -> ExportJobRunner:
    store = store or build_job_store(supabase, settings)
    pipeline = ExportPipeline(
        store,
        data_provider=SupabaseDataProvider(supabase),
        archive_builder=ZipArchiveBuilder(),
        blob_publisher=SupabaseBlobPublisher(supabase, settings.bucket),
        signed_url_ttl=settings.signed_url_ttl_seconds,
    )
    return ExportJobRunner(
        store,
        pipeline,
        retry_controller=build_retry_controller(settings),
        timeout_seconds=settings.job_timeout_seconds,
    )


# ============================================================================
# Module-level convenience functions
# ============================================================================

_store: Optional[SupabaseJobStore] = None
_runner: Optional[ExportJobRunner] = None


def get_job_store() -> SupabaseJobStore:
    global _store
    if _store is None:
        _store = build_job_store(get_supabase(), get_settings())
    return _store


def get_runner() -> ExportJobRunner:
    global _runner
    if _runner is None:
        _runner = build_runner(get_supabase(), get_settings(), store=get_job_store())
    return _runner


def create_export_job(
    organization_id: str,
    framework_id: str,
    requested_by: Optional[str],
    store: Optional[JobStore] = None,
    enqueue: Optional[Callable[[str], None]] = None
) -> str:
    """
    Create a pending export job and return its id without waiting for it.

    `enqueue` is the optional push path. If it fails the job still exists and
    the worker's scan picks it up.
    """
    store = store or get_job_store()
    job_id = store.create(organization_id, framework_id, requested_by)

    if enqueue is not None:
        try:
            enqueue(job_id)
        except Exception as e:
            logger.warning(f"Could not enqueue export job {job_id}, leaving it to the scan: {e}")

    return job_id


def get_export_job(job_id: str, store: Optional[JobStore] = None) -> Optional[ExportJob]:
    return (store or get_job_store()).get(job_id)


async def process_export_job(
    job_id: str,
    worker_id: str,
    max_attempts: Optional[int] = None,
    runner: Optional[ExportJobRunner] = None
) -> ProcessResult:
    """Claim and run one export job with the shared runner."""
    return await (runner or get_runner()).process_export_job(job_id, worker_id, max_attempts)
