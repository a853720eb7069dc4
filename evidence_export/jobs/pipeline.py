"""
Export Pipeline

Turns a claimed export job into a published evidence bundle:

1. short-circuit if the job already completed (crash after publish)
2. framework lookup, then one fetch stage per record category, each
   reporting a fixed progress checkpoint
3. manifest assembly
4. archive construction
5. publication at a deterministic path + signed URL
6. completion in the job store

Failures come back as a StageFailure inside the PipelineResult rather than
as exceptions, so callers can branch on the classification.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from evidence_export.collaborators import ArchiveBuilder, BlobPublisher, DataProvider
from evidence_export.jobs.errors import (
    ExportError,
    FrameworkNotFoundError,
    JobNotFoundError,
    LeaseLostError,
    PipelineTimeoutError,
    PublishError,
)
from evidence_export.jobs.job_store import JobStore
from evidence_export.jobs.job_types import (
    ErrorClass,
    ExportJob,
    JobLease,
    PipelineResult,
    PublishedArtifact,
    StageFailure,
)
from evidence_export.jobs.manifest import build_archive_payloads, build_manifest
from evidence_export.jobs.utils import build_storage_path, format_file_size, sha256_hex, utcnow

logger = logging.getLogger(__name__)

ARCHIVE_CONTENT_TYPE = "application/zip"
DEFAULT_SIGNED_URL_TTL = 3600


@dataclass(frozen=True)
class FetchStage:
    name: str
    checkpoint: int
    fetch: str  # DataProvider method name


# Fixed order; stages do not depend on each other's output.
FETCH_STAGES = (
    FetchStage("controls", 10, "fetch_controls"),
    FetchStage("evidence", 30, "fetch_evidence"),
    FetchStage("tasks", 50, "fetch_tasks"),
    FetchStage("policies", 60, "fetch_policies"),
    FetchStage("automation_logs", 70, "fetch_automation_logs"),
    FetchStage("score_history", 80, "fetch_score_history"),
)

MANIFEST_CHECKPOINT = 85
ARCHIVE_CHECKPOINT = 90
PUBLISH_CHECKPOINT = 95


@dataclass
class ExportContext:
    """Per-run state: which stage is active and how far the job has progressed."""
    job: ExportJob
    store: JobStore
    deadline: Optional[float] = None
    lease: Optional[JobLease] = None

    current_stage: str = field(default="starting")
    current_percent: int = field(default=0)

    def enter_stage(self, stage: str, percent: Optional[int] = None):
        """Switch stage, check the deadline, and record the progress checkpoint."""
        self.current_stage = stage
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise PipelineTimeoutError(f"Export exceeded its time limit before stage '{stage}'")

        if percent is None or percent <= self.current_percent:
            return

        if not self.store.update_progress(self.job.id, percent, lease=self.lease):
            current = self.store.get(self.job.id)
            if current is None:
                raise JobNotFoundError(f"Export job {self.job.id} no longer exists")
            # An equal or higher value from this same attempt is not a conflict
            if current.lease != self.lease:
                raise LeaseLostError(f"Lost ownership of export job {self.job.id}")

        self.current_percent = percent
        logger.info(f"[Export {self.job.id}] {percent}% - {stage}")


class ExportPipeline:

    def __init__(
        self,
        store: JobStore,
        data_provider: DataProvider,
        archive_builder: ArchiveBuilder,
        blob_publisher: BlobPublisher,
        signed_url_ttl: int = DEFAULT_SIGNED_URL_TTL,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.data_provider = data_provider
        self.archive_builder = archive_builder
        self.blob_publisher = blob_publisher
        self.signed_url_ttl = signed_url_ttl
        self.clock = clock

    def run(self, job: ExportJob, deadline: Optional[float] = None) -> PipelineResult:
        """
        Run the pipeline for a job claimed by the caller.

        `deadline` is a time.monotonic() value; it is checked between stages.
        """
        if job.is_completed:
            logger.info(f"Export job {job.id} already completed, reusing {job.file_url}")
            return PipelineResult(artifact=PublishedArtifact.from_job(job), reused=True)

        ctx = ExportContext(job=job, store=self.store, deadline=deadline, lease=job.lease)
        started = time.monotonic()

        try:
            artifact = self._execute(ctx)
        except ExportError as e:
            logger.warning(f"Export job {job.id} failed in stage '{ctx.current_stage}': {e}")
            return PipelineResult(failure=StageFailure(
                error_type=e.error_type,
                message=e.message,
                classification=e.classification,
                failing_stage=ctx.current_stage,
                hint=e.hint,
            ))
        except Exception as e:
            logger.exception(f"Export job {job.id} raised in stage '{ctx.current_stage}'")
            return PipelineResult(failure=StageFailure(
                error_type=type(e).__name__,
                message=str(e) or type(e).__name__,
                classification=ErrorClass.TRANSIENT,
                failing_stage=ctx.current_stage,
            ))

        logger.info(
            f"Export job {job.id} published {format_file_size(artifact.file_size)} "
            f"in {time.monotonic() - started:.1f}s"
        )
        return PipelineResult(artifact=artifact)

    def _execute(self, ctx: ExportContext) -> PublishedArtifact:
        job = ctx.job

        ctx.enter_stage("framework")
        framework = self.data_provider.fetch_framework(job.framework_id)
        if not framework:
            raise FrameworkNotFoundError(f"Framework '{job.framework_id}' not found")

        records = self._gather_records(ctx)

        ctx.enter_stage("manifest", MANIFEST_CHECKPOINT)
        manifest = build_manifest(job, framework, records, exported_at=self.clock())
        payloads = build_archive_payloads(manifest, records)

        ctx.enter_stage("archive", ARCHIVE_CHECKPOINT)
        bundle = self.archive_builder.build(payloads)

        ctx.enter_stage("publish", PUBLISH_CHECKPOINT)
        storage_path = build_storage_path(job.organization_id, job.framework_id, job.id, job.created_at)
        self.blob_publisher.upload(storage_path, bundle, ARCHIVE_CONTENT_TYPE)
        file_url = self.blob_publisher.signed_url(storage_path, self.signed_url_ttl)
        if not file_url:
            raise PublishError(f"No signed URL returned for {storage_path}")

        metadata = {
            "storage_path": storage_path,
            "sha256": sha256_hex(bundle),
            "content_type": ARCHIVE_CONTENT_TYPE,
            "files": list(payloads.keys()),
            "statistics": manifest.statistics.model_dump(by_alias=True),
            "framework_name": manifest.framework_name,
            "compliance_score": manifest.compliance_score,
        }

        ctx.enter_stage("complete")
        if not self.store.complete(job.id, file_url, len(bundle), metadata, lease=ctx.lease):
            raise LeaseLostError(f"Export job {job.id} was reclaimed before completion")

        return PublishedArtifact(
            file_url=file_url,
            file_size=len(bundle),
            storage_path=storage_path,
            metadata=metadata,
        )

    def _gather_records(self, ctx: ExportContext) -> Dict[str, List[Dict[str, Any]]]:
        records = {}
        for stage in FETCH_STAGES:
            ctx.enter_stage(stage.name, stage.checkpoint)
            fetch = getattr(self.data_provider, stage.fetch)
            rows = fetch(ctx.job.organization_id, ctx.job.framework_id)
            records[stage.name] = list(rows or [])
        return records
