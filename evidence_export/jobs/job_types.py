"""
Export Job Types and Schemas

Defines enums, the persisted job record, and the value objects passed between
the job store, the export pipeline, the retry controller and the worker.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ExportJobStatus(str, Enum):
    """Status of an export job."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ErrorClass(str, Enum):
    """How a failed attempt should be treated."""
    TRANSIENT = "transient"
    TERMINAL = "terminal"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class JobLease:
    """
    Proof of ownership handed out by a successful claim.

    `attempt` is the attempt_count written by that claim. Every claim
    increments attempt_count, so a lease from a reclaimed job never matches
    the row again.
    """
    worker_id: str
    attempt: int


@dataclass(frozen=True)
class NotClaimable:
    """Returned by JobStore.claim when another worker owns the job or it is not due."""
    job_id: str
    reason: str = "not_claimable"


class ExportJob(BaseModel):
    """One row of compliance_export_jobs."""
    id: str
    organization_id: str
    framework_id: str
    requested_by: Optional[str] = None
    status: ExportJobStatus = ExportJobStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    attempt_count: int = Field(default=0, ge=0)
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    file_url: Optional[str] = None
    file_size: Optional[int] = None
    last_error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ExportJob":
        return cls(**{k: v for k, v in row.items() if k in cls.model_fields})

    @property
    def lease(self) -> Optional[JobLease]:
        if self.status != ExportJobStatus.PROCESSING or not self.locked_by:
            return None
        return JobLease(worker_id=self.locked_by, attempt=self.attempt_count)

    @property
    def is_completed(self) -> bool:
        return self.status == ExportJobStatus.COMPLETED and bool(self.file_url)


class StageFailure(BaseModel):
    """Structured description of why a pipeline run failed."""
    error_type: str
    message: str
    classification: ErrorClass
    failing_stage: Optional[str] = None
    hint: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return self.classification == ErrorClass.TRANSIENT


class PublishedArtifact(BaseModel):
    """A stored export bundle."""
    file_url: str
    file_size: int
    storage_path: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_job(cls, job: ExportJob) -> "PublishedArtifact":
        metadata = job.metadata or {}
        return cls(
            file_url=job.file_url,
            file_size=job.file_size or 0,
            storage_path=metadata.get("storage_path"),
            metadata=metadata,
        )


class PipelineResult(BaseModel):
    """Outcome of ExportPipeline.run: an artifact or a failure, never both."""
    artifact: Optional[PublishedArtifact] = None
    failure: Optional[StageFailure] = None
    reused: bool = False

    @property
    def ok(self) -> bool:
        return self.artifact is not None and self.failure is None


class ProcessResult(BaseModel):
    """Return value of the worker entrypoint."""
    ok: bool
    job_id: str
    file_url: Optional[str] = None
    error: Optional[str] = None
    status: Optional[ExportJobStatus] = None
    skipped: bool = False


# ============================================================================
# API Schemas
# ============================================================================

class CreateExportRequest(BaseModel):
    """Request to start a new evidence export."""
    framework_id: str = Field(min_length=1)


class CreateExportResponse(BaseModel):
    job_id: str
    status: ExportJobStatus


class ExportJobStatusResponse(BaseModel):
    """Response for job status query."""
    job_id: str
    organization_id: str
    framework_id: str
    status: ExportJobStatus
    progress: int
    attempt_count: int
    file_url: Optional[str] = None
    file_size: Optional[int] = None
    last_error: Optional[str] = None
    next_run_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: ExportJob) -> "ExportJobStatusResponse":
        return cls(
            job_id=job.id,
            organization_id=job.organization_id,
            framework_id=job.framework_id,
            status=job.status,
            progress=job.progress,
            attempt_count=job.attempt_count,
            file_url=job.file_url,
            file_size=job.file_size,
            last_error=job.last_error,
            next_run_at=job.next_run_at,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            expires_at=job.expires_at,
        )


class DownloadLinkResponse(BaseModel):
    job_id: str
    url: str
    expires_in: int
    files: List[str] = Field(default_factory=list)
