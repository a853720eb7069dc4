"""
Export Jobs

Key components:
- job_types: Job record, status enums and result schemas
- errors: Classified export errors (transient / terminal / conflict)
- job_store: Atomic claim and guarded state transitions (Supabase)
- memory_store: The same contract held in process memory
- retry: Backoff and retry decisions
- manifest: Manifest, statistics and bundle payloads
- pipeline: Fetch -> manifest -> archive -> publish -> complete
- runner: Claim, run under a time limit, finalize
"""

from evidence_export.jobs.job_types import (
    ErrorClass,
    ExportJob,
    ExportJobStatus,
    JobLease,
    NotClaimable,
    PipelineResult,
    ProcessResult,
    PublishedArtifact,
    StageFailure,
)

from evidence_export.jobs.job_store import JobStore, SupabaseJobStore
from evidence_export.jobs.memory_store import InMemoryJobStore
from evidence_export.jobs.retry import RetryAction, RetryController, RetryDecision, RetryPolicy
from evidence_export.jobs.pipeline import ExportPipeline
from evidence_export.jobs.runner import ExportJobRunner

__all__ = [
    # Types
    "ErrorClass",
    "ExportJob",
    "ExportJobStatus",
    "JobLease",
    "NotClaimable",
    "PipelineResult",
    "ProcessResult",
    "PublishedArtifact",
    "StageFailure",
    # Store
    "JobStore",
    "SupabaseJobStore",
    "InMemoryJobStore",
    # Retry
    "RetryAction",
    "RetryController",
    "RetryDecision",
    "RetryPolicy",
    # Execution
    "ExportPipeline",
    "ExportJobRunner",
]
