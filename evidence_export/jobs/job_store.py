"""
Job Store

Durable, race-free storage of export jobs. Every state change is a single
conditional write so that concurrent workers cannot both win:

- claim goes through the `claim_export_job` database function, one
  UPDATE ... WHERE ... RETURNING statement (see migrations/)
- progress/complete/retry/fail filter on status and, when a lease is given,
  on locked_by and attempt_count; zero updated rows means the write lost
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import uuid4

from evidence_export.jobs.job_types import ExportJob, ExportJobStatus, JobLease, NotClaimable
from evidence_export.jobs.utils import to_timestamp, utcnow

logger = logging.getLogger(__name__)

JOBS_TABLE = "compliance_export_jobs"
CLAIM_FUNCTION = "claim_export_job"

DEFAULT_RETENTION_DAYS = 7
DEFAULT_STALE_LOCK_SECONDS = 600.0


class JobStore(ABC):
    """Contract shared by the Supabase store and the in-memory store."""

    @abstractmethod
    def create(self, organization_id: str, framework_id: str, requested_by: Optional[str]) -> str:
        """Insert a pending job and return its id."""

    @abstractmethod
    def claim(
        self,
        job_id: str,
        worker_id: str,
        max_attempts: Optional[int] = None
    ) -> Union[ExportJob, NotClaimable]:
        """Atomically take ownership of a due pending job (or a stale one)."""

    @abstractmethod
    def update_progress(self, job_id: str, percent: int, lease: Optional[JobLease] = None) -> bool:
        """Raise progress; lower values are ignored."""

    @abstractmethod
    def complete(
        self,
        job_id: str,
        file_url: str,
        file_size: int,
        metadata: Dict[str, Any],
        lease: Optional[JobLease] = None
    ) -> bool:
        """Mark a processing job completed."""

    @abstractmethod
    def schedule_retry(
        self,
        job_id: str,
        delay_seconds: float,
        error_message: str,
        lease: Optional[JobLease] = None
    ) -> bool:
        """Return a processing job to pending, due after the delay."""

    @abstractmethod
    def fail(self, job_id: str, error_message: str, lease: Optional[JobLease] = None) -> bool:
        """Mark a processing job failed (terminal)."""

    @abstractmethod
    def get(self, job_id: str) -> Optional[ExportJob]:
        """Get a job, or None if it does not exist or has expired."""

    @abstractmethod
    def find_claimable(self, limit: int, max_attempts: Optional[int] = None) -> List[str]:
        """Ids of due pending jobs (oldest first) followed by reclaimable stale jobs."""

    @abstractmethod
    def fail_stale_jobs(self, max_attempts: int) -> int:
        """Fail stale processing jobs that have no attempts left. Returns the count."""

    @abstractmethod
    def purge_expired(self) -> List[ExportJob]:
        """Delete expired jobs and return them."""


class SupabaseJobStore(JobStore):
    """Job store backed by the compliance_export_jobs table."""

    def __init__(
        self,
        supabase,
        stale_lock_seconds: float = DEFAULT_STALE_LOCK_SECONDS,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], datetime] = utcnow
    ):
        self.supabase = supabase
        self.stale_lock_seconds = stale_lock_seconds
        self.retention_days = retention_days
        self.clock = clock

    def _table(self):
        return self.supabase.table(JOBS_TABLE)

    def _stale_threshold(self) -> str:
        return to_timestamp(self.clock() - timedelta(seconds=self.stale_lock_seconds))

    def _guarded_update(self, job_id: str, update_data: Dict[str, Any], lease: Optional[JobLease]):
        query = self._table()\
            .update(update_data)\
            .eq("id", job_id)\
            .eq("status", ExportJobStatus.PROCESSING.value)

        if lease is not None:
            query = query\
                .eq("locked_by", lease.worker_id)\
                .eq("attempt_count", lease.attempt)

        return query

    def create(self, organization_id: str, framework_id: str, requested_by: Optional[str]) -> str:
        now = self.clock()
        job_id = str(uuid4())
        job_record = {
            "id": job_id,
            "organization_id": organization_id,
            "framework_id": framework_id,
            "requested_by": requested_by,
            "status": ExportJobStatus.PENDING.value,
            "progress": 0,
            "attempt_count": 0,
            "created_at": to_timestamp(now),
            "expires_at": to_timestamp(now + timedelta(days=self.retention_days)),
        }

        try:
            self._table().insert(job_record).execute()
        except Exception as e:
            logger.error(f"Error creating export job for org {organization_id}: {e}")
            raise

        logger.info(f"Created export job {job_id} for framework {framework_id}")
        return job_id

    def claim(
        self,
        job_id: str,
        worker_id: str,
        max_attempts: Optional[int] = None
    ) -> Union[ExportJob, NotClaimable]:
        try:
            result = self.supabase.rpc(
                CLAIM_FUNCTION,
                {
                    "p_job_id": job_id,
                    "p_worker_id": worker_id,
                    "p_stale_after_seconds": int(self.stale_lock_seconds),
                    "p_max_attempts": max_attempts,
                }
            ).execute()
        except Exception as e:
            logger.error(f"Error claiming export job {job_id}: {e}")
            raise

        rows = result.data or []
        if isinstance(rows, dict):
            rows = [rows]
        if not rows:
            return NotClaimable(job_id)

        job = ExportJob.from_row(rows[0])
        logger.info(f"Worker {worker_id} claimed export job {job_id} (attempt {job.attempt_count})")
        return job

    def update_progress(self, job_id: str, percent: int, lease: Optional[JobLease] = None) -> bool:
        percent = int(min(100, max(0, percent)))
        result = self._guarded_update(job_id, {"progress": percent}, lease)\
            .lte("progress", percent)\
            .execute()
        return bool(result.data)

    def complete(
        self,
        job_id: str,
        file_url: str,
        file_size: int,
        metadata: Dict[str, Any],
        lease: Optional[JobLease] = None
    ) -> bool:
        result = self._guarded_update(job_id, {
            "status": ExportJobStatus.COMPLETED.value,
            "progress": 100,
            "file_url": file_url,
            "file_size": file_size,
            "metadata": metadata,
            "last_error": None,
            "locked_by": None,
            "locked_at": None,
            "next_run_at": None,
            "completed_at": to_timestamp(self.clock()),
        }, lease).execute()
        return bool(result.data)

    def schedule_retry(
        self,
        job_id: str,
        delay_seconds: float,
        error_message: str,
        lease: Optional[JobLease] = None
    ) -> bool:
        next_run_at = self.clock() + timedelta(seconds=delay_seconds)
        result = self._guarded_update(job_id, {
            "status": ExportJobStatus.PENDING.value,
            "next_run_at": to_timestamp(next_run_at),
            "last_error": error_message,
            "locked_by": None,
            "locked_at": None,
        }, lease).execute()
        return bool(result.data)

    def fail(self, job_id: str, error_message: str, lease: Optional[JobLease] = None) -> bool:
        result = self._guarded_update(job_id, {
            "status": ExportJobStatus.FAILED.value,
            "last_error": error_message,
            "locked_by": None,
            "locked_at": None,
            "next_run_at": None,
        }, lease).execute()
        return bool(result.data)

    def get(self, job_id: str) -> Optional[ExportJob]:
        result = self._table()\
            .select("*")\
            .eq("id", job_id)\
            .limit(1)\
            .execute()

        if not result.data:
            return None

        job = ExportJob.from_row(result.data[0])
        if job.expires_at and job.expires_at <= self.clock():
            return None
        return job

    def find_claimable(self, limit: int, max_attempts: Optional[int] = None) -> List[str]:
        now = to_timestamp(self.clock())

        due = self._table()\
            .select("id")\
            .eq("status", ExportJobStatus.PENDING.value)\
            .or_(f"next_run_at.is.null,next_run_at.lte.{now}")\
            .gt("expires_at", now)\
            .order("created_at")\
            .limit(limit)\
            .execute()

        stale_query = self._table()\
            .select("id")\
            .eq("status", ExportJobStatus.PROCESSING.value)\
            .lt("locked_at", self._stale_threshold())
        if max_attempts is not None:
            stale_query = stale_query.lt("attempt_count", max_attempts)
        stale = stale_query.order("locked_at").limit(limit).execute()

        ids = [row["id"] for row in (due.data or [])]
        ids.extend(row["id"] for row in (stale.data or []) if row["id"] not in ids)
        return ids[:limit]

    def fail_stale_jobs(self, max_attempts: int) -> int:
        result = self._table()\
            .update({
                "status": ExportJobStatus.FAILED.value,
                "last_error": "Worker lost during final attempt",
                "locked_by": None,
                "locked_at": None,
            })\
            .eq("status", ExportJobStatus.PROCESSING.value)\
            .lt("locked_at", self._stale_threshold())\
            .gte("attempt_count", max_attempts)\
            .execute()
        return len(result.data or [])

    def purge_expired(self) -> List[ExportJob]:
        result = self._table()\
            .delete()\
            .lte("expires_at", to_timestamp(self.clock()))\
            .neq("status", ExportJobStatus.PROCESSING.value)\
            .execute()
        return [ExportJob.from_row(row) for row in (result.data or [])]
