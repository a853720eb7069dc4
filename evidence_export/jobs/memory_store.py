"""
In-memory job store.

Implements the JobStore contract with a single process-wide lock, so each
operation is an atomic compare-and-set on the stored record. Used for local
runs without a database and throughout the test suite.
"""

import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import uuid4

from evidence_export.jobs.job_store import DEFAULT_RETENTION_DAYS, DEFAULT_STALE_LOCK_SECONDS, JobStore
from evidence_export.jobs.job_types import ExportJob, ExportJobStatus, JobLease, NotClaimable
from evidence_export.jobs.utils import utcnow


class InMemoryJobStore(JobStore):

    def __init__(
        self,
        stale_lock_seconds: float = DEFAULT_STALE_LOCK_SECONDS,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], datetime] = utcnow
    ):
        self.stale_lock_seconds = stale_lock_seconds
        self.retention_days = retention_days
        self.clock = clock
        self._jobs: Dict[str, ExportJob] = {}
        self._lock = threading.Lock()

    def _is_stale(self, job: ExportJob, now: datetime) -> bool:
        return (
            job.locked_at is not None
            and job.locked_at < now - timedelta(seconds=self.stale_lock_seconds)
        )

    def _is_due(self, job: ExportJob, now: datetime) -> bool:
        return job.next_run_at is None or job.next_run_at <= now

    def _is_expired(self, job: ExportJob, now: datetime) -> bool:
        return job.expires_at is not None and job.expires_at <= now

    def _owned(self, job: Optional[ExportJob], lease: Optional[JobLease]) -> bool:
        if job is None or job.status != ExportJobStatus.PROCESSING:
            return False
        if lease is None:
            return True
        return job.locked_by == lease.worker_id and job.attempt_count == lease.attempt

    def _claim_refusal(self, job: Optional[ExportJob], now: datetime, max_attempts: Optional[int]) -> Optional[str]:
        """Reason the job cannot be claimed right now, or None."""
        if job is None or self._is_expired(job, now):
            return "not_found"
        if job.status == ExportJobStatus.PENDING:
            if job.locked_by is not None:
                return "locked"
            if not self._is_due(job, now):
                return "not_due"
            return None
        if job.status == ExportJobStatus.PROCESSING:
            if not self._is_stale(job, now):
                return "locked"
            if max_attempts is not None and job.attempt_count >= max_attempts:
                return "attempts_exhausted"
            return None
        return job.status.value

    def create(self, organization_id: str, framework_id: str, requested_by: Optional[str]) -> str:
        now = self.clock()
        job = ExportJob(
            id=str(uuid4()),
            organization_id=organization_id,
            framework_id=framework_id,
            requested_by=requested_by,
            created_at=now,
            expires_at=now + timedelta(days=self.retention_days),
        )
        with self._lock:
            self._jobs[job.id] = job
        return job.id

    def claim(
        self,
        job_id: str,
        worker_id: str,
        max_attempts: Optional[int] = None
    ) -> Union[ExportJob, NotClaimable]:
        with self._lock:
            now = self.clock()
            job = self._jobs.get(job_id)
            reason = self._claim_refusal(job, now, max_attempts)
            if reason is not None:
                return NotClaimable(job_id, reason)

            claimed = job.model_copy(update={
                "status": ExportJobStatus.PROCESSING,
                "locked_by": worker_id,
                "locked_at": now,
                "attempt_count": job.attempt_count + 1,
                "last_error": None,
                "progress": 0,
                "next_run_at": None,
                "started_at": now,
            })
            self._jobs[job_id] = claimed
            return claimed.model_copy(deep=True)

    def _update_if_owned(self, job_id: str, lease: Optional[JobLease], **changes: Any) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if not self._owned(job, lease):
                return False
            self._jobs[job_id] = job.model_copy(update=changes)
            return True

    def update_progress(self, job_id: str, percent: int, lease: Optional[JobLease] = None) -> bool:
        percent = int(min(100, max(0, percent)))
        with self._lock:
            job = self._jobs.get(job_id)
            if not self._owned(job, lease) or percent < job.progress:
                return False
            self._jobs[job_id] = job.model_copy(update={"progress": percent})
            return True

    def complete(
        self,
        job_id: str,
        file_url: str,
        file_size: int,
        metadata: Dict[str, Any],
        lease: Optional[JobLease] = None
    ) -> bool:
        return self._update_if_owned(
            job_id, lease,
            status=ExportJobStatus.COMPLETED,
            progress=100,
            file_url=file_url,
            file_size=file_size,
            metadata=dict(metadata),
            last_error=None,
            locked_by=None,
            locked_at=None,
            next_run_at=None,
            completed_at=self.clock(),
        )

    def schedule_retry(
        self,
        job_id: str,
        delay_seconds: float,
        error_message: str,
        lease: Optional[JobLease] = None
    ) -> bool:
        return self._update_if_owned(
            job_id, lease,
            status=ExportJobStatus.PENDING,
            next_run_at=self.clock() + timedelta(seconds=delay_seconds),
            last_error=error_message,
            locked_by=None,
            locked_at=None,
        )

    def fail(self, job_id: str, error_message: str, lease: Optional[JobLease] = None) -> bool:
        return self._update_if_owned(
            job_id, lease,
            status=ExportJobStatus.FAILED,
            last_error=error_message,
            locked_by=None,
            locked_at=None,
            next_run_at=None,
        )

    def get(self, job_id: str) -> Optional[ExportJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or self._is_expired(job, self.clock()):
                return None
            return job.model_copy(deep=True)

    def find_claimable(self, limit: int, max_attempts: Optional[int] = None) -> List[str]:
        with self._lock:
            now = self.clock()
            due = sorted(
                (j for j in self._jobs.values()
                 if j.status == ExportJobStatus.PENDING
                 and self._claim_refusal(j, now, max_attempts) is None),
                key=lambda j: j.created_at or now
            )
            stale = sorted(
                (j for j in self._jobs.values()
                 if j.status == ExportJobStatus.PROCESSING
                 and self._claim_refusal(j, now, max_attempts) is None),
                key=lambda j: j.locked_at
            )
            return [j.id for j in due + stale][:limit]

    def fail_stale_jobs(self, max_attempts: int) -> int:
        with self._lock:
            now = self.clock()
            count = 0
            for job_id, job in list(self._jobs.items()):
                if (job.status == ExportJobStatus.PROCESSING
                        and self._is_stale(job, now)
                        and job.attempt_count >= max_attempts):
                    self._jobs[job_id] = job.model_copy(update={
                        "status": ExportJobStatus.FAILED,
                        "last_error": "Worker lost during final attempt",
                        "locked_by": None,
                        "locked_at": None,
                    })
                    count += 1
            return count

    def purge_expired(self) -> List[ExportJob]:
        with self._lock:
            now = self.clock()
            expired = [
                job for job in self._jobs.values()
                if self._is_expired(job, now) and job.status != ExportJobStatus.PROCESSING
            ]
            for job in expired:
                del self._jobs[job.id]
            return expired
