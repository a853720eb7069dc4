"""
Export Job Runner

The worker entrypoint: claim a job, run the export pipeline under a
wall-clock limit, then finalize through the retry controller.

Both admission paths (API background task and worker scan) go through
ExportJobRunner.process_export_job, so a claimed job is handled identically
whichever way it arrived.
"""

import asyncio
import logging
import time
from typing import Optional

from evidence_export.jobs.job_store import JobStore
from evidence_export.jobs.job_types import (
    ErrorClass,
    ExportJob,
    ExportJobStatus,
    NotClaimable,
    PipelineResult,
    ProcessResult,
    StageFailure,
)
from evidence_export.jobs.pipeline import ExportPipeline
from evidence_export.jobs.retry import RetryAction, RetryController
from evidence_export.jobs.utils import format_duration

logger = logging.getLogger(__name__)

DEFAULT_JOB_TIMEOUT = 600.0


class ExportJobRunner:

    def __init__(
        self,
        store: JobStore,
        pipeline: ExportPipeline,
        retry_controller: Optional[RetryController] = None,
        timeout_seconds: float = DEFAULT_JOB_TIMEOUT
    ):
        self.store = store
        self.pipeline = pipeline
        self.retry_controller = retry_controller or RetryController()
        self.timeout_seconds = timeout_seconds

    @property
    def default_max_attempts(self) -> int:
        return self.retry_controller.policy.max_attempts

    async def process_export_job(
        self,
        job_id: str,
        worker_id: str,
        max_attempts: Optional[int] = None
    ) -> ProcessResult:
        """
        Claim and run one export job.

        Returns ok=True with the file URL when the job is (or already was)
        completed. A job owned by another worker, or not yet due, comes back
        with skipped=True; that is not an error.
        """
        max_attempts = max_attempts or self.default_max_attempts

        claimed = self.store.claim(job_id, worker_id, max_attempts=max_attempts)
        if isinstance(claimed, NotClaimable):
            return self._unclaimed_result(claimed)

        job = claimed
        started = time.monotonic()
        logger.info(f"Starting export job {job_id} (attempt {job.attempt_count}/{max_attempts}) on {worker_id}")

        try:
            result = await self._run_with_timeout(job)
        except asyncio.CancelledError:
            self._release_on_shutdown(job)
            raise

        if result.ok:
            logger.info(f"Export job {job_id} completed in {format_duration(time.monotonic() - started)}")
            return ProcessResult(
                ok=True,
                job_id=job_id,
                file_url=result.artifact.file_url,
                status=self._status_of(job_id),
            )

        return self._finalize_failure(job, result.failure, max_attempts)

    async def _run_with_timeout(self, job: ExportJob) -> PipelineResult:
        deadline = time.monotonic() + self.timeout_seconds
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, self.pipeline.run, job, deadline),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            # The executor thread stops at its next stage boundary; its
            # writes are fenced by the lease once the job is released below.
            return PipelineResult(failure=StageFailure(
                error_type="timeout",
                message=f"Export exceeded {format_duration(self.timeout_seconds)} time limit",
                classification=ErrorClass.TRANSIENT,
                failing_stage="pipeline",
            ))

    def _finalize_failure(self, job: ExportJob, failure: StageFailure, max_attempts: int) -> ProcessResult:
        decision = self.retry_controller.decide(job.attempt_count, failure, max_attempts)
        message = f"{failure.error_type}: {failure.message}"
        if failure.failing_stage:
            message = f"[{failure.failing_stage}] {message}"

        if decision.action == RetryAction.SKIP:
            logger.warning(f"Export job {job.id} is owned by another worker now; leaving it alone")
            return ProcessResult(ok=False, job_id=job.id, error=message, skipped=True)

        if decision.should_retry:
            applied = self.store.schedule_retry(job.id, decision.delay_seconds, message, lease=job.lease)
            if applied:
                logger.warning(
                    f"Export job {job.id} failed ({decision.reason}), "
                    f"retrying in {format_duration(decision.delay_seconds)}: {message}"
                )
        else:
            applied = self.store.fail(job.id, message, lease=job.lease)
            if applied:
                logger.error(f"Export job {job.id} failed permanently ({decision.reason}): {message}")

        if not applied:
            current = self.store.get(job.id)
            if current is not None and current.is_completed:
                # A timed-out run finished in its executor thread before the failure was written
                logger.info(f"Export job {job.id} completed before its failure could be recorded")
                return ProcessResult(ok=True, job_id=job.id, file_url=current.file_url, status=current.status)
            logger.warning(f"Export job {job.id} was reclaimed before its failure could be recorded")
            return ProcessResult(
                ok=False,
                job_id=job.id,
                error=message,
                status=current.status if current else None,
                skipped=True,
            )

        return ProcessResult(
            ok=False,
            job_id=job.id,
            error=message,
            status=self._status_of(job.id),
        )

    def _unclaimed_result(self, unclaimed: NotClaimable) -> ProcessResult:
        job = self.store.get(unclaimed.job_id)

        if job is None:
            logger.warning(f"Export job {unclaimed.job_id} not found")
            return ProcessResult(ok=False, job_id=unclaimed.job_id, error="Export job not found")

        if job.is_completed:
            return ProcessResult(ok=True, job_id=job.id, file_url=job.file_url, status=job.status)

        logger.debug(f"Export job {job.id} not claimable ({unclaimed.reason}), skipping")
        return ProcessResult(
            ok=False,
            job_id=job.id,
            error=job.last_error if job.status == ExportJobStatus.FAILED else None,
            status=job.status,
            skipped=True,
        )

    def _release_on_shutdown(self, job: ExportJob):
        try:
            self.store.schedule_retry(job.id, 0, "Worker shutdown during execution", lease=job.lease)
            logger.info(f"Released export job {job.id} on shutdown")
        except Exception as e:
            logger.error(f"Error releasing export job {job.id} on shutdown: {e}")

    def _status_of(self, job_id: str):
        job = self.store.get(job_id)
        return job.status if job else None
