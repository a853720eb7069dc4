"""
Evidence Export Worker

A dedicated worker process that claims and runs export jobs.

Usage:
    python worker.py [--concurrency=N] [--poll-interval=S] [--worker-id=ID] [--max-attempts=N]

Features:
- Periodic scan for due pending jobs and stale locks (the system of record;
  the API process runs new jobs right away as background tasks)
- Maintenance: fails stale jobs with no attempts left, purges expired exports
- Graceful shutdown on signals
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Dict, Optional

from evidence_export.collaborators import BlobPublisher
from evidence_export.config import ExportSettings
from evidence_export.jobs.errors import ConfigurationError
from evidence_export.jobs.job_store import JobStore
from evidence_export.jobs.runner import ExportJobRunner

logger = logging.getLogger("evidence_export.worker")


class ExportWorker:
    """
    Worker that admits jobs found by the scan and runs up to `concurrency`
    of them at once.
    """

    def __init__(
        self,
        store: JobStore,
        runner: ExportJobRunner,
        worker_id: Optional[str] = None,
        concurrency: int = 3,
        poll_interval: float = 5.0,
        scan_batch_size: int = 10,
        maintenance_interval: float = 60.0,
        max_attempts: Optional[int] = None,
        blob_publisher: Optional[BlobPublisher] = None
    ):
        self.worker_id = worker_id or f"worker-{os.getpid()}-{datetime.now(timezone.utc).strftime('%H%M%S')}"
        self.store = store
        self.runner = runner
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.scan_batch_size = scan_batch_size
        self.maintenance_interval = maintenance_interval
        self.max_attempts = max_attempts or runner.default_max_attempts
        self.blob_publisher = blob_publisher

        self._active_tasks: Dict[str, asyncio.Task] = {}
        self._shutdown_event = asyncio.Event()
        self._slots = asyncio.Semaphore(concurrency)

        logger.info(f"Worker {self.worker_id} initialized with concurrency={concurrency}")

    async def start(self):
        """Start the worker and run until shutdown."""
        logger.info(f"Worker {self.worker_id} starting...")

        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.shutdown)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # Windows, or not on the main thread
                pass

        try:
            await asyncio.gather(
                self._scan_loop(),
                self._maintenance_loop(),
            )
        except asyncio.CancelledError:
            logger.info("Worker cancelled")
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self._cleanup()

    def shutdown(self):
        """Handle shutdown signal."""
        logger.info(f"Worker {self.worker_id} received shutdown signal")
        self._shutdown_event.set()

    async def _wait_or_shutdown(self, timeout: float) -> bool:
        """Sleep up to timeout; True if shutdown was requested meanwhile."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _acquire_slot(self) -> bool:
        """Wait for a free slot; False if shutdown was requested first."""
        acquire = asyncio.create_task(self._slots.acquire())
        stop = asyncio.create_task(self._shutdown_event.wait())
        done, pending = await asyncio.wait({acquire, stop}, return_when=asyncio.FIRST_COMPLETED)
        for t in pending:
            t.cancel()

        if acquire not in done:
            return False
        if self._shutdown_event.is_set():
            self._slots.release()
            return False
        return True

    async def _admit(self, job_id: str) -> bool:
        """Start processing job_id if it is not already active here."""
        if job_id in self._active_tasks:
            return False

        if not await self._acquire_slot():
            return False

        task = asyncio.create_task(self._process(job_id))
        self._active_tasks[job_id] = task
        task.add_done_callback(lambda t, jid=job_id: self._task_done(jid))
        return True

    async def _process(self, job_id: str):
        try:
            result = await self.runner.process_export_job(job_id, self.worker_id, self.max_attempts)
            if result.ok:
                logger.info(f"Export job {job_id} completed: {result.file_url}")
            elif not result.skipped:
                logger.warning(f"Export job {job_id} did not complete: {result.error}")
        except asyncio.CancelledError:
            raise
        except Exception:
            # Store unavailable etc.; the job's lock goes stale and the scan reclaims it.
            logger.exception(f"Error processing export job {job_id}")
        finally:
            self._slots.release()

    def _task_done(self, job_id: str):
        self._active_tasks.pop(job_id, None)
        logger.debug(f"Task for export job {job_id} cleaned up")

    async def scan_once(self) -> int:
        """Admit due jobs found by one scan. Returns how many were admitted."""
        job_ids = self.store.find_claimable(self.scan_batch_size, max_attempts=self.max_attempts)
        admitted = 0
        for job_id in job_ids:
            if self._shutdown_event.is_set() or self._slots.locked():
                break
            if await self._admit(job_id):
                admitted += 1
        return admitted

    async def _scan_loop(self):
        logger.info("Starting export scan loop")
        while not self._shutdown_event.is_set():
            try:
                admitted = await self.scan_once()
                if admitted:
                    logger.info(f"Scan admitted {admitted} export job(s)")
            except Exception as e:
                logger.error(f"Error in scan loop: {e}")

            if await self._wait_or_shutdown(self.poll_interval):
                break
        logger.info("Export scan loop stopped")

    def run_maintenance(self) -> Dict[str, int]:
        """Fail stale jobs that have no attempts left and purge expired exports."""
        failed = self.store.fail_stale_jobs(self.max_attempts)
        if failed:
            logger.warning(f"Failed {failed} stale export job(s) with no attempts left")

        expired = self.store.purge_expired()
        if expired:
            logger.info(f"Purged {len(expired)} expired export job(s)")
            paths = [
                job.metadata["storage_path"] for job in expired
                if job.metadata and job.metadata.get("storage_path")
            ]
            if paths and self.blob_publisher is not None:
                try:
                    self.blob_publisher.remove(paths)
                except Exception as e:
                    logger.error(f"Error removing expired export files: {e}")

        return {"failed_stale": failed, "purged": len(expired)}

    async def _maintenance_loop(self):
        while not self._shutdown_event.is_set():
            try:
                self.run_maintenance()
            except Exception as e:
                logger.error(f"Error in export maintenance: {e}")

            if await self._wait_or_shutdown(self.maintenance_interval):
                break

    async def _cleanup(self):
        """Cancel active jobs; the runner releases each one for retry."""
        logger.info("Worker cleaning up...")

        for job_id, task in list(self._active_tasks.items()):
            if not task.done():
                logger.info(f"Cancelling active export job {job_id}")
                task.cancel()

        if self._active_tasks:
            await asyncio.gather(*self._active_tasks.values(), return_exceptions=True)

        logger.info("Worker cleanup complete")


def build_worker(settings: ExportSettings) -> ExportWorker:
    from evidence_export.factory import build_job_store, build_runner
    from evidence_export.supabase_adapters import SupabaseBlobPublisher
    from evidence_export.supabase_client import create_supabase

    supabase = create_supabase(settings)
    store = build_job_store(supabase, settings)
    return ExportWorker(
        store,
        build_runner(supabase, settings, store=store),
        worker_id=settings.worker_id,
        concurrency=settings.worker_concurrency,
        poll_interval=settings.poll_interval_seconds,
        scan_batch_size=settings.scan_batch_size,
        maintenance_interval=settings.maintenance_interval_seconds,
        max_attempts=settings.max_attempts,
        blob_publisher=SupabaseBlobPublisher(supabase, settings.bucket),
    )


def main(argv=None):
    """Main entry point for the worker."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description="Evidence Export Worker")
    parser.add_argument(
        "--concurrency", "-c",
        type=int,
        default=None,
        help="Number of export jobs to run concurrently (default: WORKER_CONCURRENCY or 3)"
    )
    parser.add_argument(
        "--poll-interval", "-p",
        type=float,
        default=None,
        help="Seconds between scans (default: WORKER_POLL_INTERVAL or 5.0)"
    )
    parser.add_argument(
        "--worker-id",
        type=str,
        default=None,
        help="Unique worker identifier (default: WORKER_ID or auto-generated)"
    )
    parser.add_argument(
        "--max-attempts",
        type=int,
        default=None,
        help="Attempts per job before it fails; keep equal to the API's EXPORT_MAX_ATTEMPTS (default: EXPORT_MAX_ATTEMPTS or 3)"
    )
    args = parser.parse_args(argv)

    try:
        settings = ExportSettings.from_env(
            worker_concurrency=args.concurrency,
            poll_interval_seconds=args.poll_interval,
            worker_id=args.worker_id,
            max_attempts=args.max_attempts,
        )
        worker = build_worker(settings)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    try:
        asyncio.run(worker.start())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")

    logger.info("Worker stopped")


if __name__ == "__main__":
    main()
