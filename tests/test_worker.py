"""Tests for the export worker: scan admission, lifecycle and maintenance."""

import asyncio
from datetime import timedelta

from evidence_export.jobs.job_types import ExportJobStatus
from evidence_export.worker import ExportWorker

from conftest import FRAMEWORK_ID, ORG_ID


def make_worker(store, runner, **kwargs):
    kwargs.setdefault("worker_id", "worker-test")
    return ExportWorker(store, runner, **kwargs)


async def drain(worker):
    tasks = list(worker._active_tasks.values())
    if tasks:
        await asyncio.gather(*tasks)


class TestScan:

    def test_scan_runs_claimable_jobs(self, store, runner):
        ids = [store.create(ORG_ID, FRAMEWORK_ID, None) for _ in range(2)]

        async def scenario():
            worker = make_worker(store, runner)
            admitted = await worker.scan_once()
            await drain(worker)
            return admitted

        assert asyncio.run(scenario()) == 2
        assert all(store.get(i).status == ExportJobStatus.COMPLETED for i in ids)

    def test_scan_respects_concurrency(self, store, runner):
        for _ in range(3):
            store.create(ORG_ID, FRAMEWORK_ID, None)

        async def scenario():
            worker = make_worker(store, runner, concurrency=1)
            admitted = await worker.scan_once()
            await drain(worker)
            return admitted

        assert asyncio.run(scenario()) == 1
        statuses = [j.status for j in store._jobs.values()]
        assert statuses.count(ExportJobStatus.COMPLETED) == 1
        assert statuses.count(ExportJobStatus.PENDING) == 2

    def test_scan_with_nothing_due(self, store, runner):
        async def scenario():
            return await make_worker(store, runner).scan_once()

        assert asyncio.run(scenario()) == 0

    def test_job_is_not_admitted_twice(self, store, runner, job_id):
        async def scenario():
            worker = make_worker(store, runner)
            first = await worker._admit(job_id)
            second = await worker._admit(job_id)
            await drain(worker)
            return first, second

        assert asyncio.run(scenario()) == (True, False)
        assert store.get(job_id).attempt_count == 1


class TestLifecycle:

    def test_scanned_job_runs_until_shutdown(self, store, runner, job_id):
        async def scenario():
            worker = make_worker(store, runner, poll_interval=60, maintenance_interval=60)
            started = asyncio.create_task(worker.start())

            for _ in range(100):
                if store.get(job_id).status == ExportJobStatus.COMPLETED:
                    break
                await asyncio.sleep(0.02)

            worker.shutdown()
            await asyncio.wait_for(started, timeout=5)

        asyncio.run(scenario())
        assert store.get(job_id).status == ExportJobStatus.COMPLETED

    def test_default_max_attempts_from_runner(self, store, runner):
        async def scenario():
            return make_worker(store, runner).max_attempts

        assert asyncio.run(scenario()) == 3


class TestMaintenance:

    def test_fails_stale_jobs_without_attempts(self, store, runner, clock, job_id):
        store.claim(job_id, "crashed-worker")
        clock.advance(601)

        async def scenario():
            return make_worker(store, runner, max_attempts=1).run_maintenance()

        assert asyncio.run(scenario()) == {"failed_stale": 1, "purged": 0}
        assert store.get(job_id).status == ExportJobStatus.FAILED

    def test_purges_expired_jobs_and_files(self, store, runner, publisher, clock, job_id):
        asyncio.run(runner.process_export_job(job_id, "worker-a"))
        storage_path = store.get(job_id).metadata["storage_path"]
        clock.advance(timedelta(days=7, seconds=1).total_seconds())

        async def scenario():
            return make_worker(store, runner, blob_publisher=publisher).run_maintenance()

        assert asyncio.run(scenario()) == {"failed_stale": 0, "purged": 1}
        assert publisher.removed == [storage_path]
        assert storage_path not in publisher.objects
