"""
Tests for the export pipeline stages.

Run with: python -m pytest tests/test_pipeline.py -v
"""

import io
import time
import zipfile

from evidence_export.jobs.errors import PublishError
from evidence_export.jobs.job_types import ErrorClass, ExportJobStatus
from evidence_export.jobs.utils import sha256_hex

from conftest import FRAMEWORK_ID, ORG_ID, FakeBlobPublisher, FakeDataProvider, RecordingStore, make_pipeline


class TestHappyPath:

    def test_publishes_bundle_and_completes_job(self, store, pipeline, publisher, job_id):
        job = store.claim(job_id, "worker-a")

        result = pipeline.run(job)

        assert result.ok
        assert not result.reused
        expected_path = f"{ORG_ID}/{FRAMEWORK_ID}/2026-03-02/{job_id}.zip"
        assert result.artifact.storage_path == expected_path
        assert expected_path in publisher.objects

        stored = store.get(job_id)
        assert stored.status == ExportJobStatus.COMPLETED
        assert stored.progress == 100
        assert stored.file_url == result.artifact.file_url
        assert stored.file_size == len(publisher.objects[expected_path][0])

    def test_metadata(self, store, pipeline, publisher, job_id):
        job = store.claim(job_id, "worker-a")
        pipeline.run(job)

        metadata = store.get(job_id).metadata
        bundle, content_type = publisher.objects[metadata["storage_path"]]
        assert content_type == "application/zip"
        assert metadata["sha256"] == sha256_hex(bundle)
        assert metadata["framework_name"] == "ISO 27001"
        assert metadata["compliance_score"] == 72.5
        assert metadata["statistics"]["totalControls"] == 10
        assert len(metadata["files"]) == 8

    def test_bundle_contents(self, store, pipeline, publisher, job_id):
        job = store.claim(job_id, "worker-a")
        pipeline.run(job)

        bundle, _ = publisher.objects[store.get(job_id).metadata["storage_path"]]
        with zipfile.ZipFile(io.BytesIO(bundle)) as zf:
            names = set(zf.namelist())
        assert {"index.json", "controls.json", "summary.csv", "score-history.json"} <= names

    def test_progress_checkpoints_in_order(self, clock, data_provider, publisher):
        store = RecordingStore(clock=clock)
        job_id = store.create(ORG_ID, FRAMEWORK_ID, None)
        job = store.claim(job_id, "worker-a")

        make_pipeline(store, data_provider, publisher, clock).run(job)

        assert store.progress_values == [10, 30, 50, 60, 70, 80, 85, 90, 95]

    def test_completed_job_is_reused(self, store, pipeline, publisher, job_id):
        job = store.claim(job_id, "worker-a")
        pipeline.run(job)

        result = pipeline.run(store.get(job_id))

        assert result.ok
        assert result.reused
        assert publisher.upload_calls == 1


class TestFailures:

    def test_missing_framework_is_terminal(self, store, publisher, clock, job_id):
        pipeline = make_pipeline(store, FakeDataProvider(framework={}), publisher, clock)
        job = store.claim(job_id, "worker-a")

        result = pipeline.run(job)

        assert not result.ok
        assert result.failure.classification == ErrorClass.TERMINAL
        assert result.failure.error_type == "framework_not_found"
        assert result.failure.failing_stage == "framework"
        assert result.failure.hint
        assert publisher.upload_calls == 0

    def test_publish_failure_is_transient(self, store, clock, data_provider, job_id):
        pipeline = make_pipeline(store, data_provider, FakeBlobPublisher(fail_times=1), clock)
        job = store.claim(job_id, "worker-a")

        result = pipeline.run(job)

        assert result.failure.classification == ErrorClass.TRANSIENT
        assert result.failure.error_type == "publish_error"
        assert result.failure.failing_stage == "publish"
        assert store.get(job_id).status == ExportJobStatus.PROCESSING

    def test_unexpected_error_is_transient(self, store, publisher, clock, job_id):
        provider = FakeDataProvider(fail_on={"evidence": ConnectionError("connection reset")})
        job = store.claim(job_id, "worker-a")

        result = make_pipeline(store, provider, publisher, clock).run(job)

        assert result.failure.classification == ErrorClass.TRANSIENT
        assert result.failure.error_type == "ConnectionError"
        assert result.failure.message == "connection reset"
        assert result.failure.failing_stage == "evidence"

    def test_provider_raising_publish_error_keeps_its_type(self, store, publisher, clock, job_id):
        provider = FakeDataProvider(fail_on={"tasks": PublishError("bucket missing")})
        job = store.claim(job_id, "worker-a")

        result = make_pipeline(store, provider, publisher, clock).run(job)

        assert result.failure.error_type == "publish_error"
        assert result.failure.failing_stage == "tasks"

    def test_deadline_is_checked_between_stages(self, store, pipeline, publisher, job_id):
        job = store.claim(job_id, "worker-a")

        result = pipeline.run(job, deadline=time.monotonic() - 1)

        assert result.failure.error_type == "timeout"
        assert result.failure.classification == ErrorClass.TRANSIENT
        assert publisher.upload_calls == 0

    def test_reclaimed_job_is_a_conflict(self, store, publisher, clock, job_id):
        """If another worker takes the job mid-run, this run stops without writing."""

        class ReclaimingProvider(FakeDataProvider):
            def fetch_tasks(self, organization_id, framework_id):
                clock.advance(601)
                store.claim(job_id, "worker-b")
                return super().fetch_tasks(organization_id, framework_id)

        job = store.claim(job_id, "worker-a")
        result = make_pipeline(store, ReclaimingProvider(), publisher, clock).run(job)

        assert result.failure.classification == ErrorClass.CONFLICT
        assert result.failure.error_type == "lease_lost"
        assert store.get(job_id).locked_by == "worker-b"
        assert publisher.upload_calls == 0

    def test_job_deleted_mid_run_is_terminal(self, store, publisher, clock, job_id):
        class PurgingProvider(FakeDataProvider):
            def fetch_evidence(self, organization_id, framework_id):
                del store._jobs[job_id]
                return super().fetch_evidence(organization_id, framework_id)

        job = store.claim(job_id, "worker-a")
        result = make_pipeline(store, PurgingProvider(), publisher, clock).run(job)

        assert result.failure.classification == ErrorClass.TERMINAL
        assert result.failure.error_type == "job_not_found"
        assert result.failure.failing_stage == "tasks"
