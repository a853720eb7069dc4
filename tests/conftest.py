"""
Shared fixtures for the evidence export tests.

Fakes stand in for Supabase: an in-memory job store, a scripted data
provider and a blob publisher that can be told to fail.
"""

import os
import sys
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from evidence_export.collaborators import BlobPublisher, DataProvider, ZipArchiveBuilder
from evidence_export.jobs.errors import PublishError
from evidence_export.jobs.memory_store import InMemoryJobStore
from evidence_export.jobs.pipeline import ExportPipeline
from evidence_export.jobs.retry import RetryController, RetryPolicy
from evidence_export.jobs.runner import ExportJobRunner


ORG_ID = "org-1"
FRAMEWORK_ID = "iso27001"


# =============================================================================
# FAKES
# =============================================================================

class FakeClock:
    """Settable UTC clock; safe to read from executor threads."""

    def __init__(self, start=None):
        self._now = start or datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self._now

    def advance(self, seconds):
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds)


class FixedRandom:
    """rng stand-in returning the same value every time."""

    def __init__(self, value=0.0):
        self.value = value

    def random(self):
        return self.value


class FakeDataProvider(DataProvider):
    """
    10 controls (6 satisfied), 4 evidence items, 2 tasks, 1 policy,
    3 automation logs and 2 score snapshots (latest 72.5).
    """

    def __init__(self, framework=None, delay=0.0, fail_on=None):
        self.framework = framework if framework is not None else {
            "id": "fw-1", "name": "ISO 27001", "slug": FRAMEWORK_ID
        }
        self.delay = delay
        self.fail_on = fail_on or {}
        self.calls = []

    def _rows(self, name, rows):
        self.calls.append(name)
        if name in self.fail_on:
            raise self.fail_on[name]
        return rows

    def fetch_framework(self, framework_id):
        self.calls.append("framework")
        return self.framework or None

    def fetch_controls(self, organization_id, framework_id):
        if self.delay:
            time.sleep(self.delay)
        return self._rows("controls", [
            {
                "control_code": f"A.5.{i}",
                "title": f"Control {i}",
                "status": "satisfied" if i <= 6 else "not_satisfied",
                "default_risk_level": "medium",
            }
            for i in range(1, 11)
        ])

    def fetch_evidence(self, organization_id, framework_id):
        return self._rows("evidence", [{"id": f"ev-{i}", "title": f"Evidence {i}"} for i in range(4)])

    def fetch_tasks(self, organization_id, framework_id):
        return self._rows("tasks", [{"id": "t-1", "status": "open"}, {"id": "t-2", "status": "done"}])

    def fetch_policies(self, organization_id, framework_id):
        return self._rows("policies", [{"id": "p-1", "title": "Access Control Policy"}])

    def fetch_automation_logs(self, organization_id, framework_id):
        return self._rows("automation_logs", [{"control_key": f"A.5.{i}"} for i in range(3)])

    def fetch_score_history(self, organization_id, framework_id):
        return self._rows("score_history", [
            {"snapshot_date": "2026-02-01", "compliance_score": 64},
            {"snapshot_date": "2026-03-01", "compliance_score": 72.5},
        ])


class RecordingStore(InMemoryJobStore):
    """Records every accepted progress value."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.progress_values = []

    def update_progress(self, job_id, percent, lease=None):
        ok = super().update_progress(job_id, percent, lease=lease)
        if ok:
            self.progress_values.append(percent)
        return ok


class FakeBlobPublisher(BlobPublisher):

    def __init__(self, fail_times=0):
        self.fail_times = fail_times
        self.objects = {}
        self.upload_calls = 0
        self.removed = []

    def upload(self, path, data, content_type):
        self.upload_calls += 1
        if self.upload_calls <= self.fail_times:
            raise PublishError(f"storage unavailable (call {self.upload_calls})")
        self.objects[path] = (data, content_type)

    def signed_url(self, path, ttl_seconds):
        if path not in self.objects:
            raise PublishError(f"{path} not found")
        return f"https://storage.test/{path}?expires={ttl_seconds}"

    def remove(self, paths):
        self.removed.extend(paths)
        for path in paths:
            self.objects.pop(path, None)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryJobStore(stale_lock_seconds=600, retention_days=7, clock=clock)


@pytest.fixture
def data_provider():
    return FakeDataProvider()


@pytest.fixture
def publisher():
    return FakeBlobPublisher()


@pytest.fixture
def retry_controller():
    return RetryController(RetryPolicy(max_attempts=3), rng=FixedRandom(0.0))


def make_pipeline(store, data_provider, publisher, clock):
    return ExportPipeline(
        store,
        data_provider=data_provider,
        archive_builder=ZipArchiveBuilder(),
        blob_publisher=publisher,
        clock=clock,
    )


@pytest.fixture
def pipeline(store, data_provider, publisher, clock):
    return make_pipeline(store, data_provider, publisher, clock)


@pytest.fixture
def runner(store, pipeline, retry_controller):
    return ExportJobRunner(store, pipeline, retry_controller=retry_controller, timeout_seconds=30)


@pytest.fixture
def job_id(store):
    return store.create(ORG_ID, FRAMEWORK_ID, "user-1")
