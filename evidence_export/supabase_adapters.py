"""
Supabase implementations of the pipeline collaborators.

SupabaseDataProvider reads the compliance tables for one organization and
framework. SupabaseBlobPublisher stores bundles in a Supabase Storage bucket
and issues signed download URLs.

Query errors are not caught here: the pipeline classifies them as transient.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from evidence_export.collaborators import BlobPublisher, DataProvider
from evidence_export.jobs.errors import PublishError
from evidence_export.jobs.utils import to_timestamp, utcnow

logger = logging.getLogger(__name__)

SCORE_HISTORY_DAYS = 365
AUTOMATION_LOG_LIMIT = 1000


class SupabaseDataProvider(DataProvider):
    """
    framework_id is the framework slug (e.g. "iso27001"), as stored on
    compliance_export_jobs.framework_id and org_compliance_snapshots.
    """

    def __init__(self, supabase, score_history_days: int = SCORE_HISTORY_DAYS):
        self.supabase = supabase
        self.score_history_days = score_history_days

    def fetch_framework(self, framework_id: str) -> Optional[Dict[str, Any]]:
        # Not cached: a framework added after a miss must be visible to the next job
        result = self.supabase.table("frameworks")\
            .select("id, name, slug")\
            .eq("slug", framework_id)\
            .limit(1)\
            .execute()
        return result.data[0] if result.data else None

    def fetch_controls(self, organization_id: str, framework_id: str) -> List[Dict[str, Any]]:
        framework = self.fetch_framework(framework_id)
        if not framework:
            return []

        controls = self.supabase.table("framework_controls")\
            .select("control_code, title, summary_description, default_risk_level")\
            .eq("framework_id", framework["id"])\
            .execute().data or []

        evaluations = self.supabase.table("org_control_evaluations")\
            .select("control_key, status, details")\
            .eq("organization_id", organization_id)\
            .execute().data or []

        merged = []
        for control in controls:
            code = control.get("control_code") or ""
            evaluation = next(
                (e for e in evaluations if code and code in (e.get("control_key") or "")),
                None
            )
            merged.append({
                **control,
                "status": (evaluation or {}).get("status") or "unknown",
                "details": (evaluation or {}).get("details") or {},
            })
        return merged

    def fetch_evidence(self, organization_id: str, framework_id: str) -> List[Dict[str, Any]]:
        return self.supabase.table("org_evidence")\
            .select("id, title, evidence_type, verification_status, uploaded_at, file_url, metadata")\
            .eq("organization_id", organization_id)\
            .execute().data or []

    def fetch_tasks(self, organization_id: str, framework_id: str) -> List[Dict[str, Any]]:
        return self.supabase.table("org_tasks")\
            .select("id, title, description, status, priority, due_date, completed_at, created_at")\
            .eq("organization_id", organization_id)\
            .execute().data or []

    def fetch_policies(self, organization_id: str, framework_id: str) -> List[Dict[str, Any]]:
        return self.supabase.table("org_policies")\
            .select("id, title, version, status, last_reviewed_at, approved_at, created_at")\
            .eq("organization_id", organization_id)\
            .execute().data or []

    def fetch_automation_logs(self, organization_id: str, framework_id: str) -> List[Dict[str, Any]]:
        return self.supabase.table("org_control_evaluations")\
            .select("control_key, status, compliance_score, last_evaluated_at, details")\
            .eq("organization_id", organization_id)\
            .order("last_evaluated_at", desc=True)\
            .limit(AUTOMATION_LOG_LIMIT)\
            .execute().data or []

    def fetch_score_history(self, organization_id: str, framework_id: str) -> List[Dict[str, Any]]:
        since = utcnow() - timedelta(days=self.score_history_days)
        return self.supabase.table("org_compliance_snapshots")\
            .select("snapshot_date, compliance_score, controls_satisfied, controls_total")\
            .eq("organization_id", organization_id)\
            .eq("framework_slug", framework_id)\
            .gte("snapshot_date", to_timestamp(since))\
            .order("snapshot_date")\
            .execute().data or []


class SupabaseBlobPublisher(BlobPublisher):

    def __init__(self, supabase, bucket: str):
        self.supabase = supabase
        self.bucket = bucket

    def _bucket(self):
        return self.supabase.storage.from_(self.bucket)

    def upload(self, path: str, data: bytes, content_type: str) -> None:
        try:
            self._bucket().upload(path, data, {"content-type": content_type, "upsert": "true"})
        except Exception as e:
            raise PublishError(f"Upload to {self.bucket}/{path} failed: {e}")

    def signed_url(self, path: str, ttl_seconds: int) -> str:
        try:
            res = self._bucket().create_signed_url(path, ttl_seconds)
        except Exception as e:
            raise PublishError(f"Signing {self.bucket}/{path} failed: {e}")

        # supabase-py returns a dict with signedURL (older) or signedUrl
        if isinstance(res, dict):
            url = res.get("signedURL") or res.get("signedUrl")
        else:
            url = getattr(res, "signedURL", None) or getattr(res, "signedUrl", None)

        if not url:
            raise PublishError(f"No signed URL returned for {self.bucket}/{path}")
        return url

    def remove(self, paths: List[str]) -> None:
        if not paths:
            return
        try:
            self._bucket().remove(paths)
        except Exception as e:
            raise PublishError(f"Removing {len(paths)} object(s) from {self.bucket} failed: {e}")
