"""
Manifest Assembly

Builds the bundle manifest (index.json), aggregate statistics and the CSV
summary from fetched records. Pure functions: nothing here touches storage.
"""

import csv
import io
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from evidence_export.jobs.job_types import ExportJob
from evidence_export.jobs.utils import to_json_bytes

SATISFIED_STATUS = "satisfied"

# record category -> file name inside the bundle
CONTENT_FILES = {
    "controls": "controls.json",
    "evidence": "evidence.json",
    "tasks": "tasks.json",
    "policies": "policies.json",
    "automation_logs": "automation-logs.json",
    "score_history": "score-history.json",
    "manifest": "index.json",
    "summary": "summary.csv",
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ManifestStatistics(_CamelModel):
    total_controls: int = 0
    satisfied_controls: int = 0
    total_evidence: int = 0
    total_tasks: int = 0
    total_policies: int = 0

    @property
    def control_coverage(self) -> int:
        """Satisfied controls as a whole percentage; 0 when there are no controls."""
        if not self.total_controls:
            return 0
        return round(self.satisfied_controls / self.total_controls * 100)


class ExportManifest(_CamelModel):
    export_id: str
    organization_id: str
    framework_id: str
    framework_name: str
    exported_at: datetime
    exported_by: Optional[str] = None
    compliance_score: float = 0
    contents: Dict[str, str] = Field(default_factory=lambda: dict(CONTENT_FILES))
    statistics: ManifestStatistics

    def to_json_bytes(self) -> bytes:
        return to_json_bytes(self.model_dump(mode="json", by_alias=True))


def compute_statistics(records: Dict[str, List[Dict[str, Any]]]) -> ManifestStatistics:
    controls = records.get("controls") or []
    return ManifestStatistics(
        total_controls=len(controls),
        satisfied_controls=sum(1 for c in controls if c.get("status") == SATISFIED_STATUS),
        total_evidence=len(records.get("evidence") or []),
        total_tasks=len(records.get("tasks") or []),
        total_policies=len(records.get("policies") or []),
    )


def latest_compliance_score(score_history: List[Dict[str, Any]]) -> float:
    """Score of the most recent snapshot (history is oldest first)."""
    if not score_history:
        return 0
    return score_history[-1].get("compliance_score") or 0


def build_manifest(
    job: ExportJob,
    framework: Dict[str, Any],
    records: Dict[str, List[Dict[str, Any]]],
    exported_at: datetime
) -> ExportManifest:
    return ExportManifest(
        export_id=job.id,
        organization_id=job.organization_id,
        framework_id=job.framework_id,
        framework_name=framework.get("name") or job.framework_id.upper(),
        exported_at=exported_at,
        exported_by=job.requested_by,
        compliance_score=latest_compliance_score(records.get("score_history") or []),
        statistics=compute_statistics(records),
    )


def generate_csv_summary(manifest: ExportManifest, controls: List[Dict[str, Any]]) -> str:
    stats = manifest.statistics
    out = io.StringIO()
    w = csv.writer(out, lineterminator="\n")

    w.writerow(["Audit Evidence Pack Summary"])
    w.writerow(["Framework", manifest.framework_name])
    w.writerow(["Export Date", manifest.exported_at.strftime("%Y-%m-%d")])
    w.writerow(["Compliance Score", f"{manifest.compliance_score:g}%"])
    w.writerow([])
    w.writerow(["Statistics"])
    w.writerow(["Total Controls", stats.total_controls])
    w.writerow(["Satisfied Controls", stats.satisfied_controls])
    w.writerow(["Control Coverage", f"{stats.control_coverage}%"])
    w.writerow(["Total Evidence", stats.total_evidence])
    w.writerow(["Total Tasks", stats.total_tasks])
    w.writerow(["Total Policies", stats.total_policies])
    w.writerow([])
    w.writerow(["Control Code", "Title", "Status", "Risk Level"])
    for c in controls:
        w.writerow([
            c.get("control_code"),
            c.get("title"),
            c.get("status", "unknown"),
            c.get("default_risk_level"),
        ])

    return out.getvalue()


def build_archive_payloads(
    manifest: ExportManifest,
    records: Dict[str, List[Dict[str, Any]]]
) -> Dict[str, bytes]:
    """Named payloads for the archive builder, in a stable order."""
    payloads = {CONTENT_FILES["manifest"]: manifest.to_json_bytes()}
    for category in ("controls", "evidence", "tasks", "policies", "automation_logs", "score_history"):
        payloads[CONTENT_FILES[category]] = to_json_bytes(records.get(category) or [])
    payloads[CONTENT_FILES["summary"]] = generate_csv_summary(
        manifest, records.get("controls") or []
    ).encode("utf-8")
    return payloads
