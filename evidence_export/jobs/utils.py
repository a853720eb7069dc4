"""
Job Utilities

Shared helpers for the export pipeline: JSON-safe serialization, storage path
derivation and human-readable formatting for logs.
"""

import hashlib
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime) -> str:
    """Format a datetime as an ISO-8601 UTC string for PostgREST filters and writes."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def safe_json_value(value: Any) -> Any:
    """Convert value to JSON-safe format."""
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (list, tuple, set)):
        return [safe_json_value(v) for v in value]
    if isinstance(value, dict):
        return {str(k): safe_json_value(v) for k, v in value.items()}
    return str(value)


def to_json_bytes(value: Any) -> bytes:
    return json.dumps(safe_json_value(value), indent=2, ensure_ascii=False).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def build_storage_path(
    organization_id: str,
    framework_id: str,
    job_id: str,
    created_at: Optional[datetime] = None
) -> str:
    """
    Deterministic object path for an export bundle.

    Uses the job's creation date rather than "today" so that a retry on a
    later day writes to the same path.
    """
    day = (created_at or utcnow()).strftime("%Y-%m-%d")
    return f"{organization_id}/{framework_id}/{day}/{job_id}.zip"


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        mins = seconds / 60
        return f"{mins:.1f}m"
    hours = seconds / 3600
    return f"{hours:.1f}h"


def format_file_size(size: int) -> str:
    """Format file size in human-readable form."""
    value = float(size)
    for unit in ["B", "KB", "MB", "GB"]:
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"
