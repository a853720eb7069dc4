"""
Runtime configuration for the export API and worker.

Values come from environment variables (a local .env file is loaded first).
"""

import os
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from evidence_export.jobs.errors import ConfigurationError

load_dotenv()


# env var -> (field name, cast)
_ENV_FIELDS = {
    "EXPORT_BUCKET": ("bucket", str),
    "EXPORT_SIGNED_URL_TTL": ("signed_url_ttl_seconds", int),
    "EXPORT_RETENTION_DAYS": ("retention_days", int),
    "EXPORT_MAX_ATTEMPTS": ("max_attempts", int),
    "EXPORT_RETRY_BASE_DELAY": ("retry_base_delay_seconds", float),
    "EXPORT_RETRY_MAX_DELAY": ("retry_max_delay_seconds", float),
    "EXPORT_RETRY_JITTER": ("retry_jitter_seconds", float),
    "EXPORT_JOB_TIMEOUT": ("job_timeout_seconds", float),
    "EXPORT_STALE_LOCK_SECONDS": ("stale_lock_seconds", float),
    "WORKER_ID": ("worker_id", str),
    "WORKER_CONCURRENCY": ("worker_concurrency", int),
    "WORKER_POLL_INTERVAL": ("poll_interval_seconds", float),
    "WORKER_SCAN_BATCH": ("scan_batch_size", int),
    "WORKER_MAINTENANCE_INTERVAL": ("maintenance_interval_seconds", float),
}


class ExportSettings(BaseModel):
    """Settings shared by the API process and the worker."""
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    supabase_jwt_secret: Optional[str] = None

    bucket: str = Field(default="compliance-exports", min_length=1)
    signed_url_ttl_seconds: int = Field(default=3600, gt=0)
    retention_days: int = Field(default=7, gt=0)

    max_attempts: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(default=60.0, ge=0)
    retry_max_delay_seconds: float = Field(default=900.0, ge=0)
    retry_jitter_seconds: float = Field(default=5.0, ge=0)

    job_timeout_seconds: float = Field(default=600.0, gt=0)
    # None means "same as job_timeout_seconds"
    stale_lock_seconds: Optional[float] = Field(default=None, gt=0)

    worker_id: Optional[str] = None
    worker_concurrency: int = Field(default=3, ge=1, le=64)
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    scan_batch_size: int = Field(default=10, ge=1)
    maintenance_interval_seconds: float = Field(default=60.0, gt=0)

    @property
    def effective_stale_lock_seconds(self) -> float:
        return self.stale_lock_seconds or self.job_timeout_seconds

    @property
    def supabase_key(self) -> Optional[str]:
        # Service role key if available (full access), otherwise anon key
        return self.supabase_service_role_key or self.supabase_anon_key

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides) -> "ExportSettings":
        """Build settings from environment variables; keyword overrides win."""
        env = os.environ if environ is None else environ

        values = {
            "supabase_url": env.get("SUPABASE_URL") or env.get("NEXT_PUBLIC_SUPABASE_URL"),
            "supabase_service_role_key": env.get("SUPABASE_SERVICE_ROLE_KEY"),
            "supabase_anon_key": env.get("SUPABASE_ANON_KEY") or env.get("NEXT_PUBLIC_SUPABASE_ANON_KEY"),
        "supabase_jwt_secret": env.get("SUPABASE_JWT_SECRET"),
        }

        for var, (field_name, cast) in _ENV_FIELDS.items():
            raw = env.get(var)
            if raw is None or raw == "":
                continue
            try:
                values[field_name] = cast(raw)
            except ValueError:
                raise ConfigurationError(f"Invalid value for {var}: {raw!r}")

        values.update({k: v for k, v in overrides.items() if v is not None})

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid export settings: {e}")


_settings: Optional[ExportSettings] = None


def get_settings() -> ExportSettings:
    """Get process-wide settings, read once from the environment."""
    global _settings
    if _settings is None:
        _settings = ExportSettings.from_env()
    return _settings
