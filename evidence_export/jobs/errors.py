"""
Export Errors

Error taxonomy for the export pipeline. Every error carries a classification
so the retry controller can decide without parsing messages:

- transient: network timeouts, storage 5xx, provider unavailable (retried)
- terminal: missing job, missing framework, bad configuration (failed at once)
- conflict: another worker owns the job now (nothing is written)
"""

from typing import Optional

from evidence_export.jobs.job_types import ErrorClass


class ExportError(Exception):
    """Base class for classified export failures."""

    error_type = "export_error"
    classification = ErrorClass.TRANSIENT
    default_hint: Optional[str] = None

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint or self.default_hint

    @property
    def retryable(self) -> bool:
        return self.classification == ErrorClass.TRANSIENT


class TransientExportError(ExportError):
    error_type = "transient_error"
    default_hint = "A downstream service was unavailable. The export will be retried automatically."


class PublishError(TransientExportError):
    error_type = "publish_error"
    default_hint = "The export bundle could not be stored. It will be retried automatically."


class PipelineTimeoutError(TransientExportError):
    error_type = "timeout"
    default_hint = "The export took too long and will be retried."


class TerminalExportError(ExportError):
    error_type = "terminal_error"
    classification = ErrorClass.TERMINAL
    default_hint = "This export cannot succeed without a correction. Start a new export after fixing it."


class JobNotFoundError(TerminalExportError):
    error_type = "job_not_found"
    default_hint = "The export job no longer exists. It may have expired."


class FrameworkNotFoundError(TerminalExportError):
    error_type = "framework_not_found"
    default_hint = "The requested framework does not exist."


class ConfigurationError(TerminalExportError):
    error_type = "configuration_error"
    default_hint = "This is a system configuration error. Please contact support."


class LeaseLostError(ExportError):
    error_type = "lease_lost"
    classification = ErrorClass.CONFLICT
