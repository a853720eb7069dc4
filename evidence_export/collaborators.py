"""
Collaborator interfaces used by the export pipeline.

Concrete Supabase implementations live in supabase_adapters; tests provide
in-process fakes.
"""

import io
import zipfile
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


class DataProvider(ABC):
    """Fetches the records that go into an evidence bundle."""

    @abstractmethod
    def fetch_framework(self, framework_id: str) -> Optional[Dict[str, Any]]:
        """Framework record (at least `name`), or None if it does not exist."""

    @abstractmethod
    def fetch_controls(self, organization_id: str, framework_id: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def fetch_evidence(self, organization_id: str, framework_id: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def fetch_tasks(self, organization_id: str, framework_id: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def fetch_policies(self, organization_id: str, framework_id: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def fetch_automation_logs(self, organization_id: str, framework_id: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def fetch_score_history(self, organization_id: str, framework_id: str) -> List[Dict[str, Any]]:
        ...


class ArchiveBuilder(ABC):

    @abstractmethod
    def build(self, named_payloads: Dict[str, bytes]) -> bytes:
        """Serialize named payloads into one downloadable bundle."""


class BlobPublisher(ABC):
    """Durable object storage with time-limited retrieval URLs."""

    @abstractmethod
    def upload(self, path: str, data: bytes, content_type: str) -> None:
        """Store data at path, replacing any previous object. Raises PublishError."""

    @abstractmethod
    def signed_url(self, path: str, ttl_seconds: int) -> str:
        """Time-limited URL for path. Raises PublishError."""

    def remove(self, paths: List[str]) -> None:
        """Delete stored objects. Optional; used by retention cleanup."""


class ZipArchiveBuilder(ArchiveBuilder):
    """Builds an in-memory deflated ZIP."""

    content_type = "application/zip"

    def __init__(self, compression: int = zipfile.ZIP_DEFLATED, compresslevel: int = 9):
        self.compression = compression
        self.compresslevel = compresslevel

    def build(self, named_payloads: Dict[str, bytes]) -> bytes:
        zip_buf = io.BytesIO()
        with zipfile.ZipFile(zip_buf, "w", self.compression, compresslevel=self.compresslevel) as zf:
            for name, payload in named_payloads.items():
                zf.writestr(name, payload)
        return zip_buf.getvalue()
