"""
Evidence Export

Asynchronous pipeline that turns "export the audit evidence for framework F"
into a stored, downloadable bundle, with progress reporting, crash recovery
and bounded retries.
"""

__version__ = "1.0.0"
