"""
Exception hierarchy raised by the HTS import pipeline and its services.
"""

from __future__ import annotations


class ImportPipelineError(Exception):
    """Base class for importer failures."""

    retryable = True


class DownloadError(ImportPipelineError):
    """The source returned a non-success response or the transfer broke."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DownloadTimeout(DownloadError):
    """The transfer exceeded its wall-clock ceiling."""


class PayloadTooLargeError(ImportPipelineError):
    """The source payload exceeds ``IMPORTER_DOWNLOAD_MAX_MB``."""

    retryable = False

    def __init__(self, size_bytes: int, limit_bytes: int):
        super().__init__(f"Payload size {size_bytes} bytes exceeds limit of {limit_bytes} bytes.")
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


class MalformedPayloadError(ImportPipelineError):
    """The stored blob is not a recognised schedule document."""

    retryable = False


class BlobNotFoundError(ImportPipelineError):
    def __init__(self, key: str):
        super().__init__(f"Blob '{key}' does not exist.")
        self.key = key


class ImportJobNotFound(LookupError):
    retryable = False

    def __init__(self, import_id: int):
        super().__init__(f"Import job {import_id} not found.")
        self.import_id = import_id


class ImportJobConflict(RuntimeError):
    """A request collides with the job's current state or another job."""


class ImportJobStateError(ImportJobConflict):
    """The requested transition is not allowed from the job's status."""


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", True))
