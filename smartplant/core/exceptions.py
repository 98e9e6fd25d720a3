"""
Error taxonomy for the observation pipeline.

Every failure raised by the services derives from PipelineError so the
HTTP layer can translate it into a response that tells the caller which
kind of failure happened. Services raise these and never return error
values.
"""

from typing import Any, Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    error_code: str = "pipeline_error"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for an API error response."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details or None,
        }


class ValidationError(PipelineError):
    """Malformed or missing required input. No state was mutated."""

    error_code = "validation_error"
    status_code = 400


class NotFoundError(PipelineError):
    """An observation or species identifier does not resolve."""

    error_code = "not_found"
    status_code = 404


class WorkerUnavailable(PipelineError):
    """The classifier subprocess is not running, crashed, timed out or answered garbage."""

    error_code = "worker_unavailable"
    status_code = 503


class StorageError(PipelineError):
    """An insert, update or query against the relational store failed."""

    error_code = "storage_error"
    status_code = 500


class FileSystemError(PipelineError):
    """Copying or creating directories for an archived image failed."""

    error_code = "filesystem_error"
    status_code = 500
