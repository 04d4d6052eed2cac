"""Exceptions raised across the job pipeline."""
from __future__ import annotations

from typing import Optional


class JobValidationError(ValueError):
    """Malformed job request; rejected before any record is created."""


class DispatchError(Exception):
    """The store or broker was unavailable while creating a job."""

    def __init__(self, message: str, job_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.job_id = job_id


class TransformError(Exception):
    """A single input failed its operation-specific transform."""


class UnsupportedFormatError(TransformError):
    """The input's file type has no registered transform."""


class PersistenceError(Exception):
    """The job store could not be read or written."""


class JobNotFoundError(LookupError):
    """Requested job ID does not exist."""


class InvalidTransitionError(ValueError):
    """A status update would move a job backwards or out of a terminal state."""


class BrokerError(Exception):
    """The queue broker could not accept, deliver or settle a message."""


# ── Result resolution ───────────────────────────────────────────────


class ResolutionError(Exception):
    """A download could not be resolved to file content."""


class ResultNotReadyError(ResolutionError):
    """The job has not completed."""


class NoContentError(ResolutionError):
    """The job has no output files available."""


class FileIndexError(ResolutionError):
    """The requested output index is outside the job's outputs."""


class MissingFileError(ResolutionError):
    """The output file recorded on the job is gone from disk."""
