"""
Error Taxonomy
==============
Exceptions raised by the pipeline core.

    ValidationError       malformed archive entry (recovered per entry)
    ExternalServiceError  batch provider unreachable, rejected or failed
    NotFoundError         job or artifact missing
    ConflictError         retry target invalid for the job's schema/progress
    StorageIOError        storage or filesystem failure
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(PipelineError):
    """An archive entry name or stem is not acceptable."""

    def __init__(self, entry_name: str, reason: str):
        super().__init__(f"{entry_name!r}: {reason}")
        self.entry_name = entry_name
        self.reason = reason


class ExternalServiceError(PipelineError):
    """The batch recognition provider failed or returned unusable output."""


class NotFoundError(PipelineError):
    """A job or stored artifact does not exist."""


class ConflictError(PipelineError):
    """The requested transition is not valid for the job's current state."""


class StorageIOError(PipelineError, OSError):
    """Reading or writing the object store or working directory failed."""
