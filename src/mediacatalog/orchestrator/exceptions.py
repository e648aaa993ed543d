"""Custom exceptions for background job and monitoring operations."""

from __future__ import annotations


class MediaCatalogError(Exception):
    """Base class for all errors raised by the background services."""

    pass


class TaskCancelledError(MediaCatalogError):
    """Raised when a running job observes a cancellation request.

    This exception is the cooperative cancellation sentinel. It is raised
    from the job's progress callback (or by a collaborator that checked its
    cancellation token) and is classified as ``cancelled`` rather than
    ``failed`` by the scheduler.

    Example:
        A library scan reporting progress after ``cancel_current()`` was
        called receives this exception from its progress callback and
        unwinds.
    """

    def __init__(self, message: str = "Task cancelled") -> None:
        super().__init__(message)


class JobDefinitionError(MediaCatalogError, ValueError):
    """Raised when a job definition is missing required identifiers.

    Example:
        Running a library scan job without a source id or library id
        raises this exception, which fails the job without stopping the
        execution loop.
    """

    pass


class CollaboratorError(MediaCatalogError):
    """Raised when a scan or analysis collaborator reports failure.

    The message carries the collaborator's own error strings so that the
    failed job's history entry is human readable.
    """

    pass


class SourceNotFoundError(MediaCatalogError, KeyError):
    """Raised when an operation references an unknown media source."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep messages readable
        return str(self.args[0]) if self.args else ""


class ConfigurationError(MediaCatalogError):
    """Raised when service configuration cannot be loaded or validated."""

    pass
