"""Background task orchestration package."""

from .exceptions import (
    CollaboratorError,
    ConfigurationError,
    JobDefinitionError,
    MediaCatalogError,
    SourceNotFoundError,
    TaskCancelledError,
)
from .models import (
    ActivityKind,
    ActivityLogEntry,
    Job,
    JobDefinition,
    JobKind,
    JobProgress,
    JobResult,
    JobStatus,
    QueueState,
)
