# orchestrator/errors.py
from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for bulk job failures surfaced to callers."""


class ValidationError(OrchestratorError):
    """Malformed or empty input. Nothing was persisted."""


class NotFoundError(OrchestratorError):
    """Unknown job id or missing artifact."""


class InvalidTransition(OrchestratorError):
    """The requested lifecycle move is not allowed from the job's current status."""


class SpawnError(OrchestratorError):
    """The worker pool could not be launched. The job stays queued."""


class WorkerFailure(OrchestratorError):
    """The worker pool exited non-zero. Recorded on the job, never retried."""


class StoreError(OrchestratorError):
    """The job store could not be read or written."""
