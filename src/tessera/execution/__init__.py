"""Shard execution: workers, retries, and the external collaborators."""

from tessera.execution.artifacts import ArtifactStore, DiagnosticPayload, LocalArtifactStore
from tessera.execution.cancellation import CancellationToken
from tessera.execution.collaborator import (
    CommandCollaborator,
    ExecutionCollaborator,
    ExecutionOutcome,
    ExecutionSignal,
)
from tessera.execution.retry import RetryState, classify
from tessera.execution.worker_pool import RunOptions, WorkerPool

__all__ = [
    "ArtifactStore",
    "CancellationToken",
    "CommandCollaborator",
    "DiagnosticPayload",
    "ExecutionCollaborator",
    "ExecutionOutcome",
    "ExecutionSignal",
    "LocalArtifactStore",
    "RetryState",
    "RunOptions",
    "WorkerPool",
    "classify",
]
