"""Exceptions for orchestrator operations."""

from package_forge.exceptions import ForgeError


class OrchestratorError(ForgeError):
    """Base exception for all orchestrator operations."""


class GraphBuildError(OrchestratorError):
    """Raised when graph construction fails."""


class CheckpointNotFoundError(OrchestratorError):
    """Raised when a checkpoint id is not known to the session."""


class ConcurrentMutationError(OrchestratorError):
    """Raised when a project already has a mutation in flight."""
