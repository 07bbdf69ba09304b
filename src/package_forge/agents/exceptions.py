"""Exceptions for agent operations."""

from package_forge.exceptions import ForgeError


class AgentError(ForgeError):
    """Base exception for all agent operations."""


class PatchValidationError(AgentError):
    """Raised when a patch or generated file list is malformed."""


class GenerationError(AgentError):
    """Raised when the generation model call fails."""


class ResourceExhaustedError(GenerationError):
    """Raised when the model provider rate-limits or is overloaded.

    Attributes:
        retry_after: Seconds the provider asked us to wait, if it said.
    """

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class InputTooLargeError(GenerationError):
    """Raised when a request exceeds the model's input limits. Never retried."""


class PayloadSerializationError(GenerationError):
    """Raised when project data cannot be serialised for a model request."""
