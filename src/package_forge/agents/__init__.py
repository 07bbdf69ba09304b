"""Agent components for package_forge."""

from package_forge.agents.exceptions import (
    AgentError,
    GenerationError,
    InputTooLargeError,
    PatchValidationError,
    PayloadSerializationError,
    ResourceExhaustedError,
)
from package_forge.agents.code_generator import CodeGenerator
from package_forge.agents.patch_reconciler import (
    apply_patch,
    parse_file_collection,
    parse_file_collection_json,
    parse_patch,
    parse_patch_json,
)

__all__ = [
    "AgentError",
    "CodeGenerator",
    "GenerationError",
    "InputTooLargeError",
    "PatchValidationError",
    "PayloadSerializationError",
    "ResourceExhaustedError",
    "apply_patch",
    "parse_file_collection",
    "parse_file_collection_json",
    "parse_patch",
    "parse_patch_json",
]
