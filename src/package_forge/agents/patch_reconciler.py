"""Merge sparse patch operations into a complete file collection."""

import json
import logging
import re
from collections.abc import Iterable, Sequence
from typing import Any

from pydantic import ValidationError

from package_forge.agents.exceptions import PatchValidationError
from package_forge.models import (
    PATCH_ADAPTER,
    AddOperation,
    DeleteOperation,
    FileCollection,
    FileRecord,
    PatchOperation,
    UpdateOperation,
    files_from_mapping,
    index_files,
)

logger = logging.getLogger(__name__)

_CODE_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n(.*?)\n?```\s*$", re.DOTALL)


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code fence from model output, if any."""
    match = _CODE_FENCE_RE.match(text)
    if match:
        return match.group(1)
    return text.strip()


def _load_json(text: str, what: str) -> Any:
    try:
        return json.loads(strip_code_fence(text))
    except json.JSONDecodeError as e:
        raise PatchValidationError(
            f"Failed to parse the model's {what} response. The generated JSON was malformed: {e}"
        ) from e


def parse_patch(raw: Any) -> list[PatchOperation]:
    """Validate raw patch data into typed operations.

    Args:
        raw: A list of dicts (or already-typed operations).

    Returns:
        List of AddOperation / UpdateOperation / DeleteOperation.

    Raises:
        PatchValidationError: If the data is not a list or any entry lacks
            ``op``/``path``, or an add/update lacks ``content``.
    """
    if not isinstance(raw, list):
        raise PatchValidationError(
            f"Patch must be a list of operations, got {type(raw).__name__}"
        )
    try:
        return PATCH_ADAPTER.validate_python(raw)
    except ValidationError as e:
        raise PatchValidationError(f"Invalid patch operation: {e}") from e


def parse_patch_json(text: str) -> list[PatchOperation]:
    """Parse a model's JSON patch response into typed operations."""
    return parse_patch(_load_json(text, "patch"))


def parse_file_collection(raw: Any) -> FileCollection:
    """Validate a full-generation result into a file collection.

    Later entries for a repeated path replace earlier ones so the result
    always has unique paths.

    Raises:
        PatchValidationError: If the data is not a list of {path, content}.
    """
    if not isinstance(raw, list):
        raise PatchValidationError("API returned an invalid data structure.")

    files: dict[str, str] = {}
    for index, entry in enumerate(raw):
        try:
            record = FileRecord.model_validate(entry)
        except ValidationError as e:
            raise PatchValidationError(f"Invalid file entry at index {index}: {e}") from e
        if record.path in files:
            logger.warning("Generated files repeat path %s; keeping the last", record.path)
        files[record.path] = record.content

    return files_from_mapping(files)


def parse_file_collection_json(text: str) -> FileCollection:
    """Parse a model's full-generation JSON response into a file collection."""
    return parse_file_collection(_load_json(text, "generation"))


def apply_patch(
    current: Iterable[FileRecord],
    patch: Sequence[PatchOperation | dict[str, Any]],
) -> FileCollection:
    """Apply patch operations to a file collection.

    Pure function: ``current`` is never modified. ``add`` and ``update``
    both upsert by path, ``delete`` removes the path if present. Operations
    apply in order so later operations on the same path win. The whole
    patch is validated before anything is applied.

    Args:
        current: The file collection to patch.
        patch: Typed operations, or raw dicts to be validated first.

    Returns:
        A new file collection. Record order is not significant.

    Raises:
        PatchValidationError: If any operation is malformed, or ``current``
            contains duplicate paths.
    """
    operations = parse_patch(list(patch))

    try:
        working = index_files(current)
    except ValueError as e:
        raise PatchValidationError(str(e)) from e

    for operation in operations:
        if isinstance(operation, (AddOperation, UpdateOperation)):
            working[operation.path] = operation.content
        elif isinstance(operation, DeleteOperation):
            working.pop(operation.path, None)

    return files_from_mapping(working)
