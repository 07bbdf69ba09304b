"""Patch operation models.

A patch is an ordered list of operations tagged by ``op``. Required fields
are enforced per variant, so malformed entries are rejected when the patch
is parsed rather than while it is being applied.
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class AddOperation(BaseModel):
    """Create a file; behaves as an update when the path already exists."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    op: Literal["add"] = "add"
    path: str = Field(min_length=1)
    content: str


class UpdateOperation(BaseModel):
    """Replace a file's content; behaves as an add when the path is missing."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    op: Literal["update"] = "update"
    path: str = Field(min_length=1)
    content: str


class DeleteOperation(BaseModel):
    """Remove a file; deleting a missing path is a no-op."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    op: Literal["delete"] = "delete"
    path: str = Field(min_length=1)


PatchOperation = Annotated[
    Union[AddOperation, UpdateOperation, DeleteOperation],
    Field(discriminator="op"),
]

Patch = list[PatchOperation]

PATCH_ADAPTER: TypeAdapter[list[PatchOperation]] = TypeAdapter(list[PatchOperation])
