"""Models for representing changes between two snapshots."""

from pydantic import BaseModel, ConfigDict, Field


class ChangeSet(BaseModel):
    """Changed paths and per-file changed lines between two snapshots.

    Derived data only: it can always be recomputed from the (old, new) pair
    and is never persisted.
    """

    model_config = ConfigDict(frozen=True)

    changed_paths: frozenset[str] = Field(default_factory=frozenset)  # New or modified
    deleted_paths: frozenset[str] = Field(default_factory=frozenset)
    line_diffs: dict[str, frozenset[int]] = Field(default_factory=dict)  # 1-indexed, new content

    @property
    def is_empty(self) -> bool:
        return not (self.changed_paths or self.deleted_paths)
