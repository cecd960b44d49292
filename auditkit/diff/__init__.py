"""Document snapshot diff module for audit change maps."""

from .snapshot_diff import (
    diff_snapshots,
    to_snapshot,
    exclude_metadata,
    ChangeKind,
    RawChange,
    METADATA_KEYS,
)

from .change_classifier import (
    # Main classification function
    classify_changes,
    diff_and_classify,
    summarize_array,
    # Predicates
    is_entity,
    is_empty_value,
    path_key,
    # Types
    ChangeType,
    ChangeEntry,
    ChangeMap,
    MISSING,
)

__all__ = [
    # Layer 1: Structural Diff
    "diff_snapshots",
    "to_snapshot",
    "exclude_metadata",
    "ChangeKind",
    "RawChange",
    "METADATA_KEYS",
    # Layer 2: Change Classification
    "classify_changes",
    "diff_and_classify",
    "summarize_array",
    "is_entity",
    "is_empty_value",
    "path_key",
    "ChangeType",
    "ChangeEntry",
    "ChangeMap",
    "MISSING",
]
