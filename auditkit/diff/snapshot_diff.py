"""
Snapshot diff engine for comparing two states of a document.

This module implements the structural layer of the audit pipeline:
- Clones documents into plain JSON snapshots before comparing them
- Walks both snapshots in parallel and emits one RawChange per difference
- Filters document metadata (identity, version, timestamps) at the root
- Reports sequence differences against the sequence itself, so the
  classifier can summarize a whole array field in one entry

The engine answers "what is different?". Deciding how a difference is shown
to people (entity grouping, array summaries, Add/Edit/Delete labels) is the
job of change_classifier.py.
"""

import json
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from uuid import UUID


# Root-level document fields that must NEVER appear in an audit record.
#
# These are maintained by the storage layer, not by people:
# - _id identifies the document (it is stored on the record as itemId)
# - __v is the optimistic-locking version counter
# - createdAt / updatedAt are rewritten on every save
#
# Only the root level is filtered. A nested "entity._id" is a real change.
METADATA_KEYS = {
    "_id",
    "__v",
    "createdAt",
    "updatedAt",
}

PathSegment = Union[str, int]
Path = Tuple[PathSegment, ...]
PathFilter = Callable[[Path, str], bool]


class ChangeKind(Enum):
    """Kinds of raw differences between two snapshots."""
    ADDED = "N"          # Present only in the "after" snapshot
    DELETED = "D"        # Present only in the "before" snapshot
    EDITED = "E"         # Present in both with a different value
    ARRAY_CHANGED = "A"  # Difference somewhere inside a sequence


@dataclass(frozen=True)
class RawChange:
    """
    One unit of difference between two snapshots.

    For ADDED only new_value is meaningful, for DELETED only old_value.
    ARRAY_CHANGED carries the path of the sequence itself plus the index and
    the element-level change (whose path is relative to the sequence).
    """
    kind: ChangeKind
    path: Path
    old_value: Any = None
    new_value: Any = None
    index: Optional[int] = None
    item: Optional["RawChange"] = None


def exclude_metadata(path: Path, key: str) -> bool:
    """Return True for metadata keys at the document root."""
    return len(path) == 0 and key in METADATA_KEYS


def json_default(value: Any) -> Any:
    """Serialize the non-JSON types a document model commonly holds."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def to_snapshot(obj: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Clone a document into an immutable-by-convention JSON snapshot.

    The round trip through JSON guarantees that later mutation of the source
    document cannot leak into a diff, and normalizes dates and UUIDs to the
    strings they are persisted as. None values stay as JSON null.

    Args:
        obj: Document mapping (None is treated as an empty document)

    Returns:
        A new plain dict containing only JSON types

    Raises:
        TypeError / ValueError: If the document is not JSON serializable
            (e.g. contains cycles). This is a caller error.
    """
    if obj is None:
        return {}
    return json.loads(json.dumps(obj, default=json_default))


def _json_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, list):
        return "array"
    return type(value).__name__


def _values_differ(a: Any, b: Any) -> bool:
    # 1 and 1.0 are the same JSON number, True and 1 are not
    if _json_type(a) != _json_type(b):
        return True
    return a != b


def _diff_array(
    before: List[Any],
    after: List[Any],
    path: Path,
    changes: List[RawChange]
) -> None:
    shared = min(len(before), len(after))

    for index in range(shared):
        if _values_differ(before[index], after[index]):
            changes.append(RawChange(
                kind=ChangeKind.ARRAY_CHANGED,
                path=path,
                index=index,
                item=RawChange(
                    kind=ChangeKind.EDITED,
                    path=(index,),
                    old_value=before[index],
                    new_value=after[index]
                )
            ))

    # Removed tail elements first, then appended ones
    for index in range(shared, len(before)):
        changes.append(RawChange(
            kind=ChangeKind.ARRAY_CHANGED,
            path=path,
            index=index,
            item=RawChange(kind=ChangeKind.DELETED, path=(index,), old_value=before[index])
        ))

    for index in range(shared, len(after)):
        changes.append(RawChange(
            kind=ChangeKind.ARRAY_CHANGED,
            path=path,
            index=index,
            item=RawChange(kind=ChangeKind.ADDED, path=(index,), new_value=after[index])
        ))


def _diff_value(
    before: Any,
    after: Any,
    path: Path,
    path_filter: Optional[PathFilter],
    changes: List[RawChange]
) -> None:
    if isinstance(before, dict) and isinstance(after, dict):
        for key, old_value in before.items():
            if path_filter and path_filter(path, key):
                continue
            if key not in after:
                changes.append(RawChange(
                    kind=ChangeKind.DELETED,
                    path=path + (key,),
                    old_value=old_value
                ))
            else:
                _diff_value(old_value, after[key], path + (key,), path_filter, changes)

        for key, new_value in after.items():
            if key in before:
                continue
            if path_filter and path_filter(path, key):
                continue
            changes.append(RawChange(
                kind=ChangeKind.ADDED,
                path=path + (key,),
                new_value=new_value
            ))
        return

    if isinstance(before, list) and isinstance(after, list):
        _diff_array(before, after, path, changes)
        return

    if _values_differ(before, after):
        changes.append(RawChange(
            kind=ChangeKind.EDITED,
            path=path,
            old_value=before,
            new_value=after
        ))


def diff_snapshots(
    before: Dict[str, Any],
    after: Dict[str, Any],
    path_filter: Optional[PathFilter] = exclude_metadata
) -> List[RawChange]:
    """
    Compare two snapshots and produce the list of raw changes.

    Both arguments should already be snapshots (see to_snapshot). The engine
    does not mutate them.

    Change ordering: keys of `before` in their order (deletions and recursive
    differences), then keys that only exist in `after`. Consumers should not
    rely on more than that.

    Args:
        before: Snapshot of the persisted state
        after: Snapshot of the state about to be written
        path_filter: Predicate (path, key) -> bool; True excludes the key.
            Defaults to excluding root-level metadata.

    Returns:
        List of RawChange (empty when the snapshots are equal)
    """
    changes: List[RawChange] = []
    _diff_value(before, after, (), path_filter, changes)
    return changes
