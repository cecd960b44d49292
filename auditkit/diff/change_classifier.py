"""
Change classification for document audits (Layer 2)

This module reduces the raw structural diff produced by snapshot_diff.py into
the flat change map stored on an audit record:

    {"child.name": {"to": "x", "type": "Add"},
     "tags": {"from": ["a"], "to": ["a", "b"], "type": "Edit"}}

ARCHITECTURE:
- Layer 1 (snapshot_diff.py): Answers "What is different?"
- Layer 2 (this module): Answers "How do we show it in the audit trail?"

RULES:
1. Scalars keep their own path and get Add / Edit / Delete
2. A whole sub-object that appears or disappears is either
   - an entity (has an identity key): one entry holding the whole object
   - a plain group of sibling fields: one entry per non-empty member
3. Any difference inside an array yields a single entry for the array,
   holding the complete before and after sequences

Classification is deterministic and never touches the storage layer.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from .snapshot_diff import (
    ChangeKind,
    Path,
    PathFilter,
    RawChange,
    diff_snapshots,
    exclude_metadata,
    to_snapshot,
)


# Keys that mark a sub-object as an entity with its own identity
IDENTITY_KEYS = ("_id", "id")


class ChangeType(Enum):
    """User-facing change labels, stored verbatim on audit records."""
    ADD = "Add"
    EDIT = "Edit"
    DELETE = "Delete"


class _Absent(Enum):
    MISSING = "MISSING"


# Side of a ChangeEntry that has no value at all (as opposed to None / null)
MISSING = _Absent.MISSING


@dataclass
class ChangeEntry:
    """
    The normalized audit entry for one logical field.

    Add entries only have a to_value and Delete entries only a from_value;
    the other side is MISSING. Array summaries carry both sequences
    regardless of type. None is a real value (JSON null).
    """
    type: ChangeType
    from_value: Any = MISSING
    to_value: Any = MISSING

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the persisted {from?, to?, type} layout."""
        data: Dict[str, Any] = {}
        if self.from_value is not MISSING:
            data["from"] = self.from_value
        if self.to_value is not MISSING:
            data["to"] = self.to_value
        data["type"] = self.type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeEntry":
        return cls(
            type=ChangeType(data["type"]),
            from_value=data.get("from", MISSING),
            to_value=data.get("to", MISSING)
        )


ChangeMap = Dict[str, ChangeEntry]


# =============================================================================
# PREDICATES
# =============================================================================

def path_key(path: Path) -> str:
    """Join path segments into the dotted key used on audit records."""
    return ".".join(str(segment) for segment in path)


def is_entity(value: Dict[str, Any]) -> bool:
    """
    Decide whether a sub-object is an entity or a group of sibling fields.

    This is a deliberate simplification, not a general identity rule: a
    mapping is an entity when it carries an "_id" or "id" key at its own
    level. Nested mappings are not inspected.
    """
    return any(key in value for key in IDENTITY_KEYS)


def is_empty_value(value: Any) -> bool:
    """Members that are None, {} or blank strings are not worth an entry."""
    if value is None:
        return True
    if isinstance(value, dict) and not value:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def value_at(snapshot: Any, path: Path) -> Any:
    """Follow a path into a snapshot; None when any segment is missing."""
    current = snapshot
    for segment in path:
        if isinstance(current, dict):
            if segment not in current:
                return None
            current = current[segment]
        elif isinstance(current, list) and isinstance(segment, int):
            if segment >= len(current):
                return None
            current = current[segment]
        else:
            return None
    return current


# =============================================================================
# CLASSIFICATION RULES
# =============================================================================

def _presence_entry(change_type: ChangeType, value: Any) -> ChangeEntry:
    if change_type is ChangeType.DELETE:
        return ChangeEntry(type=change_type, from_value=value)
    return ChangeEntry(type=change_type, to_value=value)


def _classify_presence(change: RawChange, change_map: ChangeMap) -> None:
    """Rules 1-3: a field (or sub-object) appeared or disappeared."""
    if change.kind is ChangeKind.DELETED:
        change_type, value = ChangeType.DELETE, change.old_value
    else:
        change_type, value = ChangeType.ADD, change.new_value

    key = path_key(change.path)

    if isinstance(value, dict) and not is_entity(value):
        # Sibling fields are audited one by one
        for member, member_value in value.items():
            if is_empty_value(member_value):
                continue
            change_map[f"{key}.{member}" if key else str(member)] = _presence_entry(
                change_type, member_value
            )
        return

    change_map[key] = _presence_entry(change_type, value)


def _classify_edit(change: RawChange, change_map: ChangeMap) -> None:
    """Rule 4: same field, different value."""
    change_map[path_key(change.path)] = ChangeEntry(
        type=ChangeType.EDIT,
        from_value=change.old_value,
        to_value=change.new_value
    )


def _as_sequence(value: Any) -> List[Any]:
    if isinstance(value, list):
        return value
    return []


def summarize_array(
    path: Path,
    before: Dict[str, Any],
    after: Dict[str, Any]
) -> ChangeEntry:
    """
    Rule 5: summarize an array field from the full snapshots.

    The element-level diff is not used; both complete sequences are read back
    from the snapshots so the entry shows the array as it was and as it is.
    """
    from_items = _as_sequence(value_at(before, path))
    to_items = _as_sequence(value_at(after, path))

    if from_items and not to_items:
        change_type = ChangeType.DELETE
    elif to_items and not from_items:
        change_type = ChangeType.ADD
    else:
        change_type = ChangeType.EDIT

    return ChangeEntry(type=change_type, from_value=from_items, to_value=to_items)


# =============================================================================
# MAIN CLASSIFICATION FUNCTION
# =============================================================================

def classify_changes(
    changes: List[RawChange],
    before: Dict[str, Any],
    after: Dict[str, Any]
) -> ChangeMap:
    """
    Reduce a raw change list into the flat change map.

    Entries are keyed by dotted path. When several changes land on the same
    key the last one applied wins; arrays are summarized once, at the first
    change seen for their path.

    Args:
        changes: Output of diff_snapshots(before, after)
        before: The "before" snapshot the changes were computed from
        after: The "after" snapshot the changes were computed from

    Returns:
        ChangeMap (empty when nothing worth auditing changed)

    Example:
        >>> before = to_snapshot({"tags": ["a"]})
        >>> after = to_snapshot({"tags": ["a", "b"]})
        >>> classify_changes(diff_snapshots(before, after), before, after)
        {'tags': ChangeEntry(type=<ChangeType.EDIT: 'Edit'>, from_value=['a'], to_value=['a', 'b'])}
    """
    change_map: ChangeMap = {}
    summarized_arrays = set()

    for change in changes:
        if change.kind is ChangeKind.ARRAY_CHANGED:
            key = path_key(change.path)
            if key in summarized_arrays:
                continue
            summarized_arrays.add(key)
            change_map[key] = summarize_array(change.path, before, after)

        elif change.kind is ChangeKind.EDITED:
            _classify_edit(change, change_map)

        else:
            _classify_presence(change, change_map)

    return change_map


def diff_and_classify(
    before: Optional[Dict[str, Any]],
    after: Optional[Dict[str, Any]],
    path_filter: Optional[PathFilter] = exclude_metadata
) -> ChangeMap:
    """Snapshot both states, diff them and classify the result."""
    before_snapshot = to_snapshot(before)
    after_snapshot = to_snapshot(after)
    changes = diff_snapshots(before_snapshot, after_snapshot, path_filter)
    return classify_changes(changes, before_snapshot, after_snapshot)
