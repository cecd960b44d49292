"""
Partial-update adapters.

Update operations do not carry the full "after" state; they carry a partial
update in the store's own dialect. An UpdateFlattener turns that payload into
the document that will be written, so the audit layer can diff it against
the persisted state and the collection can store exactly what was audited.

MongoUpdateFlattener evaluates the common "$"-operator subset:

    $set, $unset, $inc, $push, $addToSet, $pull

Dotted keys address nested fields; numeric segments index into arrays
("tags.0"). Any other operator raises ValueError, so a document is never
written from an update that was not understood.
"""

import copy
from typing import Any, Dict, List


class UpdateFlattener:
    """Interface for turning a partial update into a complete document."""

    def flatten(self, update: Dict[str, Any]) -> Dict[str, Any]:
        """Reduce an update payload to plain field assignments."""
        raise NotImplementedError

    def apply(self, document: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Return a new document with the update applied (input untouched)."""
        raise NotImplementedError


# Marks a path that does not resolve to a value
_ABSENT = object()


def _array_index(segment: str, dotted_key: str) -> int:
    if not segment.isdigit():
        raise ValueError(f"Cannot use field '{segment}' to index an array in '{dotted_key}'")
    return int(segment)


def _parent(document: Dict[str, Any], dotted_key: str, create: bool) -> Any:
    """
    Walk to the container holding the last segment of dotted_key.

    With create=True, missing intermediate fields become empty objects and
    arrays are padded with None up to the index. Returns None when the path
    does not exist and create is False.
    """
    segments = dotted_key.split(".")
    current: Any = document

    for segment in segments[:-1]:
        if isinstance(current, list):
            index = _array_index(segment, dotted_key)
            if index >= len(current):
                if not create:
                    return None
                current.extend([None] * (index + 1 - len(current)))
            child = current[index]
            if child is None and create:
                child = {}
                current[index] = child
        else:
            child = current.get(segment)
            if child is None and create:
                child = {}
                current[segment] = child

        if child is None:
            return None
        if not isinstance(child, (dict, list)):
            if create:
                raise ValueError(f"Cannot create field in non-container value at '{dotted_key}'")
            return None
        current = child

    return current


def _get_path(document: Dict[str, Any], dotted_key: str) -> Any:
    parent = _parent(document, dotted_key, create=False)
    last = dotted_key.split(".")[-1]

    if isinstance(parent, list):
        index = _array_index(last, dotted_key)
        return parent[index] if index < len(parent) else _ABSENT
    if isinstance(parent, dict):
        return parent.get(last, _ABSENT)
    return _ABSENT


def _set_path(document: Dict[str, Any], dotted_key: str, value: Any) -> None:
    parent = _parent(document, dotted_key, create=True)
    last = dotted_key.split(".")[-1]

    if isinstance(parent, list):
        index = _array_index(last, dotted_key)
        if index >= len(parent):
            parent.extend([None] * (index + 1 - len(parent)))
        parent[index] = value
    else:
        parent[last] = value


def _unset_path(document: Dict[str, Any], dotted_key: str) -> None:
    parent = _parent(document, dotted_key, create=False)
    last = dotted_key.split(".")[-1]

    if isinstance(parent, list):
        # Array elements are nulled, not removed, so later indexes keep their place
        index = _array_index(last, dotted_key)
        if index < len(parent):
            parent[index] = None
    elif isinstance(parent, dict):
        parent.pop(last, None)


def _each(value: Any) -> List[Any]:
    if isinstance(value, dict) and "$each" in value:
        return list(value["$each"])
    return [value]


def _array_at(document: Dict[str, Any], dotted_key: str, operator: str) -> List[Any]:
    current = _get_path(document, dotted_key)
    if current is _ABSENT or current is None:
        return []
    if not isinstance(current, list):
        raise ValueError(f"Cannot apply {operator} to non-array field '{dotted_key}'")
    return current


class MongoUpdateFlattener(UpdateFlattener):
    """
    Evaluator for "$"-prefixed update operators.

        {"$set": {"number": 5}, "name": "x"}  ->  number = 5, name = "x"
        {"$inc": {"n": 1}}                    ->  n = n + 1
        {"$push": {"tags": "b"}}              ->  tags = tags + ["b"]

    Keys without a "$" prefix are plain assignments. "$push" and
    "$addToSet" accept {"$each": [...]}. "$pull" removes elements equal to
    the given value.
    """

    SET_OPERATOR = "$set"
    UNSET_OPERATOR = "$unset"

    def __init__(self):
        self.operators = {
            self.SET_OPERATOR: self._set,
            self.UNSET_OPERATOR: self._unset,
            "$inc": self._inc,
            "$push": self._push,
            "$addToSet": self._add_to_set,
            "$pull": self._pull,
        }

    def _check_operators(self, update: Dict[str, Any]) -> None:
        for key in update:
            if key.startswith("$") and key not in self.operators:
                raise ValueError(f"Unsupported update operator: {key}")

    def flatten(self, update: Dict[str, Any]) -> Dict[str, Any]:
        """Plain keys and "$set" bodies; other operators are not assignments."""
        self._check_operators(update)

        flat: Dict[str, Any] = {}
        for key, value in update.items():
            if key == self.SET_OPERATOR:
                flat.update(value)
            elif not key.startswith("$"):
                flat[key] = value
        return flat

    def apply(self, document: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        self._check_operators(update)
        result = copy.deepcopy(document)

        for key, value in update.items():
            if key.startswith("$"):
                for path, argument in (value or {}).items():
                    self.operators[key](result, path, copy.deepcopy(argument))
            else:
                self._set(result, key, copy.deepcopy(value))

        return result

    # =========================================================================
    # OPERATORS
    # =========================================================================

    def _set(self, document, path, value):
        _set_path(document, path, value)

    def _unset(self, document, path, value):
        _unset_path(document, path)

    def _inc(self, document, path, amount):
        if isinstance(amount, bool) or not isinstance(amount, (int, float)):
            raise ValueError(f"$inc amount for '{path}' must be a number")

        current = _get_path(document, path)
        if current is _ABSENT:
            current = 0
        elif isinstance(current, bool) or not isinstance(current, (int, float)):
            raise ValueError(f"Cannot apply $inc to non-numeric field '{path}'")

        _set_path(document, path, current + amount)

    def _push(self, document, path, value):
        items = list(_array_at(document, path, "$push"))
        items.extend(_each(value))
        _set_path(document, path, items)

    def _add_to_set(self, document, path, value):
        items = list(_array_at(document, path, "$addToSet"))
        for item in _each(value):
            if item not in items:
                items.append(item)
        _set_path(document, path, items)

    def _pull(self, document, path, value):
        if _get_path(document, path) in (_ABSENT, None):
            return
        items = _array_at(document, path, "$pull")
        _set_path(document, path, [item for item in items if item != value])
