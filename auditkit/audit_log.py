"""
Audit log interceptor.

AuditLog is the single extension point the orchestration layer calls for
every mutation. Given the persisted state and the state about to be written
it:

1. Resolves the acting user (fails before anything else if there is none)
2. Strips bookkeeping markers from the pending state
3. Diffs and classifies the two states
4. Persists one AuditRecord, only when something worth auditing changed

Audit records are append-only. They are never updated after insert.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from .diff.change_classifier import ChangeMap, diff_and_classify
from .diff.snapshot_diff import PathFilter, exclude_metadata
from .users import UserProvider, no_user, resolve_user

logger = logging.getLogger(__name__)

# Key under which callers may attach the acting user to an in-memory document.
# It is removed before diffing and never stored.
USER_MARKER = "__user"


@dataclass
class AuditRecord:
    """
    Immutable historical record of one change set on one document.

    id, created_at and updated_at are assigned by the store on insert.
    """
    item_id: Any
    item_name: str
    changes: ChangeMap
    user: Any
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the persisted audit layout."""
        return {
            "id": self.id,
            "itemId": self.item_id,
            "itemName": self.item_name,
            "changes": {key: entry.to_dict() for key, entry in self.changes.items()},
            "user": self.user,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class AuditOptions:
    """Per-operation options passed along with a mutation."""
    user: Any = None
    multi: bool = False


class AuditLog:
    """
    Computes and persists audit records for document mutations.

    The user provider is injected here and can be swapped at runtime by
    assigning `get_user`; it is consulted once per audited document.
    """

    def __init__(
        self,
        store,
        get_user: UserProvider = no_user,
        path_filter: Optional[PathFilter] = exclude_metadata
    ):
        """
        Args:
            store: DocumentStore that receives the audit records
            get_user: Zero-argument callable returning the default acting user
            path_filter: Predicate (path, key) excluding fields from diffs
        """
        self.store = store
        self.get_user = get_user
        self.path_filter = path_filter

    def resolve_user(self, explicit: Any = None) -> Any:
        """Explicit user if given, else the provider's; raises UserMissingError."""
        return resolve_user(explicit, self.get_user)

    def record_change(
        self,
        item_name: str,
        prior_state: Optional[Dict[str, Any]],
        pending_state: Dict[str, Any],
        options: Optional[AuditOptions] = None
    ) -> Optional[AuditRecord]:
        """
        Audit the transition prior_state -> pending_state.

        The USER_MARKER key is removed from pending_state in place, so the
        caller writes the document without it.

        Args:
            item_name: Collection / model name stored on the record
            prior_state: Persisted document (None if nothing is persisted)
            pending_state: Document about to be written
            options: Per-operation options (explicit user)

        Returns:
            The persisted AuditRecord, or None if nothing changed

        Raises:
            UserMissingError: If no acting user can be resolved
        """
        options = options or AuditOptions()
        marker_user = pending_state.pop(USER_MARKER, None)
        user = self.resolve_user(options.user or marker_user)

        prior_state = dict(prior_state or {})
        prior_state.pop(USER_MARKER, None)

        changes = diff_and_classify(prior_state, pending_state, self.path_filter)
        item_id = pending_state.get("_id", prior_state.get("_id"))

        if not changes:
            logger.debug(f"No changes to audit for {item_name} {item_id}")
            return None

        record = self.store.insert_audit(AuditRecord(
            item_id=item_id,
            item_name=item_name,
            changes=changes,
            user=user
        ))

        logger.info(
            f"Audit record {record.id} written for {item_name} {item_id} "
            f"({len(changes)} changes by {user})"
        )

        return record

    def record_delete(
        self,
        item_name: str,
        document: Dict[str, Any],
        options: Optional[AuditOptions] = None
    ) -> Optional[AuditRecord]:
        """
        Audit the removal of a document.

        Every non-metadata field of the document is reported as a Delete
        with its last value.
        """
        options = options or AuditOptions()
        document = dict(document)
        marker_user = document.pop(USER_MARKER, None)
        user = self.resolve_user(options.user or marker_user)

        changes = diff_and_classify(document, {}, self.path_filter)
        item_id = document.get("_id")

        if not changes:
            logger.debug(f"No changes to audit for deleted {item_name} {item_id}")
            return None

        record = self.store.insert_audit(AuditRecord(
            item_id=item_id,
            item_name=item_name,
            changes=changes,
            user=user
        ))

        logger.info(f"Audit record {record.id} written for deleted {item_name} {item_id} (by {user})")

        return record

    def history(self, item_id: Any) -> List[AuditRecord]:
        """Audit records of one document, oldest first."""
        return self.store.find_audits(item_id=item_id)
