"""
Audited collection: orchestration of every mutation type.

AuditedCollection wraps one collection of a DocumentStore and routes each
mutation through the AuditLog interceptor before writing it:

    insert                -> not audited (nothing persisted yet)
    save                  -> audited against the stored document when it exists
    update / update_one / find_one_and_update / update_many
                          -> audited per matched document
    replace_one           -> audited against the first matched document
    delete / find_one_and_delete / find_one_and_remove / delete_many
                          -> audited as a Delete of every field

For each document the sequence is: read before-state, compute after-state,
audit, write. A failing audit (no acting user, storage error) stops the
operation before that document is written.

Bulk operations handle documents one at a time and stop at the first
failure. Documents processed before the failure stay audited and written.

Single-document semantics ("multi" off) only audit and write the FIRST
document the store yields for the query, in the store's natural order.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from .audit_log import USER_MARKER, AuditLog, AuditOptions
from .update_operators import MongoUpdateFlattener, UpdateFlattener

logger = logging.getLogger(__name__)


class AuditedCollection:
    """
    A collection whose mutations are audited.

    Args:
        name: Collection name, stored as itemName on audit records
        store: DocumentStore holding the documents
        audit_log: AuditLog interceptor
        flattener: Partial-update adapter (defaults to "$"-operators)
        timestamps: Maintain createdAt / updatedAt on documents
    """

    def __init__(
        self,
        name: str,
        store,
        audit_log: AuditLog,
        flattener: Optional[UpdateFlattener] = None,
        timestamps: bool = True
    ):
        self.name = name
        self.store = store
        self.audit_log = audit_log
        self.flattener = flattener or MongoUpdateFlattener()
        self.timestamps = timestamps

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, item_id: Any) -> Optional[Dict[str, Any]]:
        """Fetch one document by "_id" (None if not stored)."""
        return self.store.get(self.name, item_id)

    def find(self, query: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]:
        """Iterate documents matching query, in insertion order."""
        return self.store.find(self.name, query or {})

    def _matches(self, query: Dict[str, Any], multi: bool) -> List[Dict[str, Any]]:
        # Materialized up front so writes cannot disturb the cursor
        cursor = self.store.find(self.name, query or {})
        if multi:
            return list(cursor)

        first = next(cursor, None)
        return [first] if first is not None else []

    # =========================================================================
    # WRITES
    # =========================================================================

    def _stamp(self, document: Dict[str, Any], prior: Optional[Dict[str, Any]] = None) -> None:
        if not self.timestamps:
            return
        now = datetime.now(timezone.utc)
        created_at = (prior or {}).get("createdAt") or document.get("createdAt") or now
        document["createdAt"] = created_at
        document["updatedAt"] = now

    def insert(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert a new document. New documents are not audited.

        Assigns "_id" when missing and strips the acting-user marker.
        """
        document.pop(USER_MARKER, None)
        if document.get("_id") is None:
            document["_id"] = str(uuid4())

        self._stamp(document)
        self.store.insert(self.name, document)
        return document

    def save(self, document: Dict[str, Any], user: Any = None) -> Dict[str, Any]:
        """
        Save a document, auditing it against its stored version.

        A document without "_id", or whose "_id" is not stored yet, is
        inserted without an audit record.
        """
        item_id = document.get("_id")
        prior = self.store.get(self.name, item_id) if item_id is not None else None

        if prior is None:
            return self.insert(document)

        self.audit_log.record_change(self.name, prior, document, AuditOptions(user=user))
        self._stamp(document, prior)
        self.store.replace(self.name, item_id, document)
        return document

    def _write_update(
        self,
        prior: Dict[str, Any],
        pending: Dict[str, Any],
        options: AuditOptions
    ) -> Dict[str, Any]:
        item_id = prior["_id"]
        pending["_id"] = item_id

        self.audit_log.record_change(self.name, prior, pending, options)
        self._stamp(pending, prior)
        self.store.replace(self.name, item_id, pending)
        return pending

    def _run_each(self, operation: str, documents: List[Dict[str, Any]], step) -> List[Dict[str, Any]]:
        results = []
        for index, document in enumerate(documents):
            try:
                results.append(step(document))
            except Exception as e:
                logger.error(
                    f"{operation} on '{self.name}' aborted at document {document.get('_id')} "
                    f"({index} of {len(documents)} already processed): {e}",
                    exc_info=True
                )
                raise
        return results

    def update(
        self,
        query: Dict[str, Any],
        update: Dict[str, Any],
        user: Any = None,
        multi: bool = False
    ) -> int:
        """
        Apply a partial update to the documents matching query.

        With multi=False only the first matched document is audited and
        updated.

        Returns:
            Number of documents updated
        """
        options = AuditOptions(user=user, multi=multi)
        matches = self._matches(query, multi)

        updated = self._run_each(
            "update",
            matches,
            lambda prior: self._write_update(prior, self.flattener.apply(prior, update), options)
        )
        return len(updated)

    def update_one(self, query: Dict[str, Any], update: Dict[str, Any], user: Any = None) -> int:
        return self.update(query, update, user=user, multi=False)

    def update_many(self, query: Dict[str, Any], update: Dict[str, Any], user: Any = None) -> int:
        """Update every matched document; a caller's multi flag does not apply."""
        return self.update(query, update, user=user, multi=True)

    def find_one_and_update(
        self,
        query: Dict[str, Any],
        update: Dict[str, Any],
        user: Any = None
    ) -> Optional[Dict[str, Any]]:
        """Update the first matched document and return it as written."""
        matches = self._matches(query, multi=False)
        if not matches:
            return None

        prior = matches[0]
        return self._write_update(prior, self.flattener.apply(prior, update), AuditOptions(user=user))

    def replace_one(
        self,
        query: Dict[str, Any],
        replacement: Dict[str, Any],
        user: Any = None
    ) -> int:
        """
        Replace the first matched document.

        The replacement keeps the stored "_id". Fields it does not carry are
        removed and audited as deletes.
        """
        options = AuditOptions(user=user)
        replaced = self._run_each(
            "replace_one",
            self._matches(query, multi=False),
            lambda prior: self._write_update(prior, dict(replacement), options)
        )
        return len(replaced)

    def delete(self, document: Dict[str, Any], user: Any = None) -> None:
        """Delete a document, auditing every field it held."""
        self.audit_log.record_delete(self.name, document, AuditOptions(user=user))
        self.store.delete(self.name, document["_id"])

    def _delete_matches(self, operation: str, query: Dict[str, Any], user: Any, multi: bool) -> List[Dict[str, Any]]:
        def step(document):
            self.delete(document, user=user)
            return document

        return self._run_each(operation, self._matches(query, multi), step)

    def find_one_and_delete(self, query: Dict[str, Any], user: Any = None) -> Optional[Dict[str, Any]]:
        """Delete the first matched document and return it."""
        deleted = self._delete_matches("find_one_and_delete", query, user, multi=False)
        return deleted[0] if deleted else None

    find_one_and_remove = find_one_and_delete

    def delete_many(self, query: Dict[str, Any], user: Any = None) -> int:
        """Delete every matched document, one audit record each."""
        return len(self._delete_matches("delete_many", query, user, multi=True))
