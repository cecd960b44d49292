"""
Document storage interface used by the audit layer.

The audit layer needs very little from a store:
- Read a document by identity (the "before" state)
- Iterate the documents matching a query, one at a time
- Write documents (insert / replace / delete)
- Append audit records and read them back

Implement DocumentStore for your database. InMemoryDocumentStore is a complete
implementation for tests and for embedding in processes without a database.
"""

import copy
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from ..audit_log import AuditRecord


class DocumentStore:
    """
    Abstract document store interface.

    Documents are plain dicts identified by their "_id" field. Queries are
    equality matches on (dotted) field paths; an empty query matches every
    document of the collection.
    """

    def get(
        self,
        collection: str,
        item_id: Any
    ) -> Optional[Dict[str, Any]]:
        """
        Fetch a document by identity.

        Returns:
            The stored document, or None if it does not exist
        """
        raise NotImplementedError

    def find(
        self,
        collection: str,
        query: Dict[str, Any]
    ) -> Iterator[Dict[str, Any]]:
        """
        Iterate the documents matching a query.

        The iterator is lazy and cannot be restarted. Order is the store's
        natural order.
        """
        raise NotImplementedError

    def insert(
        self,
        collection: str,
        document: Dict[str, Any]
    ) -> None:
        """Insert a new document (must carry an "_id")."""
        raise NotImplementedError

    def replace(
        self,
        collection: str,
        item_id: Any,
        document: Dict[str, Any]
    ) -> None:
        """Replace the stored document with the given identity."""
        raise NotImplementedError

    def delete(
        self,
        collection: str,
        item_id: Any
    ) -> None:
        """Delete the document with the given identity (no-op if missing)."""
        raise NotImplementedError

    def insert_audit(
        self,
        record: AuditRecord
    ) -> AuditRecord:
        """
        Persist a new audit record.

        The store assigns the record id and the created/updated timestamps.

        Returns:
            The persisted record
        """
        raise NotImplementedError

    def find_audits(
        self,
        item_id: Optional[Any] = None,
        item_name: Optional[str] = None
    ) -> List[AuditRecord]:
        """
        Read audit records, oldest first.

        Args:
            item_id: Only records of this document
            item_name: Only records of this collection / model
        """
        raise NotImplementedError


def _field_value(document: Dict[str, Any], dotted_key: str) -> Any:
    current: Any = document
    for segment in dotted_key.split("."):
        if not isinstance(current, dict) or segment not in current:
            return None
        current = current[segment]
    return current


def matches_query(document: Dict[str, Any], query: Dict[str, Any]) -> bool:
    """Equality match of every query field against the document."""
    return all(
        _field_value(document, key) == expected
        for key, expected in query.items()
    )


class InMemoryDocumentStore(DocumentStore):
    """
    Dict-backed document store.

    Documents are kept per collection in insertion order and copied on the
    way in and out, so callers never share state with the store.
    """

    def __init__(self):
        self._collections: Dict[str, Dict[Any, Dict[str, Any]]] = {}
        self._audits: List[AuditRecord] = []

    def _collection(self, collection: str) -> Dict[Any, Dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    def get(self, collection: str, item_id: Any) -> Optional[Dict[str, Any]]:
        document = self._collection(collection).get(item_id)
        return copy.deepcopy(document) if document is not None else None

    def find(self, collection: str, query: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        for document in list(self._collection(collection).values()):
            if matches_query(document, query or {}):
                yield copy.deepcopy(document)

    def insert(self, collection: str, document: Dict[str, Any]) -> None:
        item_id = document.get("_id")
        if item_id is None:
            raise ValueError("Cannot insert a document without an '_id'")

        documents = self._collection(collection)
        if item_id in documents:
            raise ValueError(f"Document {item_id} already exists in '{collection}'")

        documents[item_id] = copy.deepcopy(document)

    def replace(self, collection: str, item_id: Any, document: Dict[str, Any]) -> None:
        documents = self._collection(collection)
        if item_id not in documents:
            raise ValueError(f"Document {item_id} not found in '{collection}'")

        documents[item_id] = copy.deepcopy(document)

    def delete(self, collection: str, item_id: Any) -> None:
        self._collection(collection).pop(item_id, None)

    def insert_audit(self, record: AuditRecord) -> AuditRecord:
        now = datetime.now(timezone.utc)
        stored = copy.deepcopy(record)
        stored.id = str(uuid4())
        stored.created_at = now
        stored.updated_at = now

        self._audits.append(stored)
        return copy.deepcopy(stored)

    def find_audits(
        self,
        item_id: Optional[Any] = None,
        item_name: Optional[str] = None
    ) -> List[AuditRecord]:
        return [
            copy.deepcopy(record)
            for record in self._audits
            if (item_id is None or record.item_id == item_id)
            and (item_name is None or record.item_name == item_name)
        ]
