"""Document storage backends for audited collections."""

from .document_store import DocumentStore, InMemoryDocumentStore, matches_query
from .postgres_client import PostgresDocumentStore

__all__ = [
    "DocumentStore",
    "InMemoryDocumentStore",
    "PostgresDocumentStore",
    "matches_query",
]
