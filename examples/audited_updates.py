#!/usr/bin/env python3
"""Example: Audit a few edits to a collection and print the trail.

With AUDITKIT_DB_URL (or the AUDITKIT_DB_* variables) set, in the
environment or a .env file, documents and audit records go to Postgres.
Otherwise an in-memory store is used.
"""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

from auditkit import AuditLog, AuditedCollection, ContextUserProvider
from auditkit.store import InMemoryDocumentStore, PostgresDocumentStore


def open_store():
    """Postgres when configured, otherwise in memory."""
    if os.getenv("AUDITKIT_DB_URL") or os.getenv("AUDITKIT_DB_HOST"):
        store = PostgresDocumentStore()
        store.ensure_schema()
        return store
    return InMemoryDocumentStore()


def run_example():
    store = open_store()
    users = ContextUserProvider()
    audit_log = AuditLog(store, get_user=users)
    pets = AuditedCollection("pets", store, audit_log)

    pet = pets.insert({"name": "Lucky", "number": 7, "tags": ["dog"]})

    with users.acting_as("Jack"):
        pet["name"] = "Unlucky"
        pet["owner"] = {"name": "Jill", "city": "Bern"}
        pets.save(pet)

        pets.update_one({"_id": pet["_id"]}, {"$set": {"number": 13}, "$unset": {"owner.city": ""}})
        pets.update_one({"_id": pet["_id"]}, {"tags": ["dog", "rescue"]})

    pets.find_one_and_delete({"_id": pet["_id"]}, user="Jill")

    for record in audit_log.history(pet["_id"]):
        print(f"{record.created_at} by {record.user}:")
        for path, entry in record.changes.items():
            print(f"  {path}: {entry.to_dict()}")

    if isinstance(store, PostgresDocumentStore):
        store.close()


if __name__ == "__main__":
    env_path = Path(__file__).parent.parent / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    logging.basicConfig(level=logging.INFO)
    run_example()
