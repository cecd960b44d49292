"""
Integration tests for AuditedCollection over the in-memory store.

These tests run every mutation type end to end and check both the audit
records written and the documents left in the store.
"""

from datetime import datetime, timezone

import pytest

from auditkit.audit_log import USER_MARKER, AuditLog
from auditkit.collection import AuditedCollection
from auditkit.diff.change_classifier import ChangeType
from auditkit.store.document_store import InMemoryDocumentStore
from auditkit.users import StaticUserProvider, UserMissingError

AUDIT_USER = "Jack"
EXPECTED = 123


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def audit_log(store):
    return AuditLog(store)


@pytest.fixture
def collection(store, audit_log):
    return AuditedCollection("tests", store, audit_log)


@pytest.fixture
def test_doc(collection):
    return collection.insert({
        "name": "Lucky",
        "number": 7,
        "date": datetime(2020, 1, 1, tzinfo=timezone.utc),
    })


@pytest.fixture
def test_doc2(collection, test_doc):
    return collection.insert({"name": "Unlucky", "number": 13})


def audits(store):
    return store.find_audits()


# =============================================================================
# SAVE TESTS
# =============================================================================

class TestSave:
    """save(): create-with-existing-id."""

    def test_insert_is_not_audited(self, collection, store, test_doc):
        assert test_doc["_id"] is not None
        assert collection.get(test_doc["_id"])["name"] == "Lucky"
        assert audits(store) == []

    def test_save_new_document_is_not_audited(self, collection, store):
        document = collection.save({"name": "fresh", USER_MARKER: AUDIT_USER})

        assert USER_MARKER not in document
        assert collection.get(document["_id"])["name"] == "fresh"
        assert audits(store) == []

    def test_audit_trail_on_save(self, collection, store, test_doc):
        test_doc["name"] = "Unlucky"
        test_doc["number"] = 13
        test_doc[USER_MARKER] = AUDIT_USER

        collection.save(test_doc)

        records = audits(store)
        assert len(records) == 1
        entry = records[0]
        assert entry.item_id == test_doc["_id"]
        assert len(entry.changes) == 2
        assert entry.changes["name"].from_value == "Lucky"
        assert entry.changes["name"].to_value == "Unlucky"
        assert entry.changes["number"].from_value == 7
        assert entry.changes["number"].to_value == 13
        assert entry.user == AUDIT_USER
        assert entry.item_name == "tests"
        assert entry.created_at is not None

        stored = collection.get(test_doc["_id"])
        assert stored["name"] == "Unlucky"
        assert stored["number"] == 13
        assert USER_MARKER not in stored

    def test_no_audit_if_nothing_changed(self, collection, store, test_doc):
        collection.save(test_doc, user=AUDIT_USER)

        assert audits(store) == []

    def test_no_audit_if_only_updated_at_changed(self, collection, store, test_doc):
        test_doc["updatedAt"] = datetime(2030, 1, 1, tzinfo=timezone.utc)

        collection.save(test_doc, user=AUDIT_USER)

        assert audits(store) == []

    def test_sibling_fields_audited_separately(self, collection, store, test_doc):
        test_doc["child"] = {"name": "test", "number": EXPECTED}
        collection.save(test_doc, user=AUDIT_USER)

        entry = audits(store)[0]
        assert entry.changes["child.name"].to_value == "test"
        assert entry.changes["child.name"].type == ChangeType.ADD
        assert entry.changes["child.number"].to_value == EXPECTED
        assert entry.changes["child.number"].type == ChangeType.ADD

    def test_sibling_fields_removed(self, collection, store, test_doc):
        test_doc["child"] = {"name": "test", "number": EXPECTED}
        collection.save(test_doc, user=AUDIT_USER)
        del test_doc["child"]
        collection.save(test_doc, user=AUDIT_USER)

        records = audits(store)
        assert len(records) == 2
        entry = records[1]
        assert entry.changes["child.name"].from_value == "test"
        assert "to" not in entry.changes["child.name"].to_dict()
        assert entry.changes["child.name"].type == ChangeType.DELETE
        assert entry.changes["child.number"].type == ChangeType.DELETE

    def test_entity_removed_as_one_entry(self, collection, store, test_doc):
        test_doc["entity"] = {"_id": "123", "name": "test"}
        collection.save(test_doc, user=AUDIT_USER)
        del test_doc["entity"]
        collection.save(test_doc, user=AUDIT_USER)

        entry = audits(store)[1]
        assert entry.changes["entity"].from_value == {"_id": "123", "name": "test"}
        assert "to" not in entry.changes["entity"].to_dict()
        assert entry.changes["entity"].type == ChangeType.DELETE

    def test_array_values_added(self, collection, store, test_doc):
        test_doc["entity"] = {"array": ["1", "2", "X"]}
        collection.save(test_doc, user=AUDIT_USER)
        test_doc["entity"]["array"].append("Y")
        collection.save(test_doc, user=AUDIT_USER)

        entry = audits(store)[1]
        assert entry.changes["entity.array"].type == ChangeType.EDIT
        assert sorted(entry.changes["entity.array"].from_value) == ["1", "2", "X"]
        assert sorted(entry.changes["entity.array"].to_value) == ["1", "2", "X", "Y"]

    def test_save_uses_user_provider(self, collection, store, audit_log, test_doc):
        audit_log.get_user = StaticUserProvider("User from function")
        test_doc["name"] = "Unlucky"

        collection.save(test_doc)

        assert audits(store)[0].user == "User from function"

    def test_save_without_user_fails(self, collection, store, test_doc):
        test_doc["name"] = "Unlucky"

        with pytest.raises(UserMissingError, match="User missing in audit log!"):
            collection.save(test_doc)

        assert audits(store) == []
        assert collection.get(test_doc["_id"])["name"] == "Lucky"


# =============================================================================
# UPDATE TESTS
# =============================================================================

class TestUpdate:
    """update / update_one / update_many / find_one_and_update / replace_one."""

    def _assert_number_audit(self, entry, document):
        assert len(entry.changes) == 1
        assert entry.item_id == document["_id"]
        assert entry.changes["number"].from_value == document["number"]
        assert entry.changes["number"].to_value == EXPECTED
        assert entry.user == AUDIT_USER
        assert entry.item_name == "tests"

    def test_update_multi(self, collection, store, test_doc, test_doc2):
        count = collection.update({}, {"number": EXPECTED}, user=AUDIT_USER, multi=True)

        assert count == 2
        records = audits(store)
        assert len(records) == 2
        self._assert_number_audit(records[0], test_doc)
        self._assert_number_audit(records[1], test_doc2)
        assert [doc["number"] for doc in collection.find()] == [EXPECTED, EXPECTED]

    def test_update_only_first_if_not_multi(self, collection, store, test_doc, test_doc2):
        count = collection.update({}, {"number": EXPECTED}, user=AUDIT_USER)

        assert count == 1
        records = audits(store)
        assert len(records) == 1
        self._assert_number_audit(records[0], test_doc)
        assert [doc["number"] for doc in collection.find()] == [EXPECTED, 13]

    def test_update_many(self, collection, store, test_doc, test_doc2):
        collection.update_many({}, {"number": EXPECTED}, user=AUDIT_USER)

        records = audits(store)
        assert len(records) == 2
        self._assert_number_audit(records[0], test_doc)
        self._assert_number_audit(records[1], test_doc2)

    def test_update_with_set_operator(self, collection, store, test_doc, test_doc2):
        collection.update({}, {"$set": {"number": EXPECTED}}, user=AUDIT_USER)

        records = audits(store)
        assert len(records) == 1
        self._assert_number_audit(records[0], test_doc)
        assert [doc["number"] for doc in collection.find()] == [EXPECTED, 13]

    def test_update_with_set_operator_multi(self, collection, store, test_doc, test_doc2):
        collection.update({}, {"$set": {"number": EXPECTED}}, user=AUDIT_USER, multi=True)

        assert [record.item_id for record in audits(store)] == [test_doc["_id"], test_doc2["_id"]]

    def test_update_one(self, collection, store, test_doc, test_doc2):
        collection.update_one({"_id": test_doc["_id"]}, {"number": EXPECTED}, user=AUDIT_USER)

        records = audits(store)
        assert len(records) == 1
        self._assert_number_audit(records[0], test_doc)
        assert collection.get(test_doc2["_id"])["number"] == 13

    def test_update_one_second_document(self, collection, store, test_doc, test_doc2):
        collection.update_one({"name": "Unlucky"}, {"number": EXPECTED}, user=AUDIT_USER)

        self._assert_number_audit(audits(store)[0], test_doc2)

    def test_find_one_and_update(self, collection, store, test_doc, test_doc2):
        updated = collection.find_one_and_update({"_id": test_doc["_id"]}, {"number": EXPECTED}, user=AUDIT_USER)

        assert updated["number"] == EXPECTED
        assert updated["_id"] == test_doc["_id"]
        self._assert_number_audit(audits(store)[0], test_doc)

    def test_find_one_and_update_no_match(self, collection, store, test_doc):
        assert collection.find_one_and_update({"_id": "missing"}, {"number": 1}, user=AUDIT_USER) is None
        assert audits(store) == []

    def test_replace_one(self, collection, store, test_doc, test_doc2):
        replacement = collection.get(test_doc["_id"])
        replacement["number"] = EXPECTED
        replacement["__v"] = 1

        count = collection.replace_one({"_id": test_doc["_id"]}, replacement, user=AUDIT_USER)

        assert count == 1
        records = audits(store)
        assert len(records) == 1
        self._assert_number_audit(records[0], test_doc)
        stored = collection.get(test_doc["_id"])
        assert stored["number"] == EXPECTED
        assert stored["__v"] == 1
        assert collection.get(test_doc2["_id"])["number"] == 13

    def test_replace_one_removes_missing_fields(self, collection, store, test_doc):
        collection.replace_one({"_id": test_doc["_id"]}, {"name": "Lucky", "number": 7}, user=AUDIT_USER)

        entry = audits(store)[0]
        assert list(entry.changes) == ["date"]
        assert entry.changes["date"].type == ChangeType.DELETE
        stored = collection.get(test_doc["_id"])
        assert "date" not in stored
        assert stored["_id"] == test_doc["_id"]

    def test_update_without_user_fails_before_any_write(self, collection, store, test_doc, test_doc2):
        with pytest.raises(UserMissingError):
            collection.update_many({}, {"number": EXPECTED})

        assert audits(store) == []
        assert [doc["number"] for doc in collection.find()] == [7, 13]

    def test_bulk_update_is_fail_fast(self, collection, store, audit_log, test_doc, test_doc2):
        """The first failing document stops the batch; earlier work stays."""
        users = iter([AUDIT_USER, None])
        audit_log.get_user = lambda: next(users)

        with pytest.raises(UserMissingError):
            collection.update_many({}, {"number": EXPECTED})

        records = audits(store)
        assert len(records) == 1
        assert records[0].item_id == test_doc["_id"]
        assert collection.get(test_doc["_id"])["number"] == EXPECTED
        assert collection.get(test_doc2["_id"])["number"] == 13

    def test_bulk_update_reads_provider_per_document(self, collection, store, audit_log, test_doc, test_doc2):
        users = iter(["first", "second"])
        audit_log.get_user = lambda: next(users)

        collection.update_many({}, {"number": EXPECTED})

        assert [record.user for record in audits(store)] == ["first", "second"]


# =============================================================================
# DELETE TESTS
# =============================================================================

class TestDelete:
    """delete / find_one_and_delete / find_one_and_remove / delete_many."""

    def _assert_delete_values(self, entry, document):
        assert len(entry.changes) == 3
        assert entry.item_id == document["_id"]
        assert entry.changes["date"].type == ChangeType.DELETE
        assert entry.changes["name"].type == ChangeType.DELETE
        assert entry.changes["number"].type == ChangeType.DELETE
        assert entry.changes["date"].from_value == document["date"].isoformat()
        assert entry.changes["name"].from_value == document["name"]
        assert entry.changes["number"].from_value == document["number"]
        assert entry.user == AUDIT_USER
        assert entry.item_name == "tests"

    def test_delete(self, collection, store, test_doc):
        collection.delete(test_doc, user=AUDIT_USER)

        records = audits(store)
        assert len(records) == 1
        self._assert_delete_values(records[0], test_doc)
        assert list(collection.find()) == []

    def test_find_one_and_delete(self, collection, store, test_doc):
        deleted = collection.find_one_and_delete({"_id": test_doc["_id"]}, user=AUDIT_USER)

        assert deleted["_id"] == test_doc["_id"]
        records = audits(store)
        assert len(records) == 1
        self._assert_delete_values(records[0], test_doc)
        assert list(collection.find()) == []

    def test_find_one_and_delete_only_one_item(self, collection, store, test_doc, test_doc2):
        collection.find_one_and_delete({}, user=AUDIT_USER)

        records = audits(store)
        assert len(records) == 1
        self._assert_delete_values(records[0], test_doc)
        remaining = list(collection.find())
        assert [doc["_id"] for doc in remaining] == [test_doc2["_id"]]

    def test_find_one_and_remove(self, collection, store, test_doc, test_doc2):
        collection.find_one_and_remove({"_id": test_doc["_id"]}, user=AUDIT_USER)

        assert len(audits(store)) == 1
        assert [doc["_id"] for doc in collection.find()] == [test_doc2["_id"]]

    def test_find_one_and_delete_no_match(self, collection, store, test_doc):
        assert collection.find_one_and_delete({"_id": "missing"}, user=AUDIT_USER) is None
        assert audits(store) == []

    def test_delete_many(self, collection, store, test_doc, test_doc2):
        count = collection.delete_many({}, user=AUDIT_USER)

        assert count == 2
        assert [record.item_id for record in audits(store)] == [test_doc["_id"], test_doc2["_id"]]
        assert list(collection.find()) == []

    def test_delete_without_user_keeps_document(self, collection, store, test_doc):
        with pytest.raises(UserMissingError):
            collection.delete(test_doc)

        assert audits(store) == []
        assert collection.get(test_doc["_id"]) is not None


# =============================================================================
# UPDATE OPERATOR TESTS
# =============================================================================

class TestUpdateOperators:
    """The stored document and its audit both reflect the evaluated update."""

    @pytest.fixture
    def counter_doc(self, collection):
        return collection.insert({"n": 5, "tags": ["a", "b"]})

    def test_inc_and_push(self, collection, store, counter_doc):
        collection.update_one({"_id": counter_doc["_id"]}, {"$inc": {"n": 1}, "$push": {"tags": "c"}}, user=AUDIT_USER)

        stored = collection.get(counter_doc["_id"])
        assert stored["n"] == 6
        assert stored["tags"] == ["a", "b", "c"]

        entry = audits(store)[0]
        assert entry.changes["n"].to_dict() == {"from": 5, "to": 6, "type": "Edit"}
        assert entry.changes["tags"].to_value == ["a", "b", "c"]

    def test_set_array_element(self, collection, store, counter_doc):
        collection.update_one({"_id": counter_doc["_id"]}, {"$set": {"tags.0": "z"}}, user=AUDIT_USER)

        assert collection.get(counter_doc["_id"])["tags"] == ["z", "b"]
        entry = audits(store)[0]
        assert entry.changes["tags"].type == ChangeType.EDIT
        assert entry.changes["tags"].from_value == ["a", "b"]
        assert entry.changes["tags"].to_value == ["z", "b"]

    def test_unsupported_operator_writes_nothing(self, collection, store, counter_doc):
        with pytest.raises(ValueError, match=r"\$rename"):
            collection.update_one({"_id": counter_doc["_id"]}, {"$rename": {"n": "count"}}, user=AUDIT_USER)

        assert audits(store) == []
        assert collection.get(counter_doc["_id"])["n"] == 5

    def test_set_to_null_is_edit(self, collection, store, test_doc):
        collection.update_one({"_id": test_doc["_id"]}, {"$set": {"name": None}}, user=AUDIT_USER)

        assert collection.get(test_doc["_id"])["name"] is None
        entry = audits(store)[0]
        assert entry.changes["name"].to_dict() == {"from": "Lucky", "to": None, "type": "Edit"}
