"""
Pytest configuration for auto-rollback tests.

Provides an in-memory stand-in for motor collections that understands the
small filter/update vocabulary the tests use, so undo logging and rollback
replay can be exercised end to end without a MongoDB server.
"""

import copy
import os
import sys
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import DeleteMany, DeleteOne, InsertOne, ReplaceOne, UpdateOne
from pymongo.errors import BulkWriteError, DuplicateKeyError
from pymongo.results import BulkWriteResult, DeleteResult, InsertManyResult, InsertOneResult, UpdateResult
import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from mongo_auto_rollback.auto_rollback import AutoRollbackConfig, MigrationSession  # noqa: E402

_MISSING = object()


def _compare(value: Any, condition: Any) -> bool:
    if isinstance(condition, dict) and condition and all(key.startswith("$") for key in condition):
        for operator, operand in condition.items():
            if operator == "$in" and value not in operand:
                return False
            if operator == "$nin" and value in operand:
                return False
            if operator == "$ne" and value == operand:
                return False
            if operator == "$exists" and (value is not _MISSING) != bool(operand):
                return False
            if operator in ("$gt", "$gte", "$lt", "$lte"):
                if value is _MISSING or value is None:
                    return False
                if operator == "$gt" and not value > operand:
                    return False
                if operator == "$gte" and not value >= operand:
                    return False
                if operator == "$lt" and not value < operand:
                    return False
                if operator == "$lte" and not value <= operand:
                    return False
        return True
    return value == condition


def matches(document: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    for key, condition in (filter or {}).items():
        if key == "$or":
            if not any(matches(document, branch) for branch in condition):
                return False
            continue
        if not _compare(document.get(key, _MISSING), condition):
            return False
    return True


def apply_update(document: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    updated = copy.deepcopy(document)
    for operator, fields in update.items():
        for field, value in fields.items():
            if operator == "$set":
                updated[field] = value
            elif operator == "$unset":
                updated.pop(field, None)
            elif operator == "$inc":
                updated[field] = updated.get(field, 0) + value
            else:
                raise NotImplementedError(operator)
    return updated


class FakeCursor:
    def __init__(self, documents: List[Dict[str, Any]]):
        self._documents = documents

    def sort(self, key_or_list, direction=None):
        keys = key_or_list if isinstance(key_or_list, list) else [(key_or_list, direction or 1)]
        for key, key_direction in reversed(keys):
            self._documents.sort(key=lambda d: d.get(key), reverse=key_direction < 0)
        return self

    async def to_list(self, length=None):
        return list(self._documents if length is None else self._documents[:length])


class FakeCollection:
    """Minimal async collection backed by a list of documents."""

    def __init__(self, name: str, database: "FakeDatabase"):
        self.name = name
        self.database = database
        self.documents: List[Dict[str, Any]] = []
        # Index of the bulk_write request that should fail, for failure injection
        self.fail_bulk_write_at: Optional[int] = None
        self.fail_insert_many_after: Optional[int] = None
        self.calls: List[str] = []

    def _matching(self, filter) -> List[Dict[str, Any]]:
        return [document for document in self.documents if matches(document, filter)]

    def _insert(self, document: Dict[str, Any]) -> Any:
        document.setdefault("_id", ObjectId())
        if any(existing["_id"] == document["_id"] for existing in self.documents):
            raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name}")
        self.documents.append(copy.deepcopy(document))
        return document["_id"]

    async def find_one(self, filter=None, *args, **kwargs):
        self.calls.append("find_one")
        found = self._matching(filter)
        return copy.deepcopy(found[0]) if found else None

    def find(self, filter=None, projection=None, **kwargs):
        self.calls.append("find")
        documents = copy.deepcopy(self._matching(filter))
        # Exclusion projections only
        excluded = [field for field, include in (projection or {}).items() if not include]
        for document in documents:
            for field in excluded:
                document.pop(field, None)
        return FakeCursor(documents)

    async def count_documents(self, filter, **kwargs):
        return len(self._matching(filter))

    async def distinct(self, key, filter=None, **kwargs):
        values = []
        for document in self._matching(filter):
            if key in document and document[key] not in values:
                values.append(document[key])
        return values

    async def insert_one(self, document, *args, **kwargs):
        self.calls.append("insert_one")
        return InsertOneResult(self._insert(document), True)

    async def insert_many(self, documents, ordered=True, **kwargs):
        self.calls.append("insert_many")
        inserted = []
        for index, document in enumerate(documents):
            if self.fail_insert_many_after is not None and index >= self.fail_insert_many_after:
                raise BulkWriteError({"writeErrors": [{"index": index, "errmsg": "injected"}], "nInserted": index})
            inserted.append(self._insert(document))
        return InsertManyResult(inserted, True)

    def _upsert(self, filter, document):
        seed = {key: value for key, value in (filter or {}).items() if not key.startswith("$")}
        seed = {key: value for key, value in seed.items() if not isinstance(value, dict)}
        seed.update(document)
        return self._insert(seed)

    async def _update(self, filter, update, many, upsert):
        found = self._matching(filter)
        if not many:
            found = found[:1]
        for document in found:
            self.documents[self.documents.index(document)] = apply_update(document, update)
        raw = {"n": len(found), "nModified": len(found)}
        if not found and upsert:
            raw["upserted"] = self._upsert(filter, apply_update({}, update))
            raw["n"] = 1
        return UpdateResult(raw, True)

    async def update_one(self, filter, update, upsert=False, **kwargs):
        self.calls.append("update_one")
        return await self._update(filter, update, False, upsert)

    async def update_many(self, filter, update, upsert=False, **kwargs):
        self.calls.append("update_many")
        return await self._update(filter, update, True, upsert)

    async def replace_one(self, filter, replacement, upsert=False, **kwargs):
        self.calls.append("replace_one")
        found = self._matching(filter)[:1]
        raw = {"n": len(found), "nModified": len(found)}
        if found:
            replaced = copy.deepcopy(replacement)
            replaced["_id"] = found[0]["_id"]
            self.documents[self.documents.index(found[0])] = replaced
        elif upsert:
            raw["upserted"] = self._upsert(filter, copy.deepcopy(replacement))
            raw["n"] = 1
        return UpdateResult(raw, True)

    async def delete_one(self, filter, **kwargs):
        self.calls.append("delete_one")
        found = self._matching(filter)[:1]
        for document in found:
            self.documents.remove(document)
        return DeleteResult({"n": len(found)}, True)

    async def delete_many(self, filter, **kwargs):
        self.calls.append("delete_many")
        found = self._matching(filter)
        for document in found:
            self.documents.remove(document)
        return DeleteResult({"n": len(found)}, True)

    async def _find_one_and(self, filter, write, return_document):
        found = self._matching(filter)[:1]
        before = copy.deepcopy(found[0]) if found else None
        result = await write()
        if not return_document:
            return before
        document_id = before["_id"] if before else getattr(result, "upserted_id", None)
        return await self.find_one({"_id": document_id}) if document_id is not None else None

    async def find_one_and_update(self, filter, update, upsert=False, return_document=False, **kwargs):
        self.calls.append("find_one_and_update")
        return await self._find_one_and(filter, lambda: self._update(filter, update, False, upsert), return_document)

    async def find_one_and_replace(self, filter, replacement, upsert=False, return_document=False, **kwargs):
        self.calls.append("find_one_and_replace")
        return await self._find_one_and(
            filter, lambda: self.replace_one(filter, replacement, upsert=upsert), return_document
        )

    async def find_one_and_delete(self, filter, **kwargs):
        self.calls.append("find_one_and_delete")
        return await self._find_one_and(filter, lambda: self.delete_one(filter), False)

    async def drop(self, **kwargs):
        self.calls.append("drop")
        self.documents.clear()

    async def bulk_write(self, requests, ordered=True, **kwargs):
        self.calls.append("bulk_write")
        counts = {"nInserted": 0, "nRemoved": 0, "nModified": 0, "nMatched": 0}
        for index, request in enumerate(requests):
            try:
                if self.fail_bulk_write_at is not None and index == self.fail_bulk_write_at:
                    raise DuplicateKeyError("injected failure")
                if isinstance(request, InsertOne):
                    self._insert(copy.deepcopy(request._doc))
                    counts["nInserted"] += 1
                elif isinstance(request, (DeleteMany, DeleteOne)):
                    result = await self.delete_many(request._filter)
                    counts["nRemoved"] += result.deleted_count
                elif isinstance(request, ReplaceOne):
                    result = await self.replace_one(request._filter, request._doc)
                    counts["nMatched"] += result.matched_count
                elif isinstance(request, UpdateOne):
                    result = await self.update_one(request._filter, request._doc)
                    counts["nModified"] += result.modified_count
                else:
                    raise NotImplementedError(type(request).__name__)
            except DuplicateKeyError as e:
                raise BulkWriteError(
                    {"writeErrors": [{"index": index, "code": 11000, "errmsg": str(e)}], **counts}
                ) from e
        return BulkWriteResult(counts, True)

    async def create_index(self, keys, **kwargs):
        return kwargs.get("name", "index")

    def contents(self) -> List[Dict[str, Any]]:
        return sorted(copy.deepcopy(self.documents), key=lambda d: str(d["_id"]))


class FakeDatabase:
    def __init__(self, name: str = "test_db"):
        self.name = name
        self.client = None
        self._collections: Dict[str, FakeCollection] = {}

    def get_collection(self, name: str) -> FakeCollection:
        if name not in self._collections:
            self._collections[name] = FakeCollection(name, self)
        return self._collections[name]

    def __getitem__(self, name: str) -> FakeCollection:
        return self.get_collection(name)


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def config():
    return AutoRollbackConfig(
        changelog_collection_name="changelog",
        lock_collection_name="changelog_lock",
        auto_rollback_collection_name="auto_rollback",
    )


@pytest.fixture
def session():
    return MigrationSession(migration_id="20240101-add-users.py", is_rollback=False, auto_rollback_enabled=True)


@pytest.fixture
def undo_collection(fake_db, config):
    return fake_db.get_collection(config.auto_rollback_collection_name)
