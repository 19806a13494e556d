"""
Shared fixtures for the library conversion tests.

The Mongo doubles follow the async collection/cursor mocks used by the
migration tests, extended with the parts of the motor API the conversion
store relies on: $in/$nin filters, projections, unique indexes and deletes.
"""
import itertools

import pytest
from pymongo.errors import BulkWriteError

from services.library_conversion.models import PermissionMapping
from services.library_conversion.store import ConversionStore

_object_ids = itertools.count(1)


def _matches(doc, query):
    for key, expected in query.items():
        value = doc.get(key)
        if isinstance(expected, dict) and "$in" in expected:
            if value not in expected["$in"]:
                return False
        elif isinstance(expected, dict) and "$nin" in expected:
            if value in expected["$nin"]:
                return False
        elif value != expected:
            return False
    return True


def _project(doc, projection):
    result = dict(doc)
    if not projection:
        return result
    included = [key for key, flag in projection.items() if flag and key != "_id"]
    if included:
        result = {key: doc[key] for key in ["_id"] + included if key in doc}
    if projection.get("_id") == 0:
        result.pop("_id", None)
    return result


class MockInsertResult:
    """Mock insert result."""
    def __init__(self, ids):
        self.inserted_ids = ids


class MockDeleteResult:
    def __init__(self, count):
        self.deleted_count = count


class MockAsyncCursor:
    """Mock async cursor for find()."""

    def __init__(self, docs):
        self._docs = docs
        self._index = 0

    def limit(self, n):
        if n:
            self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        return list(self._docs if length is None else self._docs[:length])

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._index >= len(self._docs):
            raise StopAsyncIteration
        doc = self._docs[self._index]
        self._index += 1
        return doc


class MockAsyncCollection:
    """Mock MongoDB async collection for testing."""

    def __init__(self, name):
        self.name = name
        self.documents = []
        self.unique_keys = []
        self.insert_calls = []
        self.delete_calls = []
        self.fail_next_insert = None
        self.fail_find = None

    async def create_index(self, keys, unique=False, **kwargs):
        if isinstance(keys, str):
            fields = (keys,)
        else:
            fields = tuple(field for field, _ in keys)
        if unique and fields not in self.unique_keys:
            self.unique_keys.append(fields)
        return "_".join(fields)

    def find(self, query=None, projection=None):
        if self.fail_find is not None:
            raise self.fail_find
        query = query or {}
        return MockAsyncCursor([
            _project(doc, projection) for doc in self.documents if _matches(doc, query)
        ])

    def _violates_unique(self, doc, existing):
        for fields in self.unique_keys:
            key = tuple(doc.get(f) for f in fields)
            for other in existing:
                if tuple(other.get(f) for f in fields) == key:
                    return fields
        return None

    async def insert_many(self, docs, ordered=True, session=None):
        """Mock insert_many; ordered inserts stop at the first duplicate."""
        self.insert_calls.append({"count": len(docs), "session": session})

        if self.fail_next_insert is not None:
            error, self.fail_next_insert = self.fail_next_insert, None
            raise error

        inserted = []
        for index, doc in enumerate(docs):
            fields = self._violates_unique(doc, self.documents)
            if fields is not None:
                raise BulkWriteError({
                    "writeErrors": [{
                        "index": index,
                        "code": 11000,
                        "errmsg": f"E11000 duplicate key error collection: {self.name} index: {'_'.join(fields)}",
                    }],
                    "nInserted": index,
                })
            doc.setdefault("_id", next(_object_ids))
            self.documents.append(dict(doc))
            inserted.append(doc["_id"])
        return MockInsertResult(inserted)

    async def delete_many(self, query, session=None):
        self.delete_calls.append({"query": query, "session": session})
        before = len(self.documents)
        self.documents = [doc for doc in self.documents if not _matches(doc, query)]
        return MockDeleteResult(before - len(self.documents))

    async def count_documents(self, query):
        return sum(1 for doc in self.documents if _matches(doc, query))

    def seed(self, *docs):
        for doc in docs:
            self.documents.append(dict(doc))


class MockAsyncDatabase:
    """Mock motor database: collections are created on first access."""

    def __init__(self):
        self._collections = {}

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = MockAsyncCollection(name)
        return self._collections[name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]


@pytest.fixture
def mock_db():
    return MockAsyncDatabase()


@pytest.fixture
def store(mock_db):
    return ConversionStore(mock_db)


@pytest.fixture
def permissions():
    return PermissionMapping("P1", "P2")
