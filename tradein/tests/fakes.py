"""
In-memory stand-ins for the Motor collection API.

Implements the subset of query operators, projections and update operators
the backup engine uses, with MongoDB's comparison rules for mixed types
(a string never compares against a date).
"""

import asyncio
import copy
import operator
from datetime import datetime
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError


def _resolve(value: Any, parts: List[str]) -> List[Any]:
    """All values reachable through a dotted path, descending into arrays."""
    if not parts:
        return [value]
    if isinstance(value, list):
        found = []
        for item in value:
            found.extend(_resolve(item, parts))
        return found
    if isinstance(value, dict) and parts[0] in value:
        return _resolve(value[parts[0]], parts[1:])
    return []


def _candidates(doc: Dict[str, Any], path: str) -> List[Any]:
    values = _resolve(doc, path.split("."))
    expanded = list(values)
    for value in values:
        if isinstance(value, list):
            expanded.extend(value)
    return expanded


def _type_bracket(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, datetime):
        return "date"
    if isinstance(value, ObjectId):
        return "objectid"
    return None


def _comparable(a: Any, b: Any) -> bool:
    bracket = _type_bracket(a)
    return bracket is not None and bracket == _type_bracket(b)


_COMPARISONS = {
    "$gt": operator.gt,
    "$gte": operator.ge,
    "$lt": operator.lt,
    "$lte": operator.le,
}


def _is_operator_dict(value: Any) -> bool:
    return isinstance(value, dict) and bool(value) and all(k.startswith("$") for k in value)


def _match_condition(candidates: List[Any], condition: Any) -> bool:
    if not _is_operator_dict(condition):
        return any(c == condition for c in candidates)

    for op, expected in condition.items():
        if op == "$exists":
            if bool(candidates) != bool(expected):
                return False
        elif op == "$ne":
            if any(c == expected for c in candidates):
                return False
        elif op == "$in":
            if not any(c == e for c in candidates for e in expected):
                return False
        elif op in _COMPARISONS:
            compare = _COMPARISONS[op]
            if not any(_comparable(c, expected) and compare(c, expected) for c in candidates):
                return False
        else:
            raise NotImplementedError(f"Operator {op} not supported by the fake")
    return True


def matches(doc: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, clause) for clause in condition):
                return False
        elif key == "$and":
            if not all(matches(doc, clause) for clause in condition):
                return False
        elif not _match_condition(_candidates(doc, key), condition):
            return False
    return True


def _remove_path(value: Any, parts: List[str]) -> None:
    if isinstance(value, list):
        for item in value:
            _remove_path(item, parts)
    elif isinstance(value, dict):
        if len(parts) == 1:
            value.pop(parts[0], None)
        elif parts[0] in value:
            _remove_path(value[parts[0]], parts[1:])


def project(doc: Dict[str, Any], projection: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    doc = copy.deepcopy(doc)
    if not projection:
        return doc

    fields = {k: v for k, v in projection.items() if k != "_id"}
    if fields and all(fields.values()):
        result = {}
        if projection.get("_id", 1):
            result["_id"] = doc.get("_id")
        for key in fields:
            if key in doc:
                result[key] = doc[key]
        return result

    for key, include in projection.items():
        if not include:
            _remove_path(doc, key.split("."))
    return doc


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = copy.deepcopy(value)


def _sort_key(field: str):
    def key(doc):
        values = _resolve(doc, field.split("."))
        value = values[0] if values else None
        return (value is not None, value)
    return key


class FakeCursor:
    """Lazy cursor supporting sort/skip/limit, to_list and async iteration."""

    def __init__(self, docs: List[Dict[str, Any]], projection=None):
        self._docs = docs
        self._projection = projection
        self._sort: List[tuple] = []
        self._skip = 0
        self._limit = 0
        self._iter = None

    def sort(self, key_or_list, direction: int = 1):
        if isinstance(key_or_list, list):
            self._sort = list(key_or_list)
        else:
            self._sort = [(key_or_list, direction)]
        return self

    def skip(self, count: int):
        self._skip = count
        return self

    def limit(self, count: int):
        self._limit = count
        return self

    def _materialize(self) -> List[Dict[str, Any]]:
        docs = list(self._docs)
        for field, direction in reversed(self._sort):
            docs.sort(key=_sort_key(field), reverse=direction < 0)
        docs = docs[self._skip:]
        if self._limit:
            docs = docs[:self._limit]
        return [project(doc, self._projection) for doc in docs]

    async def to_list(self, length: Optional[int] = None):
        await asyncio.sleep(0)
        docs = self._materialize()
        return docs if length is None else docs[:length]

    def __aiter__(self):
        self._iter = iter(self._materialize())
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    """A single collection held in memory."""

    def __init__(self, name: str):
        self.name = name
        self.docs: List[Dict[str, Any]] = []
        # operation name -> exception raised on the next calls
        self.failures: Dict[str, Exception] = {}

    async def _enter(self, op: str) -> None:
        await asyncio.sleep(0)
        error = self.failures.get(op) or self.failures.get("*")
        if error is not None:
            raise error

    def _matching(self, query) -> List[Dict[str, Any]]:
        return [doc for doc in self.docs if matches(doc, query)]

    def _insert(self, doc: Dict[str, Any]) -> Any:
        if "_id" not in doc:
            doc["_id"] = ObjectId()
        if any(existing["_id"] == doc["_id"] for existing in self.docs):
            raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} _id: {doc['_id']!r}")
        self.docs.append(copy.deepcopy(doc))
        return doc["_id"]

    # ==================== Reads ====================

    def find(self, query=None, projection=None) -> FakeCursor:
        error = self.failures.get("find") or self.failures.get("*")
        if error is not None:
            raise error
        return FakeCursor(self._matching(query), projection)

    async def find_one(self, query=None, projection=None, sort=None):
        await self._enter("find_one")
        cursor = FakeCursor(self._matching(query), projection)
        if sort:
            cursor.sort(sort)
        docs = cursor.limit(1)._materialize()
        return docs[0] if docs else None

    async def count_documents(self, query=None) -> int:
        await self._enter("count_documents")
        return len(self._matching(query))

    # ==================== Writes ====================

    async def insert_one(self, doc: Dict[str, Any]):
        await self._enter("insert_one")
        return SimpleNamespace(inserted_id=self._insert(doc))

    async def insert_many(self, docs: List[Dict[str, Any]]):
        await self._enter("insert_many")
        return SimpleNamespace(inserted_ids=[self._insert(doc) for doc in docs])

    async def delete_one(self, query):
        await self._enter("delete_one")
        for doc in self.docs:
            if matches(doc, query):
                self.docs.remove(doc)
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    async def delete_many(self, query):
        await self._enter("delete_many")
        kept = [doc for doc in self.docs if not matches(doc, query)]
        deleted = len(self.docs) - len(kept)
        self.docs = kept
        return SimpleNamespace(deleted_count=deleted)

    def _apply_update(self, doc: Dict[str, Any], update: Dict[str, Any], inserting: bool) -> None:
        for op, fields in update.items():
            if op == "$set" or (op == "$setOnInsert" and inserting):
                for path, value in fields.items():
                    _set_path(doc, path, value)
            elif op != "$setOnInsert":
                raise NotImplementedError(f"Update operator {op} not supported by the fake")

    def _upsert_seed(self, query: Dict[str, Any]) -> Dict[str, Any]:
        return {
            key: copy.deepcopy(value) for key, value in query.items()
            if not key.startswith("$") and not _is_operator_dict(value)
        }

    async def update_one(self, query, update, upsert: bool = False):
        await self._enter("update_one")
        for doc in self.docs:
            if matches(doc, query):
                self._apply_update(doc, update, inserting=False)
                return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if not upsert:
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
        doc = self._upsert_seed(query)
        self._apply_update(doc, update, inserting=True)
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=self._insert(doc))

    async def find_one_and_update(
        self,
        query,
        update,
        projection=None,
        upsert: bool = False,
        return_document=ReturnDocument.BEFORE,
    ):
        await self._enter("find_one_and_update")
        for doc in self.docs:
            if matches(doc, query):
                before = project(doc, projection)
                self._apply_update(doc, update, inserting=False)
                return project(doc, projection) if return_document == ReturnDocument.AFTER else before

        if not upsert:
            return None

        doc = self._upsert_seed(query)
        self._apply_update(doc, update, inserting=True)
        self._insert(doc)
        return project(doc, projection) if return_document == ReturnDocument.AFTER else None


class FakeDatabase:
    """Dictionary of collections created on first access."""

    def __init__(self, name: str = "test_trade_in"):
        self.name = name
        self.collections: Dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]

    def get_collection(self, name: str) -> FakeCollection:
        return self[name]

    async def list_collection_names(self) -> List[str]:
        return list(self.collections)


class FakeDatabaseManager:
    """Mimics DatabaseManager for app-level tests."""

    def __init__(self, db: Optional[FakeDatabase] = None):
        self.db = db if db is not None else FakeDatabase()
        self.client = None
        self.reachable = True

    async def connect(self):
        pass

    async def disconnect(self):
        pass

    async def ping(self) -> bool:
        return self.reachable
