"""
In-memory stand-in for the motor collections the billing services use.

Supports the query/update subset the services issue: equality (arrays match on
element, None matches missing), $in, $ne, $lt, $lte, $gt, $gte, $exists, $or;
updates with $set, $inc, $push ($each), $pull, $unset; unique indexes raising pymongo's
DuplicateKeyError. Documents are deep-copied in and out like a real driver.
"""
import copy
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

_MISSING = object()

# (fields, sparse) per collection, matching database._create_indexes
UNIQUE_INDEXES = {
    "subscriber_mirrors": [(("subscriber_id",), False), (("customer_ref",), True)],
    "webhook_endpoints": [(("endpoint_id",), False)],
    "webhook_events": [(("event_id",), False), (("correlation_id",), False)],
    "webhook_deliveries": [(("attempt_id",), False), (("event_id", "endpoint_id"), False)],
    "lifecycle_notices": [(("notice_key",), False)],
    "stripe_events": [(("event_id",), False)],
}


def _get(doc: Dict[str, Any], path: str):
    current: Any = doc
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _compare(value, op: str, operand) -> bool:
    if value is _MISSING or value is None:
        return False
    if op == "$lt":
        return value < operand
    if op == "$lte":
        return value <= operand
    if op == "$gt":
        return value > operand
    if op == "$gte":
        return value >= operand
    raise NotImplementedError(op)


def _equals(value, expected) -> bool:
    if expected is None:
        return value is _MISSING or value is None
    if isinstance(value, list) and not isinstance(expected, list):
        return expected in value
    return value is not _MISSING and value == expected


def _match_condition(value, condition) -> bool:
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, operand in condition.items():
            if op == "$in":
                if not any(_equals(value, item) for item in operand):
                    return False
            elif op == "$ne":
                if _equals(value, operand):
                    return False
            elif op == "$exists":
                if (value is not _MISSING) != bool(operand):
                    return False
            else:
                if not _compare(value, op, operand):
                    return False
        return True
    return _equals(value, condition)


def matches(doc: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
            continue
        if not _match_condition(_get(doc, key), condition):
            return False
    return True


def _project(doc: Dict[str, Any], projection: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        return {k: doc[k] for k in included if k in doc}
    for key, flag in projection.items():
        if not flag:
            doc.pop(key, None)
    return doc


def _apply_update(doc: Dict[str, Any], update: Dict[str, Any]) -> None:
    for op, fields in update.items():
        for key, value in fields.items():
            if op == "$set":
                doc[key] = copy.deepcopy(value)
            elif op == "$inc":
                doc[key] = doc.get(key, 0) + value
            elif op == "$push":
                items = value["$each"] if isinstance(value, dict) and "$each" in value else [value]
                doc.setdefault(key, []).extend(copy.deepcopy(items))
            elif op == "$pull":
                if isinstance(value, dict):
                    doc[key] = [item for item in doc.get(key, []) if not matches(item, value)]
                else:
                    doc[key] = [item for item in doc.get(key, []) if item != value]
            elif op == "$unset":
                doc.pop(key, None)
            else:
                raise NotImplementedError(op)


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs

    def sort(self, key: str, direction: int = 1):
        present = [d for d in self._docs if d.get(key) is not None]
        absent = [d for d in self._docs if d.get(key) is None]
        present.sort(key=lambda d: d[key], reverse=direction < 0)
        self._docs = absent + present if direction > 0 else present + absent
        return self

    def limit(self, n: int):
        if n:
            self._docs = self._docs[:n]
        return self

    async def to_list(self, length: Optional[int] = None):
        return self._docs if length is None else self._docs[:length]


class FakeCollection:
    def __init__(self, name: str):
        self.name = name
        self.docs: List[Dict[str, Any]] = []
        self.unique: List[Tuple[Tuple[str, ...], bool]] = UNIQUE_INDEXES.get(name, [])

    def _check_unique(self, candidate: Dict[str, Any], ignore: Optional[Dict[str, Any]] = None) -> None:
        for fields, sparse in self.unique:
            values = tuple(candidate.get(f, _MISSING) for f in fields)
            if sparse and all(v is _MISSING for v in values):
                continue
            for existing in self.docs:
                if existing is ignore:
                    continue
                if tuple(existing.get(f, _MISSING) for f in fields) == values:
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {fields}")

    async def insert_one(self, doc: Dict[str, Any]):
        stored = copy.deepcopy(doc)
        stored.pop("_id", None)
        self._check_unique(stored)
        self.docs.append(stored)
        return stored

    async def find_one(self, query=None, projection=None):
        for doc in self.docs:
            if matches(doc, query):
                return _project(doc, projection)
        return None

    def find(self, query=None, projection=None):
        return FakeCursor([_project(d, projection) for d in self.docs if matches(d, query)])

    async def count_documents(self, query=None):
        return sum(1 for d in self.docs if matches(d, query))

    def _update(self, doc: Dict[str, Any], update: Dict[str, Any]) -> None:
        updated = copy.deepcopy(doc)
        _apply_update(updated, update)
        self._check_unique(updated, ignore=doc)
        doc.clear()
        doc.update(updated)

    async def update_one(self, query, update, upsert: bool = False):
        for doc in self.docs:
            if matches(doc, query):
                self._update(doc, update)
                return doc
        return None

    async def update_many(self, query, update):
        for doc in [d for d in self.docs if matches(d, query)]:
            self._update(doc, update)

    async def find_one_and_update(self, query, update, projection=None, return_document=ReturnDocument.BEFORE):
        for doc in self.docs:
            if matches(doc, query):
                before = _project(doc, projection)
                self._update(doc, update)
                return _project(doc, projection) if return_document == ReturnDocument.AFTER else before
        return None

    async def create_index(self, *args, **kwargs):
        return None


class FakeDatabase:
    def __init__(self):
        self._collections: Dict[str, FakeCollection] = {}

    def __getattr__(self, name: str) -> FakeCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]
