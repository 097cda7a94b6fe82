"""
In-memory stand-in for the Beanie document classes, so the services can run
their real state transitions without a MongoDB.

Only the query surface the services use is covered: find_one(...) awaited or
followed by update(), find(...) with sort/skip/limit/count/to_list/delete,
aggregate() answering with canned rows, and insert()/delete() on documents.
Filters understand equality, dotted paths, $or and the comparison operators.
"""
import copy
import operator
from types import SimpleNamespace

from beanie import PydanticObjectId
from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError


def _present(compare):

    def check(value, operand):
        return value is not None and compare(value, operand)

    return check


OPERATORS = {
    "$in": lambda value, operand: value in operand,
    "$nin": lambda value, operand: value not in operand,
    "$ne": operator.ne,
    "$gt": _present(operator.gt),
    "$gte": _present(operator.ge),
    "$lt": _present(operator.lt),
    "$lte": _present(operator.le),
}


def _parts(path: str) -> list:
    return ["id" if path == "_id" else part for part in path.split(".")]


def lookup(document, path: str):
    value = document
    for part in _parts(path):
        if value is None:
            return None
        if isinstance(value, dict):
            value = value.get(part)
        else:
            value = getattr(value, part, None)
    return value


def assign(document: dict, path: str, value):
    *parents, last = _parts(path)
    target = document
    for part in parents:
        if isinstance(target, dict):
            target = target.setdefault(part, {})
        else:
            target = getattr(target, part)

    if isinstance(target, dict):
        current = target.get(last)
        # Keep embedded models as models when $set hands over a dump
        if isinstance(current, BaseModel) and isinstance(value, dict):
            value = type(current).model_validate(value)
        target[last] = value
    else:
        setattr(target, last, value)


def matches(document: dict, query: dict) -> bool:
    for key, condition in query.items():
        if key == "$or":
            if not any(matches(document, option) for option in condition):
                return False
            continue

        value = lookup(document, key)
        if isinstance(condition, dict) and condition and all(
                op.startswith("$") for op in condition):
            if not all(OPERATORS[op](value, operand)
                       for op, operand in condition.items()):
                return False
        elif value != condition:
            return False
    return True


def apply_update(document: dict, changes: dict):
    for path, value in changes.get("$set", {}).items():
        assign(document, path, copy.deepcopy(value))
    for path, amount in changes.get("$inc", {}).items():
        assign(document, path, (lookup(document, path) or 0) + amount)


class MemoryDocument(SimpleNamespace):
    collection = None

    async def insert(self):
        return self.collection.insert(self)

    async def delete(self):
        self.collection.remove({"_id": self.id})


class FindOne():

    def __init__(self, collection, query: dict):
        self.collection = collection
        self.query = query

    def __await__(self):
        return self._first().__await__()

    async def _first(self):
        stored = self.collection.first(self.query)
        return self.collection.materialize(stored) if stored else None

    async def update(self, changes: dict):
        stored = self.collection.first(self.query)
        if stored is None:
            return SimpleNamespace(modified_count=0, matched_count=0)
        apply_update(stored, changes)
        return SimpleNamespace(modified_count=1, matched_count=1)


class FindMany():

    def __init__(self, collection, query: dict):
        self.collection = collection
        self.query = query
        self._skip = 0
        self._limit = None

    def sort(self, *keys):
        return self

    def skip(self, count: int):
        self._skip = count
        return self

    def limit(self, count: int):
        self._limit = count
        return self

    async def count(self) -> int:
        return len(self.collection.matching(self.query))

    async def to_list(self) -> list:
        found = self.collection.matching(self.query)[self._skip:]
        if self._limit is not None:
            found = found[:self._limit]
        return [self.collection.materialize(stored) for stored in found]

    async def delete(self):
        return SimpleNamespace(deleted_count=self.collection.remove(self.query))


class Cursor():

    def __init__(self, rows: list):
        self.rows = rows

    async def to_list(self) -> list:
        return copy.deepcopy(self.rows)


class MemoryCollection():
    """
    Patched in place of a Document class: calling it builds a document with
    the real model's defaults, the class methods query the stored dicts
    """

    def __init__(self, model, unique=()):
        self.model = model
        self.unique = unique
        self.documents = []
        self.aggregate_rows = []
        self.pipelines = []
        self.document_class = type(model.__name__, (MemoryDocument,),
                                   {"collection": self})

    def __call__(self, **fields) -> MemoryDocument:
        defaults = {
            name: field.get_default(call_default_factory=True)
            for name, field in self.model.model_fields.items()
            if not field.is_required()
        }
        return self.document_class(**{**defaults, **fields})

    def insert(self, document: MemoryDocument) -> MemoryDocument:
        if getattr(document, "id", None) is None:
            document.id = PydanticObjectId()
        data = copy.deepcopy(vars(document))
        for key in self.unique:
            if self.first({key: data[key]}) is not None:
                raise DuplicateKeyError(f"duplicate {key}: {data[key]}")
        self.documents.append(data)
        return document

    def add(self, **fields) -> MemoryDocument:
        return self.materialize(vars(self.insert(self(**fields))))

    def get(self, document_id):
        stored = self.first({"_id": document_id})
        return self.materialize(stored) if stored else None

    def first(self, query: dict):
        return next(
            (stored for stored in self.documents if matches(stored, query)),
            None)

    def matching(self, query: dict) -> list:
        return [stored for stored in self.documents if matches(stored, query)]

    def remove(self, query: dict) -> int:
        before = len(self.documents)
        self.documents = [
            stored for stored in self.documents if not matches(stored, query)
        ]
        return before - len(self.documents)

    def materialize(self, stored: dict) -> MemoryDocument:
        return self.document_class(**copy.deepcopy(stored))

    def find_one(self, query: dict) -> FindOne:
        return FindOne(self, query)

    def find(self, query=None) -> FindMany:
        return FindMany(self, query or {})

    def aggregate(self, pipeline: list) -> Cursor:
        self.pipelines.append(pipeline)
        return Cursor(self.aggregate_rows)
