"""Shared test fixtures for the driver support portal test suite."""

import itertools
import os
import re
from collections.abc import Iterator
from typing import Any

import pytest
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

os.environ.setdefault("MPLBACKEND", "Agg")

from support_portal.models import ROLE_ADMIN, ROLE_DRIVER, Identity  # noqa: E402
from support_portal.repositories.case_repository import InMemoryCaseRepository  # noqa: E402
from support_portal.services.conversation_engine import ConversationEngine, MessageFactory  # noqa: E402
from support_portal.services.conversation_graph import ConversationGraph, FlowCatalog  # noqa: E402


@pytest.fixture(scope="session")
def catalog() -> FlowCatalog:
    """The flow tables shipped with the portal."""
    return FlowCatalog()


@pytest.fixture
def message_factory() -> MessageFactory:
    """Message factory with predictable ids and a frozen clock."""
    counter = itertools.count(1)
    return MessageFactory(
        id_factory=lambda: f"m{next(counter)}",
        clock=lambda: "2024-05-01T10:00:00+00:00",
    )


@pytest.fixture
def tour_graph(catalog: FlowCatalog) -> ConversationGraph:
    return catalog.get("tour_check")


@pytest.fixture
def engine(tour_graph: ConversationGraph, message_factory: MessageFactory) -> ConversationEngine:
    return ConversationEngine(tour_graph, message_factory=message_factory)


@pytest.fixture
def driver() -> Identity:
    return Identity(
        id="D12345",
        role=ROLE_DRIVER,
        email="driver@example.com",
        name="John Driver",
        company="KozialTrans",
    )


@pytest.fixture
def admin() -> Identity:
    return Identity(id="A98765", role=ROLE_ADMIN, email="admin@example.com", name="Admin User")


@pytest.fixture
def repository() -> Iterator[InMemoryCaseRepository]:
    repo = InMemoryCaseRepository()
    yield repo
    repo.close_subscriptions()


class FakeResult:
    def __init__(self, matched: int = 0, deleted: int = 0) -> None:
        self.matched_count = matched
        self.modified_count = matched
        self.deleted_count = deleted


class FakeCursor:
    def __init__(self, docs: list[dict[str, Any]]) -> None:
        self._docs = docs

    def sort(self, key: str, direction: int = 1) -> "FakeCursor":
        self._docs.sort(key=lambda doc: doc.get(key), reverse=direction < 0)
        return self

    def skip(self, count: int) -> "FakeCursor":
        self._docs = self._docs[count:]
        return self

    def limit(self, count: int) -> "FakeCursor":
        self._docs = self._docs[:count]
        return self

    def __iter__(self):
        return iter(self._docs)


def _matches(doc: dict[str, Any], query: dict[str, Any]) -> bool:
    for key, condition in query.items():
        if key == "$or":
            if not any(_matches(doc, sub) for sub in condition):
                return False
            continue
        value = doc.get(key)
        if isinstance(condition, dict):
            if "$gt" in condition and not (value is not None and value > condition["$gt"]):
                return False
            if "$gte" in condition and not (value is not None and value >= condition["$gte"]):
                return False
            if "$regex" in condition:
                flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
                if not re.search(condition["$regex"], str(value or ""), flags):
                    return False
        elif value != condition:
            return False
    return True


def _project(doc: dict[str, Any], projection: dict[str, int] | None) -> dict[str, Any]:
    if not projection:
        return dict(doc)
    included = [key for key, flag in projection.items() if flag]
    if included:
        keys = set(included)
        if projection.get("_id", 1):
            keys.add("_id")
        return {key: value for key, value in doc.items() if key in keys}
    return {key: value for key, value in doc.items() if key not in projection}


class FakeCollection:
    """Just enough of a pymongo collection for the case store endpoints."""

    def __init__(self) -> None:
        self.docs: list[dict[str, Any]] = []
        self.unique_keys: list[tuple[str, ...]] = []
        self._ids = itertools.count(1)

    def insert_one(self, document: dict[str, Any]) -> None:
        stored = dict(document)
        stored.setdefault("_id", next(self._ids))
        for keys in self.unique_keys + [("_id",)]:
            if any(all(doc.get(key) == stored.get(key) for key in keys) for doc in self.docs):
                raise DuplicateKeyError(f"E11000 duplicate key error on {keys}")
        self.docs.append(stored)

    def find_one(self, query: dict[str, Any] | None = None, projection: dict[str, int] | None = None):
        for doc in self.docs:
            if _matches(doc, query or {}):
                return _project(doc, projection)
        return None

    def find(self, query: dict[str, Any] | None = None, projection: dict[str, int] | None = None) -> FakeCursor:
        return FakeCursor([_project(doc, projection) for doc in self.docs if _matches(doc, query or {})])

    def count_documents(self, query: dict[str, Any]) -> int:
        return sum(1 for doc in self.docs if _matches(doc, query))

    def update_one(self, query: dict[str, Any], update: dict[str, Any]) -> FakeResult:
        for doc in self.docs:
            if _matches(doc, query):
                doc.update(update.get("$set", {}))
                return FakeResult(matched=1)
        return FakeResult()

    def find_one_and_update(
        self,
        query: dict[str, Any],
        update: dict[str, Any],
        upsert: bool = False,
        return_document: Any = ReturnDocument.BEFORE,
    ):
        doc = next((doc for doc in self.docs if _matches(doc, query)), None)
        before = dict(doc) if doc is not None else None
        if doc is None:
            if not upsert:
                return None
            doc = {key: value for key, value in query.items() if not isinstance(value, dict)}
            self.docs.append(doc)
        for key, amount in update.get("$inc", {}).items():
            doc[key] = doc.get(key, 0) + amount
        doc.update(update.get("$set", {}))
        return dict(doc) if return_document == ReturnDocument.AFTER else before

    def delete_one(self, query: dict[str, Any]) -> FakeResult:
        for index, doc in enumerate(self.docs):
            if _matches(doc, query):
                del self.docs[index]
                return FakeResult(deleted=1)
        return FakeResult()

    def create_index(self, keys: Any, unique: bool = False, **kwargs: Any) -> str:
        names = (keys,) if isinstance(keys, str) else tuple(name for name, _ in keys)
        if unique and names not in self.unique_keys:
            self.unique_keys.append(names)
        return "_".join(names)


@pytest.fixture
def fake_collection_factory():
    """Factory fixture returning fresh fake collections."""
    return FakeCollection
