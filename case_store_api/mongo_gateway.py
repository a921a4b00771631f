"""Persistence gateway writing straight to the case store collections."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterator, Optional

from pymongo import ASCENDING, ReturnDocument
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError, PyMongoError

from support_portal.errors import CaseNotFoundError, StoreUnavailableError
from support_portal.models import STATUSES, CaseRequest, Message

LOGGER = logging.getLogger(__name__)


class MongoCaseGateway:
    """Same document layout as the API, without the HTTP hop."""

    def __init__(
        self,
        cases: Collection,
        case_messages: Collection,
        counters: Collection,
        *,
        attempts: int = 5,
    ) -> None:
        self._cases = cases
        self._messages = case_messages
        self._counters = counters
        self._attempts = attempts

    def ensure_indexes(self) -> None:
        self._cases.create_index("id", unique=True)
        self._messages.create_index([("case_id", ASCENDING), ("id", ASCENDING)], unique=True)
        self._messages.create_index([("case_id", ASCENDING), ("seq", ASCENDING)], unique=True)

    def _next_sequence(self, name: str) -> int:
        counter = self._counters.find_one_and_update(
            {"_id": name},
            {"$inc": {"value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(counter["value"])

    def create_case(self, request: CaseRequest) -> str:
        now = datetime.now(timezone.utc)
        document = {
            **request.to_dict(),
            "close_reason": None,
            "last_message": "",
            "created_at": now,
            "updated_at": now,
        }
        try:
            for _ in range(self._attempts):
                document["id"] = f"case-{self._next_sequence('cases'):03d}"
                document.pop("_id", None)
                try:
                    self._cases.insert_one(document)
                    break
                except DuplicateKeyError:
                    LOGGER.warning("Case id %s already taken; drawing the next one", document["id"])
            else:
                raise StoreUnavailableError("Could not allocate a case id")
        except PyMongoError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        LOGGER.info("Created %s for driver=%s", document["id"], request.driver_id)
        return document["id"]

    def append_message(self, case_id: str, message: Message) -> None:
        try:
            if not self._cases.find_one({"id": case_id}, {"_id": 1}):
                raise CaseNotFoundError(case_id)
            if self._messages.find_one({"case_id": case_id, "id": message.id}, {"_id": 1}):
                return
            document = {"case_id": case_id, **message.to_dict()}
            for _ in range(self._attempts):
                document["seq"] = self._next_sequence(f"case_messages:{case_id}")
                document.pop("_id", None)
                try:
                    self._messages.insert_one(document)
                    break
                except DuplicateKeyError:
                    if self._messages.find_one({"case_id": case_id, "id": message.id}, {"_id": 1}):
                        LOGGER.debug("Message %s for %s stored concurrently", message.id, case_id)
                        return
            else:
                raise StoreUnavailableError(f"Could not allocate a message sequence for {case_id}")
            self._cases.update_one(
                {"id": case_id},
                {"$set": {"last_message": message.text, "updated_at": datetime.now(timezone.utc)}},
            )
        except PyMongoError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    def update_status(self, case_id: str, status: str, *, reason: Optional[str] = None) -> None:
        if status not in STATUSES:
            raise ValueError(f"Unknown case status: {status}")
        try:
            result = self._cases.update_one(
                {"id": case_id},
                {"$set": {"status": status, "close_reason": reason, "updated_at": datetime.now(timezone.utc)}},
            )
        except PyMongoError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        if result.matched_count == 0:
            raise CaseNotFoundError(case_id)

    def subscribe(self, case_id: str) -> Iterator[Message]:
        """Yields stored messages, then new inserts from a change stream."""

        pipeline = [{"$match": {"operationType": "insert", "fullDocument.case_id": case_id}}]
        try:
            with self._messages.watch(pipeline) as stream:
                for document in self._messages.find({"case_id": case_id}, {"_id": 0}).sort("seq", 1):
                    yield Message.from_dict(document)
                for change in stream:
                    yield Message.from_dict(change["fullDocument"])
        except PyMongoError as exc:
            raise StoreUnavailableError(str(exc)) from exc
