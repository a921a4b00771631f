"""Persistence gateway contract and its in-memory variant."""

from __future__ import annotations

import logging
import queue
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Protocol

from ..errors import CaseNotFoundError
from ..models import STATUS_OPEN, STATUSES, CaseRequest, Message

LOGGER = logging.getLogger(__name__)

_CLOSED = object()


class PersistenceGateway(Protocol):
    """What a case session needs from the case store."""

    def create_case(self, request: CaseRequest) -> str:
        ...

    def append_message(self, case_id: str, message: Message) -> None:
        ...

    def update_status(self, case_id: str, status: str, *, reason: Optional[str] = None) -> None:
        ...

    def subscribe(self, case_id: str) -> Iterator[Message]:
        ...


class CaseStore(PersistenceGateway, Protocol):
    """Gateway plus the read side used by the dashboards."""

    def get_case(self, case_id: str) -> Dict[str, Any]:
        ...

    def list_cases(
        self,
        *,
        status: Optional[str] = None,
        driver_id: Optional[str] = None,
        query: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        ...

    def fetch_messages(self, case_id: str, *, after: Optional[str] = None) -> List[Message]:
        ...


def _isoformat() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def matches_query(case: Dict[str, Any], query: str) -> bool:
    needle = query.strip().lower()
    if not needle:
        return True
    fields = ("id", "driver_id", "driver_name", "title", "last_message")
    return any(needle in str(case.get(field) or "").lower() for field in fields)


class InMemoryCaseRepository:
    """Provides the case store operations using in-memory storage."""

    def __init__(self) -> None:
        self._cases: Dict[str, Dict[str, Any]] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._subscribers: Dict[str, List["queue.Queue[Any]"]] = {}
        self._sequence = 0

    def create_case(self, request: CaseRequest) -> str:
        self._sequence += 1
        case_id = f"case-{self._sequence:03d}"
        now = _isoformat()
        document = request.to_dict()
        document.update(
            {
                "id": case_id,
                "status": request.status or STATUS_OPEN,
                "close_reason": None,
                "last_message": "",
                "created_at": now,
                "updated_at": now,
            }
        )
        self._cases[case_id] = document
        self._messages[case_id] = []
        LOGGER.info("Created %s for driver=%s flow=%s", case_id, request.driver_id, request.flow_name)
        return case_id

    def append_message(self, case_id: str, message: Message) -> None:
        case = self._case(case_id)
        messages = self._messages[case_id]
        if any(existing.id == message.id for existing in messages):
            LOGGER.debug("Ignoring duplicate message %s for %s", message.id, case_id)
            return
        messages.append(message)
        case["last_message"] = message.text
        case["updated_at"] = _isoformat()
        for subscriber in self._subscribers.get(case_id, []):
            subscriber.put(message)

    def update_status(self, case_id: str, status: str, *, reason: Optional[str] = None) -> None:
        if status not in STATUSES:
            raise ValueError(f"Unknown case status: {status}")
        case = self._case(case_id)
        case["status"] = status
        case["close_reason"] = reason
        case["updated_at"] = _isoformat()
        LOGGER.info("Case %s is now %s", case_id, status)

    def subscribe(self, case_id: str) -> Iterator[Message]:
        """Yields every stored message, then each new one until closed."""

        self._case(case_id)
        channel: "queue.Queue[Any]" = queue.Queue()
        self._subscribers.setdefault(case_id, []).append(channel)
        backlog = list(self._messages[case_id])
        return self._drain(case_id, channel, backlog)

    def close_subscriptions(self, case_id: Optional[str] = None) -> None:
        targets = [case_id] if case_id else list(self._subscribers)
        for target in targets:
            for subscriber in self._subscribers.pop(target, []):
                subscriber.put(_CLOSED)

    def get_case(self, case_id: str) -> Dict[str, Any]:
        return dict(self._case(case_id))

    def list_cases(
        self,
        *,
        status: Optional[str] = None,
        driver_id: Optional[str] = None,
        query: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        cases = [
            dict(case)
            for case in self._cases.values()
            if (status is None or case["status"] == status)
            and (driver_id is None or case["driver_id"] == driver_id)
            and (not query or matches_query(case, query))
        ]
        cases.sort(key=lambda case: case["updated_at"], reverse=True)
        return cases

    def fetch_messages(self, case_id: str, *, after: Optional[str] = None) -> List[Message]:
        self._case(case_id)
        messages = list(self._messages[case_id])
        if after:
            ids = [message.id for message in messages]
            if after in ids:
                messages = messages[ids.index(after) + 1:]
        return messages

    def delete_all_data(self) -> None:
        self.close_subscriptions()
        self._cases.clear()
        self._messages.clear()
        self._sequence = 0

    def _case(self, case_id: str) -> Dict[str, Any]:
        try:
            return self._cases[case_id]
        except KeyError:
            raise CaseNotFoundError(case_id) from None

    @staticmethod
    def _drain(case_id: str, channel: "queue.Queue[Any]", backlog: List[Message]) -> Iterator[Message]:
        seen = set()
        for message in backlog:
            seen.add(message.id)
            yield message
        while True:
            item = channel.get()
            if item is _CLOSED:
                LOGGER.debug("Subscription for %s closed", case_id)
                return
            if item.id in seen:
                continue
            seen.add(item.id)
            yield item
