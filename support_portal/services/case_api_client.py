"""HTTP client for interacting with the case store API service."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterator, List, Optional

import requests

from ..errors import CaseNotFoundError, StoreUnavailableError
from ..models import CaseRequest, Message

LOGGER = logging.getLogger(__name__)


class CaseApiClient:
    """Persistence gateway backed by the FastAPI case store."""

    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: int = 10,
        poll_interval: float = 2.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session or requests.Session()
        self._timeout = timeout
        self._poll_interval = poll_interval

    def _url(self, *parts: str) -> str:
        suffix = "/".join(part.strip("/") for part in parts if part)
        return f"{self._base_url}/{suffix}" if suffix else self._base_url

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.RequestException as exc:
            LOGGER.warning("Case store unreachable: %s %s (%s)", method, url, exc)
            raise StoreUnavailableError(f"{method} {url} failed: {exc}") from exc
        if response.status_code == 404:
            raise CaseNotFoundError(url)
        if response.status_code >= 500:
            LOGGER.warning("Case store error %s for %s %s", response.status_code, method, url)
            raise StoreUnavailableError(f"{method} {url} returned {response.status_code}")
        try:
            response.raise_for_status()
        except requests.HTTPError:
            LOGGER.exception("Case store request failed: %s %s", method, url)
            raise
        return response

    def create_case(self, request: CaseRequest) -> str:
        response = self._request("POST", self._url("cases"), json=request.to_dict())
        return str(response.json()["case_id"])

    def append_message(self, case_id: str, message: Message) -> None:
        self._request("POST", self._url("cases", case_id, "messages"), json=message.to_dict())

    def update_status(self, case_id: str, status: str, *, reason: Optional[str] = None) -> None:
        payload = {"status": status, "reason": reason}
        self._request("PATCH", self._url("cases", case_id, "status"), json=payload)

    def get_case(self, case_id: str) -> Dict[str, Any]:
        return self._request("GET", self._url("cases", case_id)).json()

    def list_cases(
        self,
        *,
        status: Optional[str] = None,
        driver_id: Optional[str] = None,
        query: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"page": page, "limit": limit}
        if status:
            params["status"] = status
        if driver_id:
            params["driver_id"] = driver_id
        if query:
            params["q"] = query
        data = self._request("GET", self._url("cases"), params=params).json()
        return list(data.get("cases", []))

    def fetch_messages(self, case_id: str, *, after: Optional[str] = None) -> List[Message]:
        params = {"after": after} if after else None
        data = self._request("GET", self._url("cases", case_id, "messages"), params=params).json()
        return [Message.from_dict(item) for item in data.get("messages", [])]

    def subscribe(self, case_id: str, *, stop: Optional[threading.Event] = None) -> Iterator[Message]:
        """Polls the store and yields messages not seen before."""

        stop_event = stop or threading.Event()
        last_id: Optional[str] = None
        while True:
            for message in self.fetch_messages(case_id, after=last_id):
                last_id = message.id
                yield message
            if stop_event.wait(self._poll_interval):
                return
