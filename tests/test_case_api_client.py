"""Tests for the requests-based case store client."""

import itertools
import threading
from unittest.mock import MagicMock

import pytest
import requests

from support_portal.errors import CaseNotFoundError, StoreUnavailableError
from support_portal.models import CaseRequest, Message
from support_portal.services.case_api_client import CaseApiClient


def make_response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload or {}
    return response


@pytest.fixture
def http():
    return MagicMock()


@pytest.fixture
def client(http):
    return CaseApiClient("http://store.local/", session=http, timeout=5, poll_interval=0)


class TestRequests:
    """Verbs, paths and payloads sent to the store."""

    def test_create_case(self, client, http):
        http.request.return_value = make_response(201, {"case_id": "case-003"})
        request = CaseRequest(
            driver_id="D1",
            driver_name="John",
            driver_email="john@example.com",
            company="KozialTrans",
            flow_name="tour_check",
            title="Load Issue - Yes",
            description="system: Has the tour started?",
        )

        assert client.create_case(request) == "case-003"
        http.request.assert_called_once_with(
            "POST", "http://store.local/cases", timeout=5, json=request.to_dict()
        )

    def test_append_message(self, client, http):
        http.request.return_value = make_response(201, {"created": True})
        message = Message(id="m1", text="Yes", sender="driver", created_at="2024-05-01T10:00:00+00:00")
        client.append_message("case-001", message)
        http.request.assert_called_once_with(
            "POST", "http://store.local/cases/case-001/messages", timeout=5, json=message.to_dict()
        )

    def test_update_status(self, client, http):
        http.request.return_value = make_response(200, {"modified": True})
        client.update_status("case-001", "closed", reason="done")
        http.request.assert_called_once_with(
            "PATCH",
            "http://store.local/cases/case-001/status",
            timeout=5,
            json={"status": "closed", "reason": "done"},
        )

    def test_list_cases_params(self, client, http):
        http.request.return_value = make_response(200, {"cases": [{"id": "case-001"}]})
        assert client.list_cases(status="open", driver_id="D1", query="vrid") == [{"id": "case-001"}]
        _, kwargs = http.request.call_args
        assert kwargs["params"] == {"page": 1, "limit": 20, "status": "open", "driver_id": "D1", "q": "vrid"}

    def test_fetch_messages_after(self, client, http):
        http.request.return_value = make_response(
            200, {"messages": [{"id": "m2", "text": "Hi", "sender": "admin", "created_at": "t", "seq": 2}]}
        )
        messages = client.fetch_messages("case-001", after="m1")
        assert [m.id for m in messages] == ["m2"]
        _, kwargs = http.request.call_args
        assert kwargs["params"] == {"after": "m1"}


class TestErrors:
    """Transport problems and server errors become portal errors."""

    def test_connection_error(self, client, http):
        http.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(StoreUnavailableError):
            client.get_case("case-001")

    def test_server_error(self, client, http):
        http.request.return_value = make_response(503)
        with pytest.raises(StoreUnavailableError):
            client.get_case("case-001")

    def test_not_found(self, client, http):
        http.request.return_value = make_response(404)
        with pytest.raises(CaseNotFoundError):
            client.get_case("case-404")

    def test_client_error_is_reraised(self, client, http):
        response = make_response(422)
        response.raise_for_status.side_effect = requests.HTTPError("422 Unprocessable")
        http.request.return_value = response
        with pytest.raises(requests.HTTPError):
            client.update_status("case-001", "archived")


class TestSubscribe:
    def test_stops_after_one_poll_when_stopped(self, client, http):
        http.request.return_value = make_response(
            200, {"messages": [{"id": "m1", "text": "a", "sender": "system", "created_at": "t"}]}
        )
        stop = threading.Event()
        stop.set()
        assert [m.id for m in client.subscribe("case-001", stop=stop)] == ["m1"]

    def test_polls_from_last_seen_message(self, client, http):
        response = make_response(200)
        response.json.side_effect = [
            {"messages": [
                {"id": "m1", "text": "a", "sender": "system", "created_at": "t"},
                {"id": "m2", "text": "b", "sender": "driver", "created_at": "t"},
            ]},
            {"messages": [{"id": "m3", "text": "c", "sender": "admin", "created_at": "t"}]},
        ]
        http.request.return_value = response

        received = list(itertools.islice(client.subscribe("case-001"), 3))

        assert [m.id for m in received] == ["m1", "m2", "m3"]
        _, kwargs = http.request.call_args
        assert kwargs["params"] == {"after": "m2"}
