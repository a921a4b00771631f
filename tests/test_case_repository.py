"""Tests for the in-memory case store and the session registry."""

import pytest

from support_portal.errors import CaseNotFoundError, SessionNotFoundError
from support_portal.models import SENDER_ADMIN, SENDER_DRIVER, CaseRequest, Identity, Message
from support_portal.repositories.case_repository import matches_query
from support_portal.repositories.session_repository import SessionRepository
from support_portal.services.case_session import CaseSession, SessionAction


def make_request(driver_id="D12345", title="Load Issue - Yes", name="John Driver"):
    return CaseRequest(
        driver_id=driver_id,
        driver_name=name,
        driver_email=f"{driver_id.lower()}@example.com",
        company="KozialTrans",
        flow_name="tour_check",
        title=title,
        description="system: Has the tour started?",
    )


def make_message(message_id, text="hello", sender=SENDER_DRIVER):
    return Message(id=message_id, text=text, sender=sender, created_at="2024-05-01T10:00:00+00:00")


class TestInMemoryCaseRepository:
    """Case documents, messages and status in memory."""

    def test_sequential_case_ids(self, repository):
        assert repository.create_case(make_request()) == "case-001"
        assert repository.create_case(make_request()) == "case-002"

    def test_new_case_document(self, repository):
        case_id = repository.create_case(make_request())
        case = repository.get_case(case_id)
        assert case["status"] == "open"
        assert case["driver_name"] == "John Driver"
        assert case["close_reason"] is None
        assert case["last_message"] == ""

    def test_append_is_idempotent(self, repository):
        case_id = repository.create_case(make_request())
        repository.append_message(case_id, make_message("m1", "first"))
        repository.append_message(case_id, make_message("m1", "first"))
        repository.append_message(case_id, make_message("m2", "second"))
        assert [m.id for m in repository.fetch_messages(case_id)] == ["m1", "m2"]
        assert repository.get_case(case_id)["last_message"] == "second"

    def test_fetch_after(self, repository):
        case_id = repository.create_case(make_request())
        for index in range(1, 4):
            repository.append_message(case_id, make_message(f"m{index}"))
        assert [m.id for m in repository.fetch_messages(case_id, after="m1")] == ["m2", "m3"]
        assert [m.id for m in repository.fetch_messages(case_id, after="unknown")] == ["m1", "m2", "m3"]

    def test_unknown_case(self, repository):
        with pytest.raises(CaseNotFoundError):
            repository.get_case("case-999")
        with pytest.raises(CaseNotFoundError):
            repository.append_message("case-999", make_message("m1"))
        with pytest.raises(CaseNotFoundError):
            repository.update_status("case-999", "closed")

    def test_update_status(self, repository):
        case_id = repository.create_case(make_request())
        repository.update_status(case_id, "closed", reason="Resolved")
        case = repository.get_case(case_id)
        assert case["status"] == "closed"
        assert case["close_reason"] == "Resolved"
        with pytest.raises(ValueError):
            repository.update_status(case_id, "archived")

    def test_list_cases_filters(self, repository):
        first = repository.create_case(make_request("D1", title="Load Issue - Yes"))
        repository.create_case(make_request("D2", title="Support Case - App Problem", name="Jane Smith"))
        repository.update_status(first, "closed")

        assert [c["driver_id"] for c in repository.list_cases(status="open")] == ["D2"]
        assert [c["driver_id"] for c in repository.list_cases(driver_id="D1")] == ["D1"]
        assert [c["driver_id"] for c in repository.list_cases(query="jane")] == ["D2"]
        assert [c["id"] for c in repository.list_cases(query="case-001")] == ["case-001"]
        assert len(repository.list_cases()) == 2

    def test_delete_all_data(self, repository):
        repository.create_case(make_request())
        repository.delete_all_data()
        assert repository.list_cases() == []
        assert repository.create_case(make_request()) == "case-001"


class TestSubscribe:
    """Subscriptions replay stored messages, then deliver new ones once."""

    def test_backlog_then_live(self, repository):
        case_id = repository.create_case(make_request())
        repository.append_message(case_id, make_message("m1"))
        stream = repository.subscribe(case_id)
        repository.append_message(case_id, make_message("m2", sender=SENDER_ADMIN))
        repository.close_subscriptions(case_id)
        assert [m.id for m in stream] == ["m1", "m2"]

    def test_message_appended_before_first_read_is_not_lost(self, repository):
        case_id = repository.create_case(make_request())
        stream = repository.subscribe(case_id)
        repository.append_message(case_id, make_message("m1"))
        repository.close_subscriptions()
        assert [m.id for m in stream] == ["m1"]

    def test_subscribe_unknown_case(self, repository):
        with pytest.raises(CaseNotFoundError):
            repository.subscribe("case-404")


def test_matches_query_ignores_blank():
    case = {"id": "case-001", "driver_id": "D1", "title": "Load Issue"}
    assert matches_query(case, "   ")
    assert matches_query(case, "LOAD")
    assert not matches_query(case, "route")


class TestSessionRepository:
    """Live intakes by id, by case and by driver, within a fixed capacity."""

    def test_add_get_remove(self, engine, driver):
        sessions = SessionRepository()
        session = sessions.add(CaseSession(engine, driver, session_id="s1"))
        assert sessions.get("s1") is session
        assert sessions.list_for_driver("D12345") == [session]
        assert sessions.list_for_driver("someone-else") == []
        sessions.remove("s1")
        assert len(sessions) == 0
        with pytest.raises(SessionNotFoundError):
            sessions.get("s1")

    def test_find_by_case(self, engine, driver, repository):
        sessions = SessionRepository()
        session = sessions.add(CaseSession(engine, driver, gateway=repository))
        sessions.add(CaseSession(engine, Identity(id="D2", role="driver")))
        assert sessions.find_by_case("case-001") is None

        session.advance(SessionAction.option("No"))
        assert sessions.find_by_case("case-001") is session

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            SessionRepository(capacity=0)

    def test_closed_cases_are_evicted_first(self, engine, driver, repository):
        sessions = SessionRepository(capacity=3)
        running = sessions.add(CaseSession(engine, driver, session_id="running"))
        finished = sessions.add(CaseSession(engine, driver, session_id="finished", gateway=repository))
        finished.advance(SessionAction.option("No"))
        closed = sessions.add(CaseSession(engine, driver, session_id="closed", gateway=repository))
        closed.advance(SessionAction.option("No"))
        closed.close("resolved")

        sessions.add(CaseSession(engine, driver, session_id="new-1"))
        assert [s.session_id for s in sessions.list_for_driver(driver.id)] == ["running", "finished", "new-1"]

        sessions.add(CaseSession(engine, driver, session_id="new-2"))
        assert [s.session_id for s in sessions.list_for_driver(driver.id)] == ["running", "new-1", "new-2"]

        sessions.add(CaseSession(engine, driver, session_id="new-3"))
        assert len(sessions) == 3
        with pytest.raises(SessionNotFoundError):
            sessions.get(running.session_id)
        assert repository.get_case(finished.case_id)["status"] == "open"
