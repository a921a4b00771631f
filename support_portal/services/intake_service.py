"""Service layer that runs driver intakes and the case chat that follows."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..errors import AccessDeniedError, EmptyInputError, InvalidStatusTransitionError, SessionClosedError
from ..models import ROLE_ADMIN, ROLE_DRIVER, STATUS_CLOSED, STATUS_OPEN, STATUSES, Identity, Message
from ..repositories.case_repository import CaseStore
from ..repositories.session_repository import SessionRepository
from .case_session import CaseSession, SessionAction
from .conversation_engine import ConversationEngine, MessageFactory
from .conversation_graph import FlowCatalog

LOGGER = logging.getLogger(__name__)


class IntakeService:
    """Coordinates flow selection, live sessions and the case store."""

    def __init__(
        self,
        catalog: FlowCatalog,
        sessions: SessionRepository,
        gateway: CaseStore,
        *,
        default_flow: str,
        message_factory: Optional[MessageFactory] = None,
    ) -> None:
        self._catalog = catalog
        self._sessions = sessions
        self._gateway = gateway
        self._default_flow = default_flow
        self._message_factory = message_factory or MessageFactory()
        self._engines: Dict[str, ConversationEngine] = {}
        catalog.get(default_flow)

    @property
    def catalog(self) -> FlowCatalog:
        return self._catalog

    @property
    def gateway(self) -> CaseStore:
        return self._gateway

    def start_intake(self, identity: Identity, flow_name: Optional[str] = None) -> CaseSession:
        self._require_role(identity, ROLE_DRIVER)
        engine = self._engine(flow_name or self._default_flow)
        session = CaseSession(engine, identity, gateway=self._gateway)
        self._sessions.add(session)
        LOGGER.info("Started %s intake %s for driver=%s", engine.graph.name, session.session_id, identity.id)
        return session

    def session_for(self, session_id: str, identity: Identity) -> CaseSession:
        session = self._sessions.get(session_id)
        if identity.role != ROLE_ADMIN and session.identity.id != identity.id:
            raise AccessDeniedError(f"Intake {session_id} belongs to another driver")
        self._refresh(session)
        return session

    def sessions_for_driver(self, identity: Identity) -> List[CaseSession]:
        self._require_role(identity, ROLE_DRIVER)
        sessions = self._sessions.list_for_driver(identity.id)
        for session in sessions:
            self._refresh(session)
        return sessions

    def choose_option(self, session_id: str, identity: Identity, option: str) -> CaseSession:
        return self._advance(session_id, identity, SessionAction.option(option))

    def submit_text(self, session_id: str, identity: Identity, text: str) -> CaseSession:
        return self._advance(session_id, identity, SessionAction.text(text))

    def post_message(
        self,
        session_id: str,
        identity: Identity,
        text: str,
        attachment: Optional[str] = None,
    ) -> Message:
        session = self.session_for(session_id, identity)
        message = session.post_message(identity.role, text, attachment)
        LOGGER.info("Posted %s message on intake %s", identity.role, session_id)
        return message

    def close_case(self, session_id: str, identity: Identity, reason: str) -> CaseSession:
        self._require_role(identity, ROLE_ADMIN)
        session = self.session_for(session_id, identity)
        session.close(reason)
        LOGGER.info("Closed intake %s (case=%s): %s", session_id, session.case_id, reason)
        return session

    def reopen_case(self, session_id: str, identity: Identity) -> CaseSession:
        self._require_role(identity, ROLE_ADMIN)
        session = self.session_for(session_id, identity)
        session.reopen()
        LOGGER.info("Reopened intake %s (case=%s)", session_id, session.case_id)
        return session

    def list_cases(
        self,
        identity: Identity,
        *,
        status: Optional[str] = None,
        query: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        driver_id = None if identity.role == ROLE_ADMIN else identity.id
        return self._gateway.list_cases(status=status, driver_id=driver_id, query=query)

    def case_detail(
        self,
        case_id: str,
        identity: Identity,
        *,
        after: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], List[Message]]:
        case = self._case_for(case_id, identity)
        return case, self._gateway.fetch_messages(case_id, after=after)

    def post_case_message(
        self,
        case_id: str,
        identity: Identity,
        text: str,
        attachment: Optional[str] = None,
    ) -> Message:
        """Chat on a case by its id, with or without a live intake in this process."""

        case = self._case_for(case_id, identity)
        session = self._sessions.find_by_case(case_id)
        if session is not None:
            self._refresh(session, case)
            message = session.post_message(identity.role, text, attachment)
        else:
            if case.get("status") != STATUS_OPEN:
                raise SessionClosedError(f"Case {case_id} is closed")
            if text is None or not text.strip():
                raise EmptyInputError("Message text must not be empty")
            message = self._message_factory.create(text, identity.role, attachment)
            self._gateway.append_message(case_id, message)
        LOGGER.info("Posted %s message on %s", identity.role, case_id)
        return message

    def update_case_status(
        self,
        case_id: str,
        identity: Identity,
        status: str,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._require_role(identity, ROLE_ADMIN)
        if status not in STATUSES:
            raise ValueError(f"Unknown case status: {status}")
        case = self._gateway.get_case(case_id)
        current = case.get("status", STATUS_OPEN)
        if current == status:
            raise InvalidStatusTransitionError(current, status)
        session = self._sessions.find_by_case(case_id)
        if session is not None and session.status == current:
            if status == STATUS_CLOSED:
                session.close(reason or "")
            else:
                session.reopen()
        else:
            self._gateway.update_status(case_id, status, reason=(reason or None) if status == STATUS_CLOSED else None)
            if session is not None:
                session.track_status(status, reason or None)
        LOGGER.info("Case %s moved from %s to %s", case_id, current, status)
        return self._gateway.get_case(case_id)

    def _advance(self, session_id: str, identity: Identity, action: SessionAction) -> CaseSession:
        self._require_role(identity, ROLE_DRIVER)
        session = self.session_for(session_id, identity)
        transition = session.advance(action)
        if transition.finished:
            LOGGER.info("Intake %s finished; case=%s", session_id, session.case_id)
        return session

    def _case_for(self, case_id: str, identity: Identity) -> Dict[str, Any]:
        case = self._gateway.get_case(case_id)
        if identity.role != ROLE_ADMIN and case.get("driver_id") != identity.id:
            raise AccessDeniedError(f"Case {case_id} belongs to another driver")
        return case

    def _refresh(self, session: CaseSession, case: Optional[Dict[str, Any]] = None) -> None:
        """Pulls messages and status written to the store by other processes."""

        if not session.case_id:
            return
        case = case or self._gateway.get_case(session.case_id)
        merged = session.sync(self._gateway.fetch_messages(session.case_id, after=session.last_message_id))
        if merged:
            LOGGER.debug("Merged %d stored messages into intake %s", merged, session.session_id)
        status = case.get("status", session.status)
        if status != session.status:
            session.track_status(status, case.get("close_reason"))

    def _engine(self, flow_name: str) -> ConversationEngine:
        engine = self._engines.get(flow_name)
        if engine is None:
            engine = ConversationEngine(self._catalog.get(flow_name), message_factory=self._message_factory)
            self._engines[flow_name] = engine
        return engine

    @staticmethod
    def _require_role(identity: Identity, role: str) -> None:
        if identity.role != role:
            raise AccessDeniedError(f"Only {role}s may do this")
