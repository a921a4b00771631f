"""Registry of live intake sessions (in-memory variant)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, List, Optional

from ..errors import SessionNotFoundError
from ..models import STATUS_CLOSED

if TYPE_CHECKING:
    from ..services.case_session import CaseSession

LOGGER = logging.getLogger(__name__)


class SessionRepository:
    """Keeps each running CaseSession reachable by its identifier.

    Holds at most ``capacity`` sessions. When full, the oldest closed
    session is evicted first, then the oldest finished one (its case stays
    reachable in the store), and only then the oldest unfinished intake.
    """

    def __init__(self, capacity: int = 1000) -> None:
        if capacity < 1:
            raise ValueError("Session capacity must be positive")
        self._capacity = capacity
        self._sessions: Dict[str, "CaseSession"] = {}

    def add(self, session: "CaseSession") -> "CaseSession":
        self._sessions[session.session_id] = session
        while len(self._sessions) > self._capacity:
            self._evict_one()
        return session

    def get(self, session_id: str) -> "CaseSession":
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def find_by_case(self, case_id: str) -> Optional["CaseSession"]:
        return next((s for s in self._sessions.values() if s.case_id == case_id), None)

    def list_for_driver(self, driver_id: str) -> List["CaseSession"]:
        return [s for s in self._sessions.values() if s.identity.id == driver_id]

    def remove(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)

    def _evict_one(self) -> None:
        sessions = list(self._sessions.values())
        victim = (
            next((s for s in sessions if s.finished and s.status == STATUS_CLOSED), None)
            or next((s for s in sessions if s.finished), None)
            or sessions[0]
        )
        LOGGER.info("Evicting intake %s (case=%s)", victim.session_id, victim.case_id)
        self.remove(victim.session_id)
