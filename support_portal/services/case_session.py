"""Case sessions binding one intake run to a transcript and a support case."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Sequence, Tuple

from ..errors import EmptyInputError, InvalidStatusTransitionError, SessionClosedError
from ..models import SENDERS, STATUS_CLOSED, STATUS_OPEN, STATUSES, CaseRequest, Identity, Message
from ..repositories.case_repository import PersistenceGateway
from .conversation_engine import ConversationEngine, Transition
from .conversation_graph import Step


@dataclass(frozen=True)
class SessionAction:
    """A driver action: picking an option or typing an answer."""

    OPTION: ClassVar[str] = "option"
    INPUT: ClassVar[str] = "input"

    kind: str
    value: str

    @classmethod
    def option(cls, label: str) -> "SessionAction":
        return cls(cls.OPTION, label)

    @classmethod
    def text(cls, value: str) -> "SessionAction":
        return cls(cls.INPUT, value)


@dataclass(frozen=True)
class _PendingFinalization:
    action: SessionAction
    transition: Transition
    choices: Tuple[str, ...]
    request: CaseRequest


def render_description(transcript: Sequence[Message]) -> str:
    return "\n".join(f"{message.sender}: {message.text}" for message in transcript)


class CaseSession:
    """Drives one intake conversation and the case it produces.

    State changes are committed only after the gateway accepted the
    corresponding writes, so a ``StoreUnavailableError`` leaves the session
    exactly as it was and the same call can be retried.
    """

    def __init__(
        self,
        engine: ConversationEngine,
        identity: Identity,
        *,
        gateway: Optional[PersistenceGateway] = None,
        session_id: Optional[str] = None,
        company: Optional[str] = None,
    ) -> None:
        self._engine = engine
        self._identity = identity
        self._gateway = gateway
        self._session_id = session_id or uuid.uuid4().hex
        self._company = company if company is not None else identity.company
        step, opening = engine.start()
        self._cursor = step.id
        self._transcript: List[Message] = [opening]
        self._seen_ids = {opening.id}
        self._choices: List[str] = []
        self._status = STATUS_OPEN
        self._close_reason: Optional[str] = None
        self._finished = False
        self._case_id: Optional[str] = None
        self._pending_case_id: Optional[str] = None
        self._pending: Optional[_PendingFinalization] = None
        self._case_request: Optional[CaseRequest] = None

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def identity(self) -> Identity:
        return self._identity

    @property
    def flow_name(self) -> str:
        return self._engine.graph.name

    @property
    def cursor(self) -> str:
        return self._cursor

    @property
    def current_step(self) -> Optional[Step]:
        if self._finished:
            return None
        return self._engine.step_for(self._cursor)

    @property
    def transcript(self) -> Tuple[Message, ...]:
        return tuple(self._transcript)

    @property
    def status(self) -> str:
        return self._status

    @property
    def close_reason(self) -> Optional[str]:
        return self._close_reason

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def case_id(self) -> Optional[str]:
        return self._case_id

    @property
    def case_request(self) -> Optional[CaseRequest]:
        return self._case_request

    def advance(self, action: SessionAction) -> Transition:
        if self._finished:
            raise SessionClosedError(f"Intake {self._session_id} is already complete")
        if self._status != STATUS_OPEN:
            raise SessionClosedError(f"Intake {self._session_id} is closed")
        pending = self._pending
        if pending is not None and pending.action == action:
            transition, choices, request = pending.transition, list(pending.choices), pending.request
        else:
            if pending is not None and self._pending_case_id:
                raise SessionClosedError(
                    f"Intake {self._session_id} is still saving case {self._pending_case_id}; "
                    "repeat the last answer"
                )
            self._pending = None
            transition, choices = self._resolve(action)
            request = None
            if transition.finished:
                request = self._build_case_request(self._transcript + list(transition.messages), choices)
        case_id: Optional[str] = None
        if transition.finished:
            # kept until every write succeeded so a retry resends the same messages
            self._pending = _PendingFinalization(action, transition, tuple(choices), request)
            case_id = self._persist_case(request)
            self._pending = None
        self._transcript = self._transcript + list(transition.messages)
        self._seen_ids.update(message.id for message in transition.messages)
        self._choices = choices
        self._cursor = transition.step_id
        if transition.finished:
            self._finished = True
            self._case_request = request
            self._case_id = case_id
        return transition

    def close(self, reason: str = "") -> None:
        if self._status != STATUS_OPEN:
            raise InvalidStatusTransitionError(self._status, STATUS_CLOSED)
        if self._case_id and self._gateway is not None:
            self._gateway.update_status(self._case_id, STATUS_CLOSED, reason=reason or None)
        self._status = STATUS_CLOSED
        self._close_reason = reason or None

    def reopen(self) -> None:
        if self._status != STATUS_CLOSED:
            raise InvalidStatusTransitionError(self._status, STATUS_OPEN)
        if self._case_id and self._gateway is not None:
            self._gateway.update_status(self._case_id, STATUS_OPEN)
        self._status = STATUS_OPEN
        self._close_reason = None

    def track_status(self, status: str, reason: Optional[str] = None) -> None:
        """Mirrors a status already written to the store by someone else."""

        if status not in STATUSES:
            raise ValueError(f"Unknown case status: {status}")
        self._status = status
        self._close_reason = reason if status == STATUS_CLOSED else None

    def post_message(self, sender: str, text: str, attachment: Optional[str] = None) -> Message:
        if self._status != STATUS_OPEN:
            raise SessionClosedError(f"Case for intake {self._session_id} is closed")
        if sender not in SENDERS:
            raise ValueError(f"Unknown sender role: {sender}")
        if text is None or not text.strip():
            raise EmptyInputError("Message text must not be empty")
        message = self._engine.message_factory.create(text, sender, attachment)
        if self._case_id and self._gateway is not None:
            self._gateway.append_message(self._case_id, message)
        self._transcript.append(message)
        self._seen_ids.add(message.id)
        return message

    def merge(self, message: Message) -> bool:
        """Adds a message delivered by the store unless it is already known."""

        if message.id in self._seen_ids:
            return False
        self._transcript.append(message)
        self._seen_ids.add(message.id)
        return True

    @property
    def last_message_id(self) -> str:
        return self._transcript[-1].id

    def sync(self, stream: Iterable[Message]) -> int:
        return sum(1 for message in stream if self.merge(message))

    def snapshot(self) -> Dict[str, Any]:
        step = self.current_step
        return {
            "session_id": self._session_id,
            "flow": self.flow_name,
            "cursor": self._cursor,
            "status": self._status,
            "finished": self._finished,
            "case_id": self._case_id,
            "close_reason": self._close_reason,
            "driver_id": self._identity.id,
            "options": list(step.options) if step else [],
            "requires_input": bool(step and step.requires_input),
            "placeholder": step.placeholder if step else None,
            "messages": [message.to_dict() for message in self._transcript],
        }

    def _resolve(self, action: SessionAction) -> Tuple[Transition, List[str]]:
        choices = list(self._choices)
        if action.kind == SessionAction.OPTION:
            transition = self._engine.select_option(self._cursor, action.value)
            choices.append(action.value)
        elif action.kind == SessionAction.INPUT:
            transition = self._engine.submit_input(self._cursor, action.value)
        else:
            raise ValueError(f"Unsupported action kind: {action.kind}")
        return transition, choices

    def _build_case_request(self, transcript: Sequence[Message], choices: Sequence[str]) -> CaseRequest:
        title = self._engine.graph.title
        if choices:
            title = f"{title} - {choices[-1]}"
        return CaseRequest(
            driver_id=self._identity.id,
            driver_name=self._identity.display_name,
            driver_email=self._identity.email,
            company=self._company,
            flow_name=self.flow_name,
            title=title,
            description=render_description(transcript),
            transcript=tuple(transcript),
        )

    def _persist_case(self, request: CaseRequest) -> Optional[str]:
        if self._gateway is None:
            return None
        case_id = self._pending_case_id or self._gateway.create_case(request)
        self._pending_case_id = case_id
        for message in request.transcript:
            self._gateway.append_message(case_id, message)
        return case_id
