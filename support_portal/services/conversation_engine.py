"""Conversation engine that walks a graph one driver action at a time."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from ..errors import EmptyInputError, InputNotExpectedError, InvalidOptionError
from ..models import SENDER_DRIVER, SENDER_SYSTEM, Message
from .conversation_graph import END, ConversationGraph, Step


def iso_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


class MessageFactory:
    """Stamps new messages with an identifier and creation time."""

    def __init__(
        self,
        *,
        id_factory: Optional[Callable[[], str]] = None,
        clock: Optional[Callable[[], str]] = None,
    ) -> None:
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._clock = clock or iso_now

    def create(self, text: str, sender: str, attachment: Optional[str] = None) -> Message:
        return Message(
            id=self._id_factory(),
            text=text,
            sender=sender,
            created_at=self._clock(),
            attachment=attachment,
        )


@dataclass(frozen=True)
class Transition:
    """Outcome of one driver action."""

    step_id: str
    messages: Tuple[Message, ...]
    finished: bool
    step: Optional[Step]


class ConversationEngine:
    """Pure transitions over a conversation graph.

    The engine keeps no per-conversation state: the caller hands in the
    current step identifier and receives the new one with the messages the
    action produced.
    """

    def __init__(self, graph: ConversationGraph, *, message_factory: Optional[MessageFactory] = None) -> None:
        self._graph = graph
        self._messages = message_factory or MessageFactory()

    @property
    def graph(self) -> ConversationGraph:
        return self._graph

    @property
    def message_factory(self) -> MessageFactory:
        return self._messages

    def start(self) -> Tuple[Step, Message]:
        step = self._graph.start_step
        return step, self._messages.create(step.message, SENDER_SYSTEM)

    def select_option(self, current_step_id: str, option: str) -> Transition:
        step = self._graph.lookup(current_step_id)
        if option not in step.options:
            raise InvalidOptionError(step.id, option)
        echo = self._messages.create(option, SENDER_DRIVER)
        next_step_id = step.next_by_choice.get(option) or step.default_next or END
        return self._advance(next_step_id, [echo])

    def submit_input(self, current_step_id: str, text: str) -> Transition:
        step = self._graph.lookup(current_step_id)
        if not step.requires_input:
            raise InputNotExpectedError(step.id)
        if text is None or not text.strip():
            raise EmptyInputError(f"Step '{step.id}' needs a non-empty answer")
        echo = self._messages.create(text, SENDER_DRIVER)
        return self._advance(step.default_next or END, [echo])

    def step_for(self, step_id: str) -> Optional[Step]:
        if step_id == END:
            return None
        return self._graph.lookup(step_id)

    def _advance(self, step_id: str, messages: List[Message]) -> Transition:
        cursor_id = step_id
        while cursor_id != END:
            step = self._graph.lookup(cursor_id)
            messages.append(self._messages.create(step.message, SENDER_SYSTEM))
            if step.end:
                return Transition(step.id, tuple(messages), True, step)
            if step.awaits_action:
                return Transition(step.id, tuple(messages), False, step)
            cursor_id = step.default_next or END
        return Transition(END, tuple(messages), True, None)
