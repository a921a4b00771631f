"""Conversation graphs built from declarative JSON tables."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from ..errors import GraphDefinitionError, UnknownStepError

END = "end"

DEFAULT_FLOWS_PATH = Path(__file__).resolve().parent.parent / "flows"


@dataclass(frozen=True)
class Step:
    """Immutable representation of a single step defined in JSON."""

    id: str
    message: str
    options: Tuple[str, ...]
    requires_input: bool
    placeholder: Optional[str]
    next_by_choice: Mapping[str, str]
    default_next: Optional[str]
    end: bool = False

    @property
    def awaits_action(self) -> bool:
        return bool(self.options) or self.requires_input

    @property
    def is_statement(self) -> bool:
        return not self.awaits_action and not self.end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "message": self.message,
            "options": list(self.options),
            "requires_input": self.requires_input,
            "placeholder": self.placeholder,
            "next": dict(self.next_by_choice),
            "default": self.default_next,
            "end": self.end,
        }


class ConversationGraph:
    """Read-only table of steps, validated once at construction."""

    def __init__(
        self,
        name: str,
        steps: List[Step],
        *,
        start: Optional[str] = None,
        title: Optional[str] = None,
    ) -> None:
        if not name:
            raise GraphDefinitionError("Flow is missing a name")
        if not steps:
            raise GraphDefinitionError(f"Flow '{name}' defines no steps")
        table: Dict[str, Step] = {}
        for step in steps:
            if step.id == END:
                raise GraphDefinitionError(f"Flow '{name}' uses the reserved step id '{END}'")
            if step.id in table:
                raise GraphDefinitionError(f"Flow '{name}' defines step '{step.id}' twice")
            table[step.id] = step
        self._name = name
        self._title = title or name
        self._steps: Mapping[str, Step] = MappingProxyType(table)
        self._order: Tuple[str, ...] = tuple(step.id for step in steps)
        self._start = start or self._order[0]
        self._validate()

    @property
    def name(self) -> str:
        return self._name

    @property
    def title(self) -> str:
        return self._title

    @property
    def start_step(self) -> Step:
        return self._steps[self._start]

    def lookup(self, step_id: str) -> Step:
        try:
            return self._steps[step_id]
        except KeyError:
            raise UnknownStepError(step_id) from None

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps

    def __len__(self) -> int:
        return len(self._order)

    def steps(self) -> Iterator[Step]:
        for step_id in self._order:
            yield self._steps[step_id]

    def transitions(self) -> List[Tuple[str, Optional[str], str]]:
        """Every edge as (step_id, option or None for the default, target)."""

        edges: List[Tuple[str, Optional[str], str]] = []
        for step in self.steps():
            for option in step.options:
                edges.append((step.id, option, step.next_by_choice.get(option) or step.default_next or END))
            if not step.options or step.requires_input:
                edges.append((step.id, None, step.default_next or END))
        return edges

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self._name,
            "title": self._title,
            "start": self._start,
            "steps": [step.to_dict() for step in self.steps()],
        }

    def _validate(self) -> None:
        if self._start not in self._steps:
            raise GraphDefinitionError(f"Flow '{self._name}' starts at undefined step '{self._start}'")
        for step in self.steps():
            for label, target in step.next_by_choice.items():
                if label not in step.options:
                    raise GraphDefinitionError(
                        f"Flow '{self._name}' step '{step.id}' maps undeclared option '{label}'"
                    )
                self._check_target(step, target)
            if step.default_next is not None:
                self._check_target(step, step.default_next)
            if len(set(step.options)) != len(step.options):
                raise GraphDefinitionError(f"Flow '{self._name}' step '{step.id}' repeats an option label")
        for step in self.steps():
            if step.is_statement:
                self._check_statement_chain(step)

    def _check_target(self, step: Step, target: str) -> None:
        if target != END and target not in self._steps:
            raise GraphDefinitionError(
                f"Flow '{self._name}' step '{step.id}' points at undefined step '{target}'"
            )

    def _check_statement_chain(self, origin: Step) -> None:
        seen = {origin.id}
        cursor = origin.default_next
        while cursor and cursor != END:
            step = self._steps[cursor]
            if not step.is_statement:
                return
            if cursor in seen:
                raise GraphDefinitionError(
                    f"Flow '{self._name}' loops through statement steps starting at '{origin.id}'"
                )
            seen.add(cursor)
            cursor = step.default_next


def _step_from_payload(flow_name: str, payload: Dict[str, Any]) -> Step:
    step_id = payload.get("id")
    if not step_id:
        raise GraphDefinitionError(f"Flow '{flow_name}' has a step without an id")
    next_field = payload.get("next")
    default_next = payload.get("default")
    if isinstance(next_field, dict):
        next_by_choice = {str(k): str(v) for k, v in next_field.items()}
    else:
        next_by_choice = {}
        if next_field:
            if default_next:
                raise GraphDefinitionError(
                    f"Flow '{flow_name}' step '{step_id}' sets both a plain 'next' and 'default'"
                )
            default_next = next_field
    return Step(
        id=str(step_id),
        message=str(payload.get("message", "")),
        options=tuple(str(option) for option in payload.get("options", [])),
        requires_input=bool(payload.get("requires_input", False)),
        placeholder=payload.get("placeholder"),
        next_by_choice=MappingProxyType(next_by_choice),
        default_next=str(default_next) if default_next else None,
        end=bool(payload.get("end", False)),
    )


def graph_from_payload(payload: Dict[str, Any]) -> ConversationGraph:
    name = payload.get("name")
    if not name:
        raise GraphDefinitionError("Flow is missing a name")
    steps = [_step_from_payload(name, step) for step in payload.get("steps", [])]
    return ConversationGraph(name, steps, start=payload.get("start"), title=payload.get("title"))


def load_graph(json_path: Path) -> ConversationGraph:
    with Path(json_path).open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    try:
        return graph_from_payload(payload)
    except GraphDefinitionError as exc:
        raise GraphDefinitionError(f"{json_path}: {exc}") from None


class FlowCatalog:
    """Loads every ``*_flow.json`` table in a directory once."""

    def __init__(self, flows_path: Optional[Path] = None) -> None:
        self._flows_path = Path(flows_path) if flows_path else DEFAULT_FLOWS_PATH
        self._graphs = self._load_definitions()

    def _load_definitions(self) -> Dict[str, ConversationGraph]:
        graphs: Dict[str, ConversationGraph] = {}
        for json_path in sorted(self._flows_path.glob("*_flow.json")):
            graph = load_graph(json_path)
            if graph.name in graphs:
                raise GraphDefinitionError(f"Flow '{graph.name}' is defined twice ({json_path})")
            graphs[graph.name] = graph
        return graphs

    def get(self, name: str) -> ConversationGraph:
        if name not in self._graphs:
            raise KeyError(f"Flow '{name}' is not defined")
        return self._graphs[name]

    def names(self) -> List[str]:
        return sorted(self._graphs)

    def __iter__(self) -> Iterator[ConversationGraph]:
        for name in self.names():
            yield self._graphs[name]
