"""Data transfer objects for intake messages, identities and cases."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

SENDER_SYSTEM = "system"
SENDER_DRIVER = "driver"
SENDER_ADMIN = "admin"
SENDERS = frozenset({SENDER_SYSTEM, SENDER_DRIVER, SENDER_ADMIN})

STATUS_OPEN = "open"
STATUS_CLOSED = "closed"
STATUSES = frozenset({STATUS_OPEN, STATUS_CLOSED})

ROLE_DRIVER = "driver"
ROLE_ADMIN = "admin"
ROLES = frozenset({ROLE_DRIVER, ROLE_ADMIN})


@dataclass(frozen=True)
class Message:
    id: str
    text: str
    sender: str
    created_at: str
    attachment: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "sender": self.sender,
            "created_at": self.created_at,
            "attachment": self.attachment,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Message":
        return cls(
            id=str(payload["id"]),
            text=str(payload.get("text", "")),
            sender=str(payload.get("sender", SENDER_SYSTEM)),
            created_at=str(payload.get("created_at", "")),
            attachment=payload.get("attachment"),
        )


@dataclass(frozen=True)
class Identity:
    """Who is acting; passed explicitly into every session."""

    id: str
    role: str
    email: str = ""
    name: str = ""
    company: str = ""

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.email:
            return self.email.split("@")[0]
        return self.id


@dataclass(frozen=True)
class CaseRequest:
    """Everything the store needs to open a case for a finished intake."""

    driver_id: str
    driver_name: str
    driver_email: str
    company: str
    flow_name: str
    title: str
    description: str
    status: str = STATUS_OPEN
    transcript: Tuple[Message, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "driver_id": self.driver_id,
            "driver_name": self.driver_name,
            "driver_email": self.driver_email,
            "company": self.company,
            "flow_name": self.flow_name,
            "title": self.title,
            "description": self.description,
            "status": self.status,
        }
