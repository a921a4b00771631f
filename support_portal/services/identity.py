"""Identity providers resolving who is calling the portal."""

from __future__ import annotations

from typing import Mapping, Protocol

from ..errors import IdentityError
from ..models import ROLES, Identity


class IdentityProvider(Protocol):
    def current_user(self) -> Identity:
        ...


class StaticIdentityProvider:
    """Always answers with the same identity."""

    def __init__(self, identity: Identity) -> None:
        self._identity = identity

    def current_user(self) -> Identity:
        return self._identity


class HeaderIdentityProvider:
    """Reads the caller identity forwarded by the fronting login layer."""

    ID_HEADER = "X-User-Id"
    ROLE_HEADER = "X-User-Role"
    EMAIL_HEADER = "X-User-Email"
    NAME_HEADER = "X-User-Name"
    COMPANY_HEADER = "X-User-Company"

    def __init__(self, headers: Mapping[str, str], *, default_company: str = "") -> None:
        self._headers = headers
        self._default_company = default_company

    def current_user(self) -> Identity:
        user_id = (self._headers.get(self.ID_HEADER) or "").strip()
        if not user_id:
            raise IdentityError(f"Missing {self.ID_HEADER} header")
        role = (self._headers.get(self.ROLE_HEADER) or "").strip().lower()
        if role not in ROLES:
            raise IdentityError(f"Unsupported role '{role}'")
        return Identity(
            id=user_id,
            role=role,
            email=(self._headers.get(self.EMAIL_HEADER) or "").strip(),
            name=(self._headers.get(self.NAME_HEADER) or "").strip(),
            company=(self._headers.get(self.COMPANY_HEADER) or "").strip() or self._default_company,
        )
