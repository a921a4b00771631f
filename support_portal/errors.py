"""Exceptions raised by the intake core and its collaborators."""

from __future__ import annotations


class SupportPortalError(Exception):
    """Base class for every error raised by the support portal."""


class GraphDefinitionError(SupportPortalError, ValueError):
    """A conversation table failed validation while it was being loaded."""


class UnknownStepError(SupportPortalError, KeyError):
    """The requested step is not defined in the conversation graph."""

    def __init__(self, step_id: str) -> None:
        super().__init__(step_id)
        self.step_id = step_id

    def __str__(self) -> str:
        return f"Step '{self.step_id}' is not defined"


class InvalidOptionError(SupportPortalError, ValueError):
    """The chosen option is not declared on the current step."""

    def __init__(self, step_id: str, option: str) -> None:
        super().__init__(f"Option '{option}' is not available on step '{step_id}'")
        self.step_id = step_id
        self.option = option


class InputNotExpectedError(SupportPortalError):
    """Free text was submitted to a step that does not take it."""

    def __init__(self, step_id: str) -> None:
        super().__init__(f"Step '{step_id}' does not accept free-text input")
        self.step_id = step_id


class EmptyInputError(SupportPortalError, ValueError):
    """Free text was empty or whitespace only."""


class SessionClosedError(SupportPortalError):
    """The session no longer accepts this action."""


class InvalidStatusTransitionError(SupportPortalError):
    """A status change other than open->closed or closed->open was requested."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot move case from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class SessionNotFoundError(SupportPortalError, KeyError):
    """No live intake session is registered under the identifier."""


class IdentityError(SupportPortalError):
    """The caller identity is missing or malformed."""


class StoreUnavailableError(SupportPortalError):
    """The persistence gateway could not complete the request."""


class CaseNotFoundError(SupportPortalError, KeyError):
    """The persistence gateway does not know the case."""


class AccessDeniedError(SupportPortalError):
    """The caller's role may not perform this action."""
