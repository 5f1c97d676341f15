"""Exception types raised by the automation engine."""

from __future__ import annotations


class FlowmailError(Exception):
    """Base class for engine errors."""


class DefinitionError(FlowmailError):
    """The automation definition cannot be executed as written.

    Retrying cannot fix a static definition, so a run hitting this error is
    failed immediately.
    """


class StepLimitExceededError(DefinitionError):
    """A run visited more steps than allowed, usually because of a cycle."""


class ContactNotFoundError(FlowmailError):
    """The contact a run belongs to no longer exists."""


class AutomationNotFoundError(FlowmailError):
    """No automation with the given id exists in the workspace."""


class RunNotFoundError(FlowmailError):
    """No run with the given id exists in the workspace."""


TERMINAL_ERRORS: tuple[type[Exception], ...] = (DefinitionError, ContactNotFoundError)


class ClaimLostError(FlowmailError):
    """The queue item was requeued or finished after this worker claimed it."""
