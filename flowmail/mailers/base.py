"""Base mailer interface for outbound email and notifications."""

from __future__ import annotations

import abc

from ..contracts import SendRequest


class BaseMailer(metaclass=abc.ABCMeta):
    """Abstract base for mail dispatch backends."""

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def send(self, request: SendRequest) -> None:
        """Hand a message over for delivery.

        Raising from here is treated as a transient failure by the executor
        and the step is retried.
        """
        raise NotImplementedError
