"""In-memory mailer for testing."""

from __future__ import annotations

import asyncio
from typing import List

from ..contracts import SendRequest
from .base import BaseMailer


class InMemoryMailer(BaseMailer):
    """Collects sent messages in a list instead of delivering them."""

    def __init__(self) -> None:
        self.sent: List[SendRequest] = []
        self._lock = asyncio.Lock()

    async def send(self, request: SendRequest) -> None:
        async with self._lock:
            self.sent.append(request)

    def sent_to(self, email: str) -> List[SendRequest]:
        return [r for r in self.sent if r.to_email == email]
