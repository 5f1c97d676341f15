"""HTTP mailer posting send requests to an SMTP gateway."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..contracts import SendRequest
from .base import BaseMailer

logger = logging.getLogger(__name__)


class HttpMailer(BaseMailer):
    """POST each send request as JSON to a gateway endpoint."""

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.token = token
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def connect(self) -> None:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        self._client = httpx.AsyncClient(
            headers=headers, timeout=self.timeout, transport=self._transport
        )

    async def disconnect(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send(self, request: SendRequest) -> None:
        if not self._client:
            await self.connect()
        response = await self._client.post(
            self.url, content=request.to_json().encode("utf-8")
        )
        response.raise_for_status()
        logger.debug(
            f"Gateway accepted {request.kind} {request.message_id} "
            f"({response.status_code})"
        )
