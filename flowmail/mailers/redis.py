"""Redis outbox mailer for handing messages to a separate delivery worker."""

from __future__ import annotations

import logging
from typing import Any, Optional

import redis.asyncio as redis

from ..contracts import SendRequest
from .base import BaseMailer

logger = logging.getLogger(__name__)


class RedisMailer(BaseMailer):
    """Push send requests onto a Redis list acting as an outbox queue."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        queue: str = "flowmail:outbox",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.queue = queue
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def send(self, request: SendRequest) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self.queue, request.to_json())
        logger.debug(f"Queued {request.kind} {request.message_id} on {self.queue}")
