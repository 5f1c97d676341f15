"""Mailer factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowmailConfig, load_config
from .base import BaseMailer
from .inmemory import InMemoryMailer


def get_mailer(
    backend: Optional[str] = None, config: Optional[FlowmailConfig] = None
) -> BaseMailer:
    """Factory function to get the configured mailer."""

    config = config or load_config()
    backend = (
        backend or os.getenv("FLOWMAIL_MAILER") or config.mailer.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryMailer()
    elif backend == "redis":
        from .redis import RedisMailer

        redis_conf = config.mailer.redis
        return RedisMailer(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            queue=redis_conf.queue,
        )
    elif backend == "http":
        from .http import HttpMailer

        http_conf = config.mailer.http
        return HttpMailer(
            url=http_conf.url, token=http_conf.token, timeout=http_conf.timeout
        )
    else:
        raise ValueError(f"Unsupported mailer backend: {backend}")


__all__ = ["BaseMailer", "InMemoryMailer", "get_mailer"]
