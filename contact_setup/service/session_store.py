"""
Session storage for installation attempts.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, Optional, Protocol, Tuple

from redis import Redis
from redis.exceptions import RedisError

from ..shared.config import InstallerSettings
from .models import InstallationSession

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    """Keyed persistence for ``InstallationSession`` values."""

    def load(self, token: str) -> Optional[InstallationSession]:
        ...

    def save(self, token: str, session: InstallationSession) -> None:
        ...

    def delete(self, token: str) -> None:
        ...

    def ping(self) -> Tuple[bool, str]:
        ...


class RedisSessionStore:
    """Persist installation sessions in Redis with an idle TTL."""

    def __init__(self, redis: Redis, namespace: str = "contact_setup:sessions", ttl_seconds: int = 7200) -> None:
        self._redis = redis
        self._namespace = namespace
        self._ttl = ttl_seconds

    def _key(self, token: str) -> str:
        return f"{self._namespace}:{token}"

    def save(self, token: str, session: InstallationSession) -> None:
        self._redis.setex(self._key(token), self._ttl, session.model_dump_json())

    def load(self, token: str) -> Optional[InstallationSession]:
        data = self._redis.get(self._key(token))
        if not data:
            return None
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        return InstallationSession.model_validate_json(data)

    def delete(self, token: str) -> None:
        self._redis.delete(self._key(token))

    def ping(self) -> Tuple[bool, str]:
        try:
            self._redis.ping()
        except RedisError as exc:
            return False, f"Redis unreachable: {exc}"
        return True, "Redis connection healthy"


class InMemorySessionStore:
    """Process-local store for tests and single-process deployments."""

    def __init__(self, ttl_seconds: int = 7200) -> None:
        self._ttl = ttl_seconds
        self._sessions: Dict[str, Tuple[float, str]] = {}

    def save(self, token: str, session: InstallationSession) -> None:
        self._sessions[token] = (time.monotonic() + self._ttl, session.model_dump_json())

    def load(self, token: str) -> Optional[InstallationSession]:
        entry = self._sessions.get(token)
        if entry is None:
            return None
        expires_at, data = entry
        if time.monotonic() >= expires_at:
            del self._sessions[token]
            return None
        return InstallationSession.model_validate_json(data)

    def delete(self, token: str) -> None:
        self._sessions.pop(token, None)

    def ping(self) -> Tuple[bool, str]:
        return True, f"In-memory store ({len(self._sessions)} sessions)"


def create_session_store(settings: InstallerSettings) -> SessionStore:
    """Redis when ``redis_url`` is configured, otherwise process memory."""
    if settings.redis_url:
        logger.info("Using Redis session store")
        return RedisSessionStore(Redis.from_url(settings.redis_url), ttl_seconds=settings.session_ttl_seconds)
    logger.warning("No redis_url configured; installation sessions are kept in process memory")
    return InMemorySessionStore(ttl_seconds=settings.session_ttl_seconds)
