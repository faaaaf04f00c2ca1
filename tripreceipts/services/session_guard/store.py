"""Server-side session storage.

Redis-backed when `REDIS_URL` is configured; otherwise an in-memory store
with the same interface is used (single-process development and tests).
"""

import time
from datetime import datetime

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

from tripreceipts.common.errors import StoreError


class ServerSession(BaseModel):
    """What the server remembers about one browser session."""

    session_id: str
    csrf_token: str
    created_at: datetime


class InMemorySessionStore:
    def __init__(self) -> None:
        # session_id -> (monotonic expiry, session)
        self._sessions: dict[str, tuple[float, ServerSession]] = {}

    async def get(self, session_id: str) -> ServerSession | None:
        entry = self._sessions.get(session_id)
        if entry is None:
            return None
        expires_at, session = entry
        if time.monotonic() >= expires_at:
            self._sessions.pop(session_id, None)
            return None
        return session

    async def put(self, session: ServerSession, ttl_seconds: int) -> None:
        self._sessions[session.session_id] = (time.monotonic() + ttl_seconds, session)

    async def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None


class RedisSessionStore:
    """Sessions as JSON strings under `session:<id>` with a TTL."""

    def __init__(self, url: str, key_prefix: str = "session:") -> None:
        self._client = aioredis.Redis.from_url(url, decode_responses=True)
        self._key_prefix = key_prefix

    def _key(self, session_id: str) -> str:
        return f"{self._key_prefix}{session_id}"

    async def get(self, session_id: str) -> ServerSession | None:
        try:
            raw = await self._client.get(self._key(session_id))
        except RedisError as exc:
            raise StoreError(f"session store unavailable: {exc}") from exc
        if not raw:
            return None
        return ServerSession.model_validate_json(raw)

    async def put(self, session: ServerSession, ttl_seconds: int) -> None:
        try:
            await self._client.setex(self._key(session.session_id), ttl_seconds, session.model_dump_json())
        except RedisError as exc:
            raise StoreError(f"session store unavailable: {exc}") from exc

    async def delete(self, session_id: str) -> bool:
        try:
            return bool(await self._client.delete(self._key(session_id)))
        except RedisError as exc:
            raise StoreError(f"session store unavailable: {exc}") from exc

    async def close(self) -> None:
        await self._client.aclose()


def build_session_store(redis_url: str | None):
    if redis_url:
        return RedisSessionStore(redis_url)
    return InMemorySessionStore()
