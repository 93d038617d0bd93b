"""Pending user authorizations, kept in Redis until the provider sends the user back."""

import json

import redis
from pydantic import BaseModel

from onetouch.services.orchestrator.schemas import OrderContext


class PendingAuthorization(BaseModel):
    key: str
    device_id: str
    order: OrderContext


class AuthSessionStore:
    """Redis-backed store keyed by the authorization key sent to `api/start`."""

    def __init__(self, rdb: redis.Redis, ttl_seconds: int) -> None:
        self.rdb = rdb
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int) -> "AuthSessionStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), ttl_seconds)

    @staticmethod
    def _redis_key(key: str) -> str:
        return f"onetouch:auth:{key}"

    def save(self, pending: PendingAuthorization) -> None:
        self.rdb.setex(self._redis_key(pending.key), self.ttl_seconds, pending.model_dump_json())

    def pop(self, key: str) -> PendingAuthorization | None:
        """Return and forget a pending authorization; each key is usable once."""

        redis_key = self._redis_key(key)
        raw = self.rdb.get(redis_key)
        if raw is None:
            return None
        # Only the caller whose delete succeeded may continue.
        if not self.rdb.delete(redis_key):
            return None
        return PendingAuthorization.model_validate(json.loads(raw))
