from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Mapping, Optional, Union

import redis.asyncio as redis

from .models import DraftKey, DurableKey

Key = Union[DraftKey, DurableKey, str]


def _k(key: Key) -> str:
    return key.value if isinstance(key, Enum) else str(key)


class SessionStore(ABC):
    """Key/value state owned by one browser tab (draft) or one client (durable)."""

    @abstractmethod
    async def get(self, key: Key) -> Optional[str]: ...

    @abstractmethod
    async def set_many(self, values: Mapping[Key, str]) -> None:
        """Writes all values in one step."""

    @abstractmethod
    async def delete(self, *keys: Key) -> None:
        """Removes all keys in one step."""

    @abstractmethod
    async def clear(self) -> None: ...

    @abstractmethod
    async def snapshot(self) -> Dict[str, str]: ...

    async def set(self, key: Key, value: str) -> None:
        await self.set_many({key: value})


class RedisStore(SessionStore):
    def __init__(self, r: redis.Redis, name: str, ttl_sec: Optional[int] = None):
        self.r = r
        self.name = name
        self.ttl = ttl_sec

    async def get(self, key: Key) -> Optional[str]:
        return await self.r.hget(self.name, _k(key))

    async def set_many(self, values: Mapping[Key, str]) -> None:
        if not values:
            return
        mapping = {_k(k): str(v) for k, v in values.items()}
        async with self.r.pipeline(transaction=True) as pipe:
            pipe.hset(self.name, mapping=mapping)
            if self.ttl:
                pipe.expire(self.name, self.ttl)
            await pipe.execute()

    async def delete(self, *keys: Key) -> None:
        if keys:
            await self.r.hdel(self.name, *[_k(k) for k in keys])

    async def clear(self) -> None:
        await self.r.delete(self.name)

    async def snapshot(self) -> Dict[str, str]:
        return await self.r.hgetall(self.name)


class RedisRepo:
    def __init__(self, host: str, port: int, draft_ttl_sec: int, client: Optional[redis.Redis] = None):
        self.r = client or redis.Redis(host=host, port=port, decode_responses=True)
        self.ttl = draft_ttl_sec

    def draft(self, tab_id: str) -> RedisStore:
        return RedisStore(self.r, f"draft:{tab_id}", self.ttl)

    def durable(self, client_id: str) -> RedisStore:
        return RedisStore(self.r, f"session:{client_id}")

    async def close(self) -> None:
        await self.r.aclose()


class MemoryStore(SessionStore):
    def __init__(self, initial: Optional[Mapping[Key, str]] = None):
        self.values: Dict[str, str] = {_k(k): v for k, v in (initial or {}).items()}

    async def get(self, key: Key) -> Optional[str]:
        return self.values.get(_k(key))

    async def set_many(self, values: Mapping[Key, str]) -> None:
        self.values.update({_k(k): str(v) for k, v in values.items()})

    async def delete(self, *keys: Key) -> None:
        for k in keys:
            self.values.pop(_k(k), None)

    async def clear(self) -> None:
        self.values.clear()

    async def snapshot(self) -> Dict[str, str]:
        return dict(self.values)


class MemoryRepo:
    def __init__(self):
        self.drafts: Dict[str, MemoryStore] = {}
        self.sessions: Dict[str, MemoryStore] = {}

    def draft(self, tab_id: str) -> MemoryStore:
        return self.drafts.setdefault(tab_id, MemoryStore())

    def durable(self, client_id: str) -> MemoryStore:
        return self.sessions.setdefault(client_id, MemoryStore())

    async def close(self) -> None:
        return None
