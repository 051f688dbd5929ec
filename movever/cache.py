"""Keyed stores with per-entry time-to-live.

One-time codes and their cooldown markers live behind the `KeyStore`
interface so the backing store (process memory, a database table, Redis)
can be swapped without touching code issuance logic.
"""
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol, Tuple

from redis.asyncio import Redis
from sqlalchemy import select, delete, insert, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from . import models

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KeyStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def put(self, key: str, value: str, ttl: float) -> None: ...

    async def put_if_absent(self, key: str, value: str, ttl: float) -> bool: ...

    async def delete(self, key: str) -> None: ...


class MemoryKeyStore:
    """In-process store. Entries expire lazily against the injected clock."""

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock
        self._data: Dict[str, Tuple[str, datetime]] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self.clock():
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def put(self, key: str, value: str, ttl: float) -> None:
        self._data[key] = (value, self.clock() + timedelta(seconds=ttl))

    async def put_if_absent(self, key: str, value: str, ttl: float) -> bool:
        # no await between check and write, so this is atomic on the event loop
        if self._live(key) is not None:
            return False
        self._data[key] = (value, self.clock() + timedelta(seconds=ttl))
        return True

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class RedisKeyStore:
    def __init__(self, client: Redis):
        self.client = client

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def put(self, key: str, value: str, ttl: float) -> None:
        await self.client.set(key, value, ex=max(1, math.ceil(ttl)))

    async def put_if_absent(self, key: str, value: str, ttl: float) -> bool:
        # SET NX EX: the existence check and write happen in one command
        ok = await self.client.set(key, value, ex=max(1, math.ceil(ttl)), nx=True)
        return bool(ok)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)


class TableKeyStore:
    """Store backed by the `key_values` table. Timestamps are naive UTC."""

    def __init__(self, engine: AsyncEngine, clock: Clock = utcnow):
        self.engine = engine
        self.clock = clock

    def _now(self) -> datetime:
        return self.clock().astimezone(timezone.utc).replace(tzinfo=None)

    async def get(self, key: str) -> Optional[str]:
        kv = models.key_values
        sel = select(kv.c.value).where(and_(kv.c.key == key, kv.c.expires_at > self._now()))
        async with self.engine.connect() as conn:
            res = await conn.execute(sel)
            return res.scalar_one_or_none()

    async def put(self, key: str, value: str, ttl: float) -> None:
        kv = models.key_values
        now = self._now()
        async with self.engine.begin() as conn:
            await conn.execute(delete(kv).where(kv.c.key == key))
            await conn.execute(insert(kv).values(key=key, value=value, expires_at=now + timedelta(seconds=ttl)))

    async def put_if_absent(self, key: str, value: str, ttl: float) -> bool:
        kv = models.key_values
        now = self._now()
        try:
            async with self.engine.begin() as conn:
                await conn.execute(delete(kv).where(and_(kv.c.key == key, kv.c.expires_at <= now)))
                await conn.execute(insert(kv).values(key=key, value=value, expires_at=now + timedelta(seconds=ttl)))
        except IntegrityError:
            return False
        return True

    async def delete(self, key: str) -> None:
        kv = models.key_values
        async with self.engine.begin() as conn:
            await conn.execute(delete(kv).where(kv.c.key == key))


def create_redis(url: str) -> Redis:
    return Redis.from_url(url, decode_responses=True)


async def ping(client: Redis) -> bool:
    try:
        return await client.ping()
    except Exception:
        return False
