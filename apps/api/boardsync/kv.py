from __future__ import annotations

import logging
from threading import Lock
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from boardsync.config import settings
from boardsync.models import KvEntry

try:
  import redis.asyncio as aioredis
except Exception:  # pragma: no cover
  aioredis = None

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
  async def get(self, key: str) -> str | None: ...

  async def put(self, key: str, value: str) -> None: ...

  async def delete(self, key: str) -> None: ...


class SqlKeyValueStore:
  """KV entries in the `kv_entries` table, sharing the request's session."""

  def __init__(self, db: AsyncSession) -> None:
    self._db = db

  async def get(self, key: str) -> str | None:
    res = await self._db.execute(select(KvEntry.value).where(KvEntry.key == key))
    return res.scalar_one_or_none()

  async def put(self, key: str, value: str) -> None:
    res = await self._db.execute(select(KvEntry).where(KvEntry.key == key))
    row = res.scalar_one_or_none()
    if row is None:
      self._db.add(KvEntry(key=key, value=value))
    else:
      row.value = value
    await self._db.commit()

  async def delete(self, key: str) -> None:
    await self._db.execute(delete(KvEntry).where(KvEntry.key == key))
    await self._db.commit()


class RedisKeyValueStore:
  def __init__(self, url: str) -> None:
    if aioredis is None:
      raise RuntimeError("redis package is not installed; set KV_BACKEND=sql")
    self._redis = aioredis.Redis.from_url(url, decode_responses=True)

  async def get(self, key: str) -> str | None:
    return await self._redis.get(key)

  async def put(self, key: str, value: str) -> None:
    await self._redis.set(key, value)

  async def delete(self, key: str) -> None:
    await self._redis.delete(key)


class MemoryKeyValueStore:
  """
  Process-local store.

  Notes:
  - Fine for tests and single-process development.
  - Tokens and side-cache entries are lost on restart.
  """

  def __init__(self) -> None:
    self._lock = Lock()
    self._data: dict[str, str] = {}

  async def get(self, key: str) -> str | None:
    with self._lock:
      return self._data.get(key)

  async def put(self, key: str, value: str) -> None:
    with self._lock:
      self._data[key] = value

  async def delete(self, key: str) -> None:
    with self._lock:
      self._data.pop(key, None)


_redis_store: RedisKeyValueStore | None = None
_memory_store: MemoryKeyValueStore | None = None


def build_kv_store(db: AsyncSession) -> KeyValueStore:
  global _redis_store, _memory_store
  backend = (settings.kv_backend or "sql").strip().lower()
  if backend == "redis" and settings.redis_url:
    if _redis_store is None:
      _redis_store = RedisKeyValueStore(settings.redis_url)
    return _redis_store
  if backend == "memory":
    if _memory_store is None:
      logger.warning("kv.memory backend in use; Mural tokens will not survive a restart")
      _memory_store = MemoryKeyValueStore()
    return _memory_store
  return SqlKeyValueStore(db)
