from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from time import monotonic
from typing import Callable

from boardsync.boards.types import BoardMapping


def cache_key(project_ref: str, user_ref: str | None, purpose: str) -> str:
  return f"{project_ref}·{user_ref or ''}·{purpose}"


@dataclass
class _Entry:
  mapping: BoardMapping | None
  deleted: bool
  ts: float


class ResolutionCache:
  """
  In-process resolution cache keyed by (project, user, purpose).

  Notes:
  - One instance per process, owned by `app.state`; never import a global.
  - A tombstoned entry records that the mapping went stale. `get` treats it as
    a miss, so resolution falls through to the next source.
  - Losing the cache only costs extra remote lookups.
  """

  def __init__(self, *, ttl_seconds: float = 60.0, clock: Callable[[], float] = monotonic) -> None:
    self.ttl_seconds = float(ttl_seconds)
    self._clock = clock
    self._lock = Lock()
    self._entries: dict[str, _Entry] = {}

  def _fresh(self, entry: _Entry) -> bool:
    return (self._clock() - entry.ts) < self.ttl_seconds

  def get(self, project_ref: str, user_ref: str | None, purpose: str) -> BoardMapping | None:
    key = cache_key(project_ref, user_ref, purpose)
    with self._lock:
      entry = self._entries.get(key)
      if entry is None:
        return None
      if not self._fresh(entry):
        self._entries.pop(key, None)
        return None
      if entry.deleted or entry.mapping is None:
        return None
      return entry.mapping

  def is_tombstoned(self, project_ref: str, user_ref: str | None, purpose: str) -> bool:
    with self._lock:
      entry = self._entries.get(cache_key(project_ref, user_ref, purpose))
      return bool(entry and entry.deleted and self._fresh(entry))

  def set(self, project_ref: str, user_ref: str | None, purpose: str, mapping: BoardMapping) -> None:
    with self._lock:
      self._entries[cache_key(project_ref, user_ref, purpose)] = _Entry(mapping=mapping, deleted=False, ts=self._clock())

  def invalidate(self, project_ref: str, user_ref: str | None, purpose: str) -> None:
    with self._lock:
      self._entries.pop(cache_key(project_ref, user_ref, purpose), None)

  def tombstone(self, project_ref: str, user_ref: str | None, purpose: str) -> None:
    with self._lock:
      self._entries[cache_key(project_ref, user_ref, purpose)] = _Entry(mapping=None, deleted=True, ts=self._clock())

  def clear(self) -> None:
    with self._lock:
      self._entries.clear()

  def __len__(self) -> int:
    with self._lock:
      return len(self._entries)
