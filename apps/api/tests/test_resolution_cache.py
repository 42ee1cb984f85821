from __future__ import annotations

from boardsync.boards.cache import ResolutionCache, cache_key
from boardsync.boards.types import BoardMapping


class _Clock:
  def __init__(self) -> None:
    self.now = 1000.0

  def __call__(self) -> float:
    return self.now


def _mapping(board_id: str = "mural-1") -> BoardMapping:
  return BoardMapping(project_ref="p1", user_ref="u1", purpose="reflexive_journal", board_id=board_id)


def test_cache_key_uses_empty_user_for_anonymous_lookups() -> None:
  assert cache_key("p1", None, "reflexive_journal") == "p1··reflexive_journal"
  assert cache_key("p1", "u1", "reflexive_journal") == "p1·u1·reflexive_journal"


def test_entries_expire_after_ttl() -> None:
  clock = _Clock()
  cache = ResolutionCache(ttl_seconds=60, clock=clock)
  cache.set("p1", "u1", "reflexive_journal", _mapping())

  clock.now += 59
  assert cache.get("p1", "u1", "reflexive_journal").board_id == "mural-1"

  clock.now += 2
  assert cache.get("p1", "u1", "reflexive_journal") is None
  assert len(cache) == 0


def test_tombstone_reads_as_miss_until_overwritten() -> None:
  clock = _Clock()
  cache = ResolutionCache(ttl_seconds=60, clock=clock)
  cache.set("p1", "u1", "reflexive_journal", _mapping())
  cache.tombstone("p1", "u1", "reflexive_journal")

  assert cache.get("p1", "u1", "reflexive_journal") is None
  assert cache.is_tombstoned("p1", "u1", "reflexive_journal")

  cache.set("p1", "u1", "reflexive_journal", _mapping("mural-2"))
  assert not cache.is_tombstoned("p1", "u1", "reflexive_journal")
  assert cache.get("p1", "u1", "reflexive_journal").board_id == "mural-2"


def test_invalidate_only_touches_one_key() -> None:
  cache = ResolutionCache(ttl_seconds=60)
  cache.set("p1", "u1", "reflexive_journal", _mapping("a"))
  cache.set("p1", "u2", "reflexive_journal", _mapping("b"))
  cache.invalidate("p1", "u1", "reflexive_journal")
  assert cache.get("p1", "u1", "reflexive_journal") is None
  assert cache.get("p1", "u2", "reflexive_journal").board_id == "b"
