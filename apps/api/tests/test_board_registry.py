from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from boardsync.boards.cache import ResolutionCache
from boardsync.boards.registry import BoardRegistry, side_cache_key
from boardsync.boards.tokens import TokenStore
from boardsync.boards.types import BoardMapping
from boardsync.kv import MemoryKeyValueStore
from boardsync.mural.client import MuralAuth, MuralOAuthApp

from fake_mural import FakeMural
from fakes import FakeMappingStore, seed_tokens

PURPOSE = "reflexive_journal"
T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _registry(
  mural: FakeMural,
  store: FakeMappingStore | None,
  kv: MemoryKeyValueStore,
  *,
  validate: bool = True,
  fallback: str | None = None,
  cache: ResolutionCache | None = None,
) -> BoardRegistry:
  transport = mural.transport()
  app = MuralOAuthApp(client_id="c", client_secret="s", redirect_uri="http://localhost/cb", transport=transport)
  return BoardRegistry(
    cache=cache or ResolutionCache(ttl_seconds=60),
    store=store,
    kv=kv,
    tokens=TokenStore(kv, app),
    mural_auth=lambda token: MuralAuth(token=token, transport=transport),
    validate_liveness=validate,
    fallback_board_id=fallback,
  )


def _row(board_id: str, *, primary: bool = False, age_days: int = 0, user: str = "u1", project: str = "p1") -> BoardMapping:
  return BoardMapping(
    project_ref=project,
    user_ref=user,
    purpose=PURPOSE,
    board_id=board_id,
    is_primary=primary,
    created_at=T0 - timedelta(days=age_days),
  )


@pytest.mark.anyio
async def test_explicit_board_id_short_circuits(mural: FakeMural, store: FakeMappingStore) -> None:
  store.add(_row("mural-stored", primary=True))
  reg = _registry(mural, store, MemoryKeyValueStore())
  m = await reg.resolve("p1", "u1", PURPOSE, explicit_board_id="mural-explicit")
  assert m.board_id == "mural-explicit"
  assert m.source == "explicit"
  assert store.list_calls == 0


@pytest.mark.anyio
async def test_store_ranking_prefers_primary_then_newest(mural: FakeMural, store: FakeMappingStore) -> None:
  store.add(_row("newer-non-primary", primary=False, age_days=0))
  store.add(_row("old-primary", primary=True, age_days=10))
  store.add(_row("new-primary", primary=True, age_days=1))
  reg = _registry(mural, store, MemoryKeyValueStore(), validate=False)

  picks = set()
  for _ in range(3):
    reg.cache.clear()
    picks.add((await reg.resolve("p1", "u1", PURPOSE)).board_id)
  assert picks == {"new-primary"}


@pytest.mark.anyio
async def test_store_hit_is_cached_within_ttl(mural: FakeMural, store: FakeMappingStore) -> None:
  store.add(_row("mural-1", primary=True))
  reg = _registry(mural, store, MemoryKeyValueStore(), validate=False)

  first = await reg.resolve("p1", "u1", PURPOSE)
  second = await reg.resolve("p1", "u1", PURPOSE)
  assert first.source == "store"
  assert second.source == "cache"
  assert second.board_id == "mural-1"
  assert store.list_calls == 1


@pytest.mark.anyio
async def test_cache_wins_until_ttl_then_store_top_row(mural: FakeMural, store: FakeMappingStore) -> None:
  now = [1_000.0]
  cache = ResolutionCache(ttl_seconds=60, clock=lambda: now[0])
  cache.set("p1", "u1", PURPOSE, _row("mural-cached", primary=True))
  store.add(_row("mural-older", primary=True, age_days=5))
  store.add(_row("mural-top", primary=True))
  reg = _registry(mural, store, MemoryKeyValueStore(), validate=False, cache=cache)

  hit = await reg.resolve("p1", "u1", PURPOSE)
  assert (hit.board_id, hit.source) == ("mural-cached", "cache")
  assert store.list_calls == 0

  now[0] += 61
  fresh = await reg.resolve("p1", "u1", PURPOSE)
  assert (fresh.board_id, fresh.source) == ("mural-top", "store")
  assert store.list_calls == 1


@pytest.mark.anyio
async def test_canonical_project_key_matches_rows_written_by_key(mural: FakeMural) -> None:
  store = FakeMappingStore(project_keys={"local-uuid": "recPROJECT000001"})
  store.add(_row("mural-by-key", primary=True, project="recPROJECT000001"))
  reg = _registry(mural, store, MemoryKeyValueStore(), validate=False)
  m = await reg.resolve("local-uuid", "u1", PURPOSE)
  assert m.board_id == "mural-by-key"


@pytest.mark.anyio
async def test_store_outage_falls_through_to_side_cache(mural: FakeMural, store: FakeMappingStore) -> None:
  kv = MemoryKeyValueStore()
  url = mural.viewer_url("mural-kv")
  await kv.put(side_cache_key("u1", "p1"), json.dumps({"boardId": "mural-kv", "boardUrl": url, "workspaceId": "ws-1"}))
  store.unavailable = True
  reg = _registry(mural, store, kv, validate=False)

  m = await reg.resolve("p1", "u1", PURPOSE)
  assert m.source == "side_cache"
  assert m.board_id == "mural-kv"
  assert m.board_url == url


@pytest.mark.anyio
async def test_malformed_side_cache_entry_is_discarded(mural: FakeMural, store: FakeMappingStore) -> None:
  kv = MemoryKeyValueStore()
  key = side_cache_key("u1", "p1")
  await kv.put(key, json.dumps({"boardId": "mural-kv", "boardUrl": "https://evil.example.com/t/x/m/y"}))
  reg = _registry(mural, store, kv, validate=False)

  assert await reg.resolve("p1", "u1", PURPOSE) is None
  assert await kv.get(key) is None


@pytest.mark.anyio
async def test_deprecated_fallback_is_last_resort(mural: FakeMural, store: FakeMappingStore) -> None:
  reg = _registry(mural, store, MemoryKeyValueStore(), fallback="mural-global")
  m = await reg.resolve("p1", "u1", PURPOSE)
  assert m.board_id == "mural-global"
  assert m.source == "fallback"

  reg_without = _registry(mural, store, MemoryKeyValueStore())
  assert await reg_without.resolve("p1", "u1", PURPOSE) is None


@pytest.mark.anyio
async def test_gone_board_is_deactivated_and_tombstoned(mural: FakeMural, store: FakeMappingStore) -> None:
  kv = MemoryKeyValueStore()
  await seed_tokens(kv, "u1")
  mural.add_board("mural-gone")
  mural.gone_boards.add("mural-gone")
  row = store.add(_row("mural-gone", primary=True))
  await kv.put(side_cache_key("u1", "p1"), json.dumps({"boardId": "mural-gone", "boardUrl": mural.viewer_url("mural-gone")}))
  reg = _registry(mural, store, kv)

  assert await reg.resolve("p1", "u1", PURPOSE) is None
  assert store.rows[row.record_id].is_active is False
  assert await kv.get(side_cache_key("u1", "p1")) is None
  assert reg.cache.is_tombstoned("p1", "u1", PURPOSE)

  # Never reactivated: the retired row no longer resolves.
  assert await reg.resolve("p1", "u1", PURPOSE) is None


@pytest.mark.anyio
async def test_live_board_passes_validation(mural: FakeMural, store: FakeMappingStore) -> None:
  kv = MemoryKeyValueStore()
  await seed_tokens(kv, "u1")
  mural.add_board("mural-live")
  store.add(_row("mural-live", primary=True))
  reg = _registry(mural, store, kv)

  m = await reg.resolve("p1", "u1", PURPOSE)
  assert m.board_id == "mural-live"
  assert ("GET", "/murals/mural-live") in mural.calls


@pytest.mark.anyio
async def test_validation_skipped_without_user_tokens(mural: FakeMural, store: FakeMappingStore) -> None:
  mural.gone_boards.add("mural-x")
  store.add(_row("mural-x", primary=True))
  reg = _registry(mural, store, MemoryKeyValueStore())

  m = await reg.resolve("p1", "u1", PURPOSE)
  assert m.board_id == "mural-x"
  assert mural.calls == []


@pytest.mark.anyio
async def test_register_is_idempotent_per_board(mural: FakeMural, store: FakeMappingStore) -> None:
  reg = _registry(mural, store, MemoryKeyValueStore(), validate=False)

  first = await reg.register("p1", "u1", PURPOSE, "mural-1", workspace_id="ws-1")
  second = await reg.register("p1", "u1", PURPOSE, "mural-1", board_url=mural.viewer_url("mural-1"))

  assert first.record_id == second.record_id
  assert len(store.active_rows()) == 1
  row = store.active_rows()[0]
  assert row.board_url == mural.viewer_url("mural-1")
  assert row.workspace_id == "ws-1"
  assert (await reg.resolve("p1", "u1", PURPOSE)).source == "cache"


@pytest.mark.anyio
async def test_register_primary_demotes_previous_primary(mural: FakeMural, store: FakeMappingStore) -> None:
  old = store.add(_row("mural-old", primary=True, age_days=3))
  reg = _registry(mural, store, MemoryKeyValueStore(), validate=False)

  new = await reg.register("p1", "u1", PURPOSE, "mural-new")
  assert store.rows[old.record_id].is_primary is False
  assert store.rows[new.record_id].is_primary is True

  reg.cache.clear()
  assert (await reg.resolve("p1", "u1", PURPOSE)).board_id == "mural-new"


@pytest.mark.anyio
async def test_write_side_cache_requires_viewer_url(mural: FakeMural) -> None:
  kv = MemoryKeyValueStore()
  reg = _registry(mural, None, kv)
  m = BoardMapping(project_ref="p1", user_ref="u1", purpose=PURPOSE, board_id="mural-1")
  assert await reg.write_side_cache("u1", "p1", m) is False
  m.board_url = mural.viewer_url("mural-1")
  assert await reg.write_side_cache("u1", "p1", m, project_name="Demo") is True
  data = json.loads(await kv.get(side_cache_key("u1", "p1")))
  assert data["boardId"] == "mural-1"
  assert data["projectName"] == "Demo"
