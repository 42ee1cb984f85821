from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Callable

from boardsync.boards.cache import ResolutionCache
from boardsync.boards.store import MappingStore
from boardsync.boards.tokens import TokenStore
from boardsync.boards.types import ANON_USER, BoardMapping
from boardsync.boards.viewer import looks_like_viewer_url
from boardsync.errors import BoardSyncError, NotAuthenticated, UpstreamUnavailable
from boardsync.kv import KeyValueStore
from boardsync.mural.client import MuralApiError, MuralAuth, head_status, mural_get_board

logger = logging.getLogger(__name__)


def side_cache_key(user_ref: str | None, project_ref: str) -> str:
  return f"mural:{user_ref or ANON_USER}:project:id::{project_ref}"


class BoardRegistry:
  """
  Resolves and registers project -> board mappings.

  Resolution order: explicit id, in-process cache, durable store, KV side
  cache, deprecated fallback id. Steps after the cache write through to it.
  """

  def __init__(
    self,
    *,
    cache: ResolutionCache,
    store: MappingStore | None,
    kv: KeyValueStore,
    tokens: TokenStore | None,
    mural_auth: Callable[[str], MuralAuth],
    validate_liveness: bool = True,
    fallback_board_id: str | None = None,
  ) -> None:
    self.cache = cache
    self.store = store
    self.kv = kv
    self.tokens = tokens
    self.mural_auth = mural_auth
    self.validate_liveness = validate_liveness
    self.fallback_board_id = (fallback_board_id or "").strip() or None

  async def resolve(
    self,
    project_ref: str,
    user_ref: str | None,
    purpose: str,
    *,
    explicit_board_id: str | None = None,
    validate: bool | None = None,
  ) -> BoardMapping | None:
    validate = self.validate_liveness if validate is None else validate
    if explicit_board_id and explicit_board_id.strip():
      return BoardMapping(
        project_ref=project_ref,
        user_ref=user_ref or "",
        purpose=purpose,
        board_id=explicit_board_id.strip(),
        source="explicit",
      )

    cached = self.cache.get(project_ref, user_ref, purpose)
    if cached is not None:
      # a cached fallback stays marked as one so callers never persist it
      return cached if cached.source == "fallback" else cached.with_source("cache")

    if self.store is not None:
      try:
        found = await self._from_store(project_ref, user_ref, purpose)
      except UpstreamUnavailable as e:
        logger.warning("boards.resolve store unavailable project=%s: %s", project_ref, e.message)
        found = None
      if found is not None:
        if validate and await self._is_stale(found, user_ref):
          await self._retire(found, project_ref, user_ref, purpose)
          return None
        self.cache.set(project_ref, user_ref, purpose, found)
        return found

    side = await self._from_side_cache(project_ref, user_ref, purpose)
    if side is not None:
      if validate and await self._is_stale(side, user_ref):
        await self._retire(side, project_ref, user_ref, purpose)
        return None
      self.cache.set(project_ref, user_ref, purpose, side)
      return side

    if self.fallback_board_id:
      logger.warning(
        "boards.resolve using deprecated FALLBACK_BOARD_ID for project=%s; register a mapping instead", project_ref
      )
      fallback = BoardMapping(
        project_ref=project_ref,
        user_ref=user_ref or "",
        purpose=purpose,
        board_id=self.fallback_board_id,
        source="fallback",
      )
      self.cache.set(project_ref, user_ref, purpose, fallback)
      return fallback
    return None

  async def _from_store(self, project_ref: str, user_ref: str | None, purpose: str) -> BoardMapping | None:
    assert self.store is not None
    refs = [project_ref]
    key = await self.store.resolve_project_key(project_ref)
    if key and key != project_ref:
      refs.append(key)
    rows = await self.store.list_active(refs, purpose, user_ref)
    if not rows:
      return None
    rows.sort(key=lambda m: m.rank_key(), reverse=True)
    top = rows[0].with_source("store")
    top.project_key = top.project_key or key
    return top

  async def _from_side_cache(self, project_ref: str, user_ref: str | None, purpose: str) -> BoardMapping | None:
    key = side_cache_key(user_ref, project_ref)
    raw = await self.kv.get(key)
    if not raw:
      return None
    try:
      data = json.loads(raw)
    except ValueError:
      data = None
    board_id = data.get("boardId") if isinstance(data, dict) else None
    board_url = data.get("boardUrl") if isinstance(data, dict) else None
    if not isinstance(board_id, str) or not board_id.strip() or not looks_like_viewer_url(board_url):
      logger.info("boards.resolve discarding malformed side-cache entry key=%s", key)
      await self.kv.delete(key)
      return None
    return BoardMapping(
      project_ref=project_ref,
      user_ref=user_ref or ANON_USER,
      purpose=purpose,
      board_id=board_id.strip(),
      board_url=board_url.strip(),
      workspace_id=data.get("workspaceId") if isinstance(data.get("workspaceId"), str) else None,
      source="side_cache",
    )

  async def _is_stale(self, mapping: BoardMapping, user_ref: str | None) -> bool:
    uid = user_ref or mapping.user_ref
    if self.tokens is None or not uid:
      return False

    async def _probe(token: str) -> bool:
      auth = self.mural_auth(token)
      try:
        await mural_get_board(auth=auth, board_id=mapping.board_id)
      except MuralApiError as e:
        if e.gone:
          return True
        if e.status_code == 401:
          raise
        return False
      if mapping.board_url:
        status = await head_status(mapping.board_url, timeout=auth.timeout, transport=auth.transport)
        return status in (404, 410)
      return False

    try:
      return await self.tokens.with_valid_access(uid, _probe)
    except NotAuthenticated:
      # No usable token for this user: trust the mapping.
      return False

  async def _retire(self, mapping: BoardMapping, project_ref: str, user_ref: str | None, purpose: str) -> None:
    logger.warning(
      "boards.resolve board=%s for project=%s is gone; deactivating mapping (source=%s)",
      mapping.board_id,
      project_ref,
      mapping.source,
    )
    if self.store is not None and mapping.record_id:
      try:
        await self.store.deactivate(mapping)
      except BoardSyncError as e:
        logger.warning("boards.resolve deactivate failed record=%s: %s", mapping.record_id, e.message)
    await self.kv.delete(side_cache_key(user_ref or mapping.user_ref, project_ref))
    self.cache.tombstone(project_ref, user_ref, purpose)

  async def register(
    self,
    project_ref: str,
    user_ref: str,
    purpose: str,
    board_id: str,
    *,
    board_url: str | None = None,
    workspace_id: str | None = None,
    is_primary: bool = True,
    project_key: str | None = None,
  ) -> BoardMapping:
    if self.store is None:
      raise UpstreamUnavailable("Airtable is not configured; cannot register the board mapping")
    project_ref = project_ref.strip()
    board_id = board_id.strip()
    board_url = (board_url or "").strip() or None
    workspace_id = (workspace_id or "").strip() or None

    if project_key is None:
      try:
        project_key = await self.store.resolve_project_key(project_ref)
      except UpstreamUnavailable as e:
        logger.warning("boards.register project key lookup failed project=%s: %s", project_ref, e.message)
    refs = [project_ref] + ([project_key] if project_key and project_key != project_ref else [])

    existing = await self.store.find_active(refs, user_ref, purpose, board_id)
    if existing is not None:
      existing.is_primary = is_primary
      mapping = await self.store.update(existing, board_url=board_url, workspace_id=workspace_id)
    else:
      mapping = await self.store.create(
        BoardMapping(
          project_ref=project_ref,
          user_ref=user_ref,
          purpose=purpose,
          board_id=board_id,
          board_url=board_url,
          workspace_id=workspace_id,
          is_primary=is_primary,
          created_at=datetime.now(timezone.utc),
        ),
        project_key=project_key,
      )

    if is_primary:
      await self._demote_others(refs, purpose, keep=mapping)

    mapping.project_key = mapping.project_key or project_key
    mapping = mapping.with_source("registered")
    self.cache.set(project_ref, user_ref, purpose, mapping)
    if user_ref:
      self.cache.invalidate(project_ref, None, purpose)
    logger.info(
      "boards.register project=%s user=%s board=%s record=%s updated=%s",
      project_ref,
      user_ref,
      board_id,
      mapping.record_id,
      existing is not None,
    )
    return mapping

  async def _demote_others(self, refs: list[str], purpose: str, *, keep: BoardMapping) -> None:
    assert self.store is not None
    try:
      rows = await self.store.list_active(refs, purpose)
      for row in rows:
        if not row.is_primary or row.board_id == keep.board_id:
          continue
        if keep.record_id and row.record_id == keep.record_id:
          continue
        await self.store.demote(row)
    except BoardSyncError as e:
      logger.warning("boards.register demoting older primaries failed: %s", e.message)

  async def write_side_cache(self, user_ref: str | None, project_ref: str, mapping: BoardMapping, *, project_name: str | None = None) -> bool:
    if not looks_like_viewer_url(mapping.board_url):
      return False
    payload = {
      "boardId": mapping.board_id,
      "boardUrl": mapping.board_url,
      "workspaceId": mapping.workspace_id,
      "projectName": project_name,
      "updatedAt": datetime.now(timezone.utc).isoformat(),
    }
    await self.kv.put(side_cache_key(user_ref, project_ref), json.dumps(payload))
    return True
