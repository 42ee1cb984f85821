from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from boardsync.boards.cache import ResolutionCache
from boardsync.boards.service import BoardService
from boardsync.config import settings
from boardsync.db import SessionLocal
from boardsync.kv import build_kv_store


async def get_db() -> AsyncSession:
  async with SessionLocal() as session:
    yield session


def get_resolution_cache(request: Request) -> ResolutionCache:
  cache = getattr(request.app.state, "resolution_cache", None)
  if cache is None:
    cache = ResolutionCache(ttl_seconds=settings.resolve_cache_ttl_seconds)
    request.app.state.resolution_cache = cache
  return cache


async def get_board_service(
  request: Request,
  db: AsyncSession = Depends(get_db),
  cache: ResolutionCache = Depends(get_resolution_cache),
) -> BoardService:
  # Tests swap remote APIs by setting transports on app.state.
  return BoardService(
    kv=build_kv_store(db),
    cache=cache,
    store=getattr(request.app.state, "mapping_store", None),
    mural_transport=getattr(request.app.state, "mural_transport", None),
    airtable_transport=getattr(request.app.state, "airtable_transport", None),
    probe_deadline_s=getattr(request.app.state, "probe_deadline_s", None),
    probe_interval_s=getattr(request.app.state, "probe_interval_s", None),
  )
