from __future__ import annotations

import os
import sys
from pathlib import Path

# Settings are read at import time; point everything at local fakes first.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./boardsync_test.db")
os.environ.setdefault("KV_BACKEND", "sql")
os.environ.setdefault("APP_BASE_URL", "http://localhost:3000")
os.environ.setdefault("MURAL_CLIENT_ID", "test-client")
os.environ.setdefault("MURAL_CLIENT_SECRET", "test-secret")
os.environ.setdefault("MURAL_REDIRECT_URI", "http://localhost/mural/callback")
os.environ.setdefault("AIRTABLE_BASE_ID", "")
os.environ.setdefault("AIRTABLE_API_KEY", "")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import delete

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
  sys.path.insert(0, str(ROOT))
TESTS = Path(__file__).resolve().parent
if str(TESTS) not in sys.path:
  sys.path.insert(0, str(TESTS))

from boardsync.config import settings
from boardsync.db import SessionLocal, engine
from boardsync.main import app
from boardsync.models import AuditEvent, Base, KvEntry

from fake_mural import FakeMural
from fakes import FakeMappingStore


@pytest.fixture(scope="session")
def anyio_backend() -> str:
  return "asyncio"


async def _reset_db() -> None:
  async with engine.begin() as conn:
    await conn.run_sync(Base.metadata.create_all)
  async with SessionLocal() as db:
    await db.execute(delete(AuditEvent))
    await db.execute(delete(KvEntry))
    await db.commit()
  await engine.dispose()


@pytest.fixture(autouse=True)
async def _clean_between_tests(anyio_backend: str) -> None:
  db_name = settings.database_url.rsplit("/", 1)[-1]
  if "test" not in db_name:
    raise RuntimeError(
      "Refusing to run destructive tests against non-test DB. "
      "Set DATABASE_URL to a *_test database (e.g. boardsync_test)."
    )
  await _reset_db()
  app.state.resolution_cache.clear()
  yield
  await _reset_db()


@pytest.fixture
def mural() -> FakeMural:
  return FakeMural()


@pytest.fixture
def store() -> FakeMappingStore:
  return FakeMappingStore()


@pytest.fixture
async def client(mural: FakeMural, store: FakeMappingStore) -> AsyncClient:
  app.state.mural_transport = mural.transport()
  app.state.mapping_store = store
  app.state.probe_deadline_s = 0.5
  app.state.probe_interval_s = 0.01
  transport = ASGITransport(app=app)
  try:
    async with AsyncClient(transport=transport, base_url="http://localhost") as c:
      yield c
  finally:
    app.state.mural_transport = None
    app.state.mapping_store = None
