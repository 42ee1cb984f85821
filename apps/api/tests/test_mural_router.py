from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from boardsync.db import SessionLocal
from boardsync.kv import SqlKeyValueStore
from boardsync.models import AuditEvent

from fake_mural import FakeMural
from fakes import FakeMappingStore, seed_tokens


async def _connect(uid: str = "u1") -> None:
  async with SessionLocal() as db:
    await seed_tokens(SqlKeyValueStore(db), uid)


async def _audit(event_type: str) -> list[AuditEvent]:
  async with SessionLocal() as db:
    res = await db.execute(select(AuditEvent).where(AuditEvent.event_type == event_type))
    return list(res.scalars().all())


@pytest.mark.anyio
async def test_health_and_version(client: AsyncClient) -> None:
  r = await client.get("/health")
  assert r.status_code == 200
  assert r.json() == {"ok": True}
  assert r.headers["x-content-type-options"] == "nosniff"

  v = (await client.get("/version")).json()
  assert v["version"]
  assert "buildSha" in v


@pytest.mark.anyio
async def test_oauth_roundtrip_connects_user(client: AsyncClient, mural: FakeMural) -> None:
  r = await client.get("/mural/auth", params={"uid": "u1", "return": "/pages/journal/"})
  assert r.status_code == 302
  authorize = urlparse(r.headers["location"])
  assert authorize.path.endswith("/authorization/oauth2/authorize")
  query = parse_qs(authorize.query)
  assert query["client_id"] == ["test-client"]
  state = query["state"][0]

  cb = await client.get("/mural/callback", params={"code": "good-code", "state": state})
  assert cb.status_code == 302
  assert cb.headers["location"] == "http://localhost:3000/pages/journal/?mural=connected"

  me = await client.get("/mural/me", params={"uid": "u1"})
  assert me.status_code == 200
  assert me.json()["me"]["id"] == "user-1"

  [event] = await _audit("mural.auth.connected")
  assert event.entity_id == "u1"
  assert "good-code" not in str(event.payload)


@pytest.mark.anyio
async def test_callback_failures_redirect_with_reason(client: AsyncClient) -> None:
  r = await client.get("/mural/callback", params={"code": "good-code", "state": "forged.sig"})
  assert r.status_code == 302
  assert r.headers["location"].endswith("/pages/projects/#mural-auth-invalid-state")

  auth = await client.get("/mural/auth", params={"uid": "u1", "return": "https://evil.example.com/"})
  state = parse_qs(urlparse(auth.headers["location"]).query)["state"][0]
  missing = await client.get("/mural/callback", params={"state": state})
  assert missing.headers["location"] == "http://localhost:3000/pages/projects/#mural-auth-missing-code"
  bad = await client.get("/mural/callback", params={"code": "bad-code", "state": state})
  assert bad.headers["location"].endswith("#mural-token-exchange-failed")

  assert len(await _audit("mural.auth.failed")) == 3


@pytest.mark.anyio
async def test_setup_resolve_and_journal_sync(client: AsyncClient, mural: FakeMural, store: FakeMappingStore) -> None:
  await _connect("u1")

  r = await client.post("/mural/setup", json={"uid": "u1", "projectId": "p1", "projectName": "Demo"})
  assert r.status_code == 200, r.text
  setup = r.json()
  assert setup["ok"] is True
  assert setup["status"] == "complete"
  assert setup["templateCopied"] is True
  board_id = setup["muralId"]
  assert setup["boardUrl"] == mural.viewer_url(board_id)

  resolved = (await client.get("/mural/resolve", params={"projectId": "p1", "uid": "u1"})).json()
  assert resolved["muralId"] == board_id
  assert resolved["isPrimary"] is True

  s = await client.post(
    "/mural/journal-sync",
    json={"uid": "u1", "projectId": "p1", "category": "Perceptions", "description": "First note", "tags": ["field"]},
  )
  assert s.status_code == 200, s.text
  body = s.json()
  assert body["action"] == "created-new"
  assert body["muralId"] == board_id
  assert body["tagsApplied"] is True
  sticky = next(w for w in mural.widgets[board_id] if w["id"] == body["stickyId"])
  assert (sticky["x"], sticky["y"]) == (200, 200)

  [setup_event] = await _audit("mural.setup.complete")
  assert setup_event.payload["muralId"] == board_id
  [sync_event] = await _audit("mural.journal.synced")
  assert sync_event.entity_id == body["stickyId"]


@pytest.mark.anyio
async def test_journal_sync_with_explicit_board(client: AsyncClient, mural: FakeMural) -> None:
  await _connect("u1")
  mural.add_board("mural-7")
  empty = mural.add_sticky("mural-7", text="", title="decisions", x=0, y=0)

  r = await client.post(
    "/mural/journal-sync", json={"uid": "u1", "muralId": "mural-7", "category": "decisions", "description": "Go"}
  )
  assert r.status_code == 200, r.text
  assert r.json()["action"] == "updated-empty"
  assert r.json()["stickyId"] == empty["id"]


@pytest.mark.anyio
async def test_errors_render_reason_and_step(client: AsyncClient, store: FakeMappingStore) -> None:
  r = await client.post("/mural/setup", json={"uid": "u1", "projectName": "Demo"})
  assert r.status_code == 400
  assert r.json()["error"] == "missing_required_field"
  assert r.json()["ok"] is False

  r = await client.post("/mural/setup", json={"uid": "u1", "projectId": "p1", "projectName": "Demo"})
  assert r.status_code == 401
  assert r.json()["error"] == "not_authenticated"
  assert r.json()["step"] == "authenticate"
  failed = await _audit("mural.setup.failed")
  assert sorted(e.payload["error"] for e in failed) == ["missing_required_field", "not_authenticated"]

  r = await client.get("/mural/resolve", params={"projectId": "nope", "uid": "u1"})
  assert r.status_code == 404
  assert r.json()["error"] == "not_found"
  assert r.json()["step"] == "resolve"

  r = await client.post("/mural/journal-sync", json={"uid": "u1", "projectId": "p1", "category": "musings", "description": "x"})
  assert r.status_code == 400
  assert r.json()["error"] == "unsupported_category"

  store.unavailable = True
  await _connect("u1")
  r = await client.post("/mural/setup", json={"uid": "u1", "projectId": "p1", "projectName": "Demo"})
  assert r.status_code == 502
  body = r.json()
  assert body["error"] == "upstream_unavailable"
  assert body["step"] == "register_mapping"
  assert body["upstream"]["boardId"]


@pytest.mark.anyio
async def test_debug_env_reports_booleans_only(client: AsyncClient) -> None:
  config = (await client.get("/mural/debug/env")).json()["config"]
  assert config["muralClientId"] is True
  assert config["muralClientSecret"] is True
  assert config["airtableApiKey"] is False
  assert config["mappingStore"] is True
  assert "test-secret" not in str(config)


@pytest.mark.anyio
async def test_verify_and_workspaces(client: AsyncClient, mural: FakeMural) -> None:
  assert (await client.get("/mural/verify", params={"uid": "u1"})).status_code == 401

  await _connect("u1")
  v = await client.get("/mural/verify", params={"uid": "u1"})
  assert v.status_code == 200
  assert v.json()["activeWorkspaceId"] == "ws-1"

  ws = (await client.get("/mural/workspaces", params={"uid": "u1"})).json()
  assert [w["id"] for w in ws["workspaces"]] == ["ws-1"]

  mural.me["companyName"] = "Acme Corp"
  denied = await client.get("/mural/verify", params={"uid": "u1"})
  assert denied.status_code == 403
  assert denied.json()["error"] == "not_in_allowed_workspace"
