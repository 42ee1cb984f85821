from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

import httpx

from boardsync.airtable.client import AirtableAuth
from boardsync.boards.cache import ResolutionCache
from boardsync.boards.journal import JournalSyncEngine, validate_entry
from boardsync.boards.provisioning import ProvisioningOrchestrator, in_allowed_company, translate_mural_error, active_workspace_id
from boardsync.boards.registry import BoardRegistry
from boardsync.boards.store import AirtableMappingStore, MappingStore
from boardsync.boards.tokens import TokenStore
from boardsync.boards.types import ANON_USER, PURPOSE_REFLEXIVE, BoardMapping, SetupResult, SyncOutcome
from boardsync.boards.viewer import ViewerLinkProber, poll_viewer_url
from boardsync.config import settings
from boardsync.errors import MissingRequiredField, NotFound, NotInAllowedWorkspace, UpstreamUnavailable
from boardsync.kv import KeyValueStore
from boardsync.mural.client import (
  MuralApiError,
  MuralAuth,
  MuralOAuthApp,
  build_auth_url,
  mural_get_me,
  mural_list_workspaces,
)
from boardsync.security import OAuthStateError, decode_oauth_state, encode_oauth_state

logger = logging.getLogger(__name__)

DEFAULT_RETURN_PATH = "/pages/projects/"


@dataclass
class AuthCallbackResult:
  redirect_url: str
  uid: str
  connected: bool
  reason: str | None = None


def safe_return_path(value: str | None, *, base_url: str | None = None) -> str:
  """Only relative paths or URLs on our own origin are allowed as return targets."""
  ret = (value or "").strip()
  if not ret:
    return DEFAULT_RETURN_PATH
  if ret.startswith("/") and not ret.startswith("//"):
    return ret
  base = urlparse(base_url or settings.app_base_url)
  u = urlparse(ret)
  if u.scheme in ("http", "https") and u.scheme == base.scheme and u.netloc == base.netloc:
    return ret
  return DEFAULT_RETURN_PATH


def _with_query(url: str, **params: str) -> str:
  u = urlparse(url)
  query = dict(parse_qsl(u.query, keep_blank_values=True))
  query.update(params)
  return urlunparse(u._replace(query=urlencode(query)))


class BoardService:
  """Composes token handling, resolution, provisioning and journal sync."""

  def __init__(
    self,
    *,
    kv: KeyValueStore,
    cache: ResolutionCache,
    store: MappingStore | None = None,
    mural_transport: httpx.AsyncBaseTransport | None = None,
    airtable_transport: httpx.AsyncBaseTransport | None = None,
    probe_deadline_s: float | None = None,
    probe_interval_s: float | None = None,
  ) -> None:
    self.mural_transport = mural_transport
    self.oauth_app = MuralOAuthApp(
      client_id=settings.mural_client_id or "",
      client_secret=settings.mural_client_secret or "",
      redirect_uri=settings.mural_redirect_uri or "",
      base_url=settings.mural_api_base,
      scopes=settings.mural_scope_list(),
      timeout=settings.mural_timeout_seconds,
      transport=mural_transport,
    )
    if store is None and settings.airtable_configured():
      store = AirtableMappingStore(
        AirtableAuth(
          base_id=settings.airtable_base_id or "",
          api_key=settings.airtable_api_key or "",
          api_base=settings.airtable_api_base,
          timeout=settings.airtable_timeout_seconds,
          transport=airtable_transport,
        )
      )
    self.tokens = TokenStore(kv, self.oauth_app)
    self.registry = BoardRegistry(
      cache=cache,
      store=store,
      kv=kv,
      tokens=self.tokens,
      mural_auth=self.mural_auth,
      validate_liveness=settings.validate_board_liveness,
      fallback_board_id=settings.fallback_board_id,
    )
    self.prober = ViewerLinkProber()
    self.probe_deadline_s = probe_deadline_s
    self.probe_interval_s = probe_interval_s
    self.orchestrator = ProvisioningOrchestrator(
      registry=self.registry,
      tokens=self.tokens,
      mural_auth=self.mural_auth,
      prober=self.prober,
      probe_deadline_s=probe_deadline_s,
      probe_interval_s=probe_interval_s,
    )

  def mural_auth(self, token: str) -> MuralAuth:
    return MuralAuth(
      token=token,
      base_url=settings.mural_api_base,
      timeout=settings.mural_timeout_seconds,
      transport=self.mural_transport,
    )

  # OAuth

  def begin_auth(self, uid: str | None, return_path: str | None = None) -> str:
    if not settings.mural_client_id or not settings.mural_redirect_uri:
      raise UpstreamUnavailable("Mural OAuth is not configured (MURAL_CLIENT_ID / MURAL_REDIRECT_URI)", step="begin_auth")
    state = encode_oauth_state({"uid": uid or ANON_USER, "return": safe_return_path(return_path)})
    return build_auth_url(app=self.oauth_app, state=state)

  async def complete_auth(self, code: str | None, state: str | None) -> AuthCallbackResult:
    try:
      data = decode_oauth_state(state or "")
    except OAuthStateError as e:
      logger.warning("mural.callback rejected state: %s", e)
      return AuthCallbackResult(
        redirect_url=urljoin(settings.app_base_url, DEFAULT_RETURN_PATH) + "#mural-auth-invalid-state",
        uid=ANON_USER,
        connected=False,
        reason="invalid_state",
      )
    uid = str(data.get("uid") or ANON_USER)
    back = urljoin(settings.app_base_url, safe_return_path(data.get("return")))
    if not code:
      return AuthCallbackResult(redirect_url=f"{back}#mural-auth-missing-code", uid=uid, connected=False, reason="missing_code")
    try:
      await self.tokens.exchange_code(uid, code)
    except MuralApiError as e:
      logger.warning("mural.callback token exchange failed uid=%s status=%s", uid, e.status_code)
      return AuthCallbackResult(
        redirect_url=f"{back}#mural-token-exchange-failed", uid=uid, connected=False, reason="token_exchange_failed"
      )
    return AuthCallbackResult(redirect_url=_with_query(back, mural="connected"), uid=uid, connected=True)

  async def _call(self, uid: str, fn: Any, *, step: str) -> Any:
    try:
      return await self.tokens.with_valid_access(uid, fn)
    except MuralApiError as e:
      raise translate_mural_error(e, step=step) from e

  async def verify_identity(self, uid: str) -> dict[str, Any]:
    me = await self._call(uid, lambda tok: mural_get_me(auth=self.mural_auth(tok)), step="verify")
    if not in_allowed_company(me):
      raise NotInAllowedWorkspace("Mural account is not part of the allowed company", step="verify")
    return {"workspace": {"id": active_workspace_id(me)}, "profile": me}

  async def list_workspaces(self, uid: str) -> list[dict]:
    return await self._call(uid, lambda tok: mural_list_workspaces(auth=self.mural_auth(tok)), step="list_workspaces")

  async def me(self, uid: str) -> dict:
    return await self._call(uid, lambda tok: mural_get_me(auth=self.mural_auth(tok)), step="me")

  # Boards

  async def setup_board(
    self,
    uid: str,
    project_ref: str,
    project_name: str,
    *,
    workspace_override: str | None = None,
    purpose: str | None = None,
  ) -> SetupResult:
    if not (project_ref or "").strip():
      raise MissingRequiredField("projectId is required", step="setup", details={"field": "projectId"})
    if not (project_name or "").strip():
      raise MissingRequiredField("projectName is required", step="setup", details={"field": "projectName"})
    return await self.orchestrator.run(
      uid=uid,
      project_ref=project_ref.strip(),
      project_name=project_name.strip(),
      purpose=purpose or PURPOSE_REFLEXIVE,
      workspace_override=(workspace_override or "").strip() or None,
    )

  async def resolve_board(self, project_ref: str, uid: str | None = None, purpose: str | None = None) -> BoardMapping:
    if not (project_ref or "").strip():
      raise MissingRequiredField("projectId is required", step="resolve", details={"field": "projectId"})
    mapping = await self.registry.resolve(project_ref.strip(), uid or None, purpose or PURPOSE_REFLEXIVE)
    if mapping is None:
      raise NotFound(f"No board is registered for project '{project_ref}'", step="resolve")
    return mapping

  async def sync_journal_entry(
    self,
    uid: str,
    *,
    category: str,
    text: str,
    project_ref: str | None = None,
    board_id: str | None = None,
    purpose: str | None = None,
    tags: list[str] | None = None,
  ) -> SyncOutcome:
    category, text = validate_entry(category, text)
    if not (project_ref or "").strip() and not (board_id or "").strip():
      raise MissingRequiredField("projectId or muralId is required", step="resolve_board", details={"field": "projectId"})
    mapping = await self.registry.resolve(
      (project_ref or "").strip(), uid or None, purpose or PURPOSE_REFLEXIVE, explicit_board_id=board_id
    )
    if mapping is None:
      raise NotFound(f"No board is registered for project '{project_ref}'", step="resolve_board")

    # A call that may create a note is never retried, so settle the token first.
    auth, _ = await self.orchestrator.authenticate(uid)
    try:
      return await JournalSyncEngine(auth).sync(mapping.board_id, category, text, tags)
    except MuralApiError as e:
      raise translate_mural_error(e, step="sync") from e

  async def await_viewer_url(self, uid: str, project_ref: str, purpose: str | None = None) -> dict[str, Any]:
    purpose = purpose or PURPOSE_REFLEXIVE
    mapping = await self.registry.resolve(project_ref, uid, purpose, validate=False)
    if mapping is None:
      raise NotFound(f"No board is registered for project '{project_ref}'", step="await_viewer_url")
    if mapping.source in ("fallback", "explicit"):
      raise NotFound(
        f"No board is registered for project '{project_ref}'", step="await_viewer_url", details={"source": mapping.source}
      )
    if mapping.board_url:
      return {"boardId": mapping.board_id, "boardUrl": mapping.board_url, "attempts": 0, "status": "complete"}
    auth, _ = await self.orchestrator.authenticate(uid)
    url, attempts = await poll_viewer_url(
      self.prober, mapping.board_id, auth, deadline_s=self.probe_deadline_s, interval_s=self.probe_interval_s
    )
    if not url:
      return {"boardId": mapping.board_id, "boardUrl": None, "attempts": attempts, "status": "pending"}
    registered = await self.registry.register(
      project_ref,
      uid,
      purpose,
      mapping.board_id,
      board_url=url,
      workspace_id=mapping.workspace_id,
      is_primary=True,
      project_key=mapping.project_key,
    )
    await self.registry.write_side_cache(uid, project_ref, registered)
    return {"boardId": registered.board_id, "boardUrl": url, "attempts": attempts, "status": "complete"}

  def config_status(self) -> dict[str, Any]:
    return {
      "muralClientId": bool(settings.mural_client_id),
      "muralClientSecret": bool(settings.mural_client_secret),
      "muralRedirectUri": bool(settings.mural_redirect_uri),
      "muralCompanyId": bool(settings.mural_company_id),
      "muralTemplateBoardId": bool(settings.mural_template_board_id),
      "airtableBaseId": bool(settings.airtable_base_id),
      "airtableApiKey": bool(settings.airtable_api_key),
      "mappingStore": self.registry.store is not None,
      "kvBackend": (settings.kv_backend or "sql").strip().lower(),
      "fallbackBoardId": bool(settings.fallback_board_id),
      "validateBoardLiveness": bool(settings.validate_board_liveness),
    }
