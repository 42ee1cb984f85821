"""
Multi-step board provisioning.

authenticate -> verify_workspace -> resolve_identity -> ensure_room ->
ensure_folder -> create_or_duplicate_board -> update_board_label ->
probe_viewer_url -> resolve_project_key -> register_mapping ->
force_link_project -> cache_side_entry

Critical steps raise a `BoardSyncError` with `step` set. Best-effort steps log
a warning, record it on the result and continue. Nothing is rolled back: a
failed registration leaves the created board in Mural and reports its id.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable

from boardsync.boards.journal import plain_text
from boardsync.boards.registry import BoardRegistry
from boardsync.boards.tokens import TokenStore
from boardsync.boards.types import BoardMapping, SetupResult
from boardsync.boards.viewer import ViewerLinkProber, poll_viewer_url
from boardsync.config import settings
from boardsync.errors import BoardSyncError, NotAuthenticated, NotInAllowedWorkspace, UpstreamUnavailable
from boardsync.mural.client import (
  MuralApiError,
  MuralAuth,
  mural_create_board,
  mural_create_folder,
  mural_create_room,
  mural_duplicate_board,
  mural_get_me,
  mural_get_workspace,
  mural_list_folders,
  mural_list_rooms,
  mural_list_widgets,
  mural_update_widget,
  pick_id,
  unwrap_value,
)

logger = logging.getLogger(__name__)


def translate_mural_error(exc: MuralApiError, *, step: str | None = None) -> BoardSyncError:
  if exc.status_code == 401:
    return NotAuthenticated("Mural rejected the access token", step=step, details=exc.details())
  return UpstreamUnavailable(f"Mural request failed: {exc.message}", step=step, details=exc.details())


def active_workspace_id(me: dict[str, Any]) -> str | None:
  v = unwrap_value(me) if isinstance(me, dict) else {}
  ws = v.get("lastActiveWorkspace") if isinstance(v, dict) else None
  if isinstance(ws, dict):
    ws = ws.get("id")
  return str(ws).strip() if ws else None


def in_allowed_company(me: dict[str, Any], *, company_id: str | None = None, name_pattern: str | None = None) -> bool:
  v = unwrap_value(me) if isinstance(me, dict) else {}
  if not isinstance(v, dict):
    return False
  target = (company_id if company_id is not None else settings.mural_company_id or "").strip().lower()
  if target:
    cid = str(v.get("companyId") or "").strip().lower()
    return bool(cid) and cid == target
  cname = str(v.get("companyName") or "").strip()
  pattern = name_pattern if name_pattern is not None else settings.mural_company_name_pattern
  return bool(cname) and re.search(pattern, cname, re.I) is not None


def display_name(me: dict[str, Any]) -> str:
  v = unwrap_value(me) if isinstance(me, dict) else {}
  if isinstance(v, dict):
    for k in ("firstName", "name", "username", "email"):
      s = v.get(k)
      if isinstance(s, str) and s.strip():
        return s.strip()
  return "Private"


def _named(items: list[dict], name: str) -> dict | None:
  want = name.strip().lower()
  for it in items:
    n = it.get("name") or it.get("title")
    if isinstance(n, str) and n.strip().lower() == want:
      return it
  return None


def board_title(project_name: str) -> str:
  return f"{settings.mural_board_title_prefix}: {project_name.strip()}"


class ProvisioningOrchestrator:
  def __init__(
    self,
    *,
    registry: BoardRegistry,
    tokens: TokenStore,
    mural_auth: Callable[[str], MuralAuth],
    prober: ViewerLinkProber | None = None,
    template_board_id: str | None = None,
    probe_deadline_s: float | None = None,
    probe_interval_s: float | None = None,
  ) -> None:
    self.registry = registry
    self.tokens = tokens
    self.mural_auth = mural_auth
    self.prober = prober or ViewerLinkProber()
    self.template_board_id = template_board_id or settings.mural_template_board_id
    self.probe_deadline_s = probe_deadline_s
    self.probe_interval_s = probe_interval_s

  async def authenticate(self, uid: str) -> tuple[MuralAuth, dict]:
    async def _me(token: str) -> tuple[MuralAuth, dict]:
      auth = self.mural_auth(token)
      return auth, await mural_get_me(auth=auth)

    try:
      return await self.tokens.with_valid_access(uid, _me)
    except MuralApiError as e:
      raise translate_mural_error(e, step="authenticate") from e
    except BoardSyncError as e:
      raise e.at_step("authenticate")

  async def verify_workspace(self, auth: MuralAuth, me: dict, workspace_override: str | None = None) -> dict[str, Any]:
    if not in_allowed_company(me):
      raise NotInAllowedWorkspace("Mural account is not part of the allowed company", step="verify_workspace")
    if workspace_override:
      try:
        ws = await mural_get_workspace(auth=auth, workspace_id=workspace_override)
        return {"id": ws.get("id") or workspace_override, "key": ws.get("key") or ws.get("shortId"), "name": ws.get("name")}
      except MuralApiError as e:
        logger.warning("mural.setup workspace override %s unusable (status=%s); using active workspace", workspace_override, e.status_code)
    ws_id = active_workspace_id(me)
    if not ws_id:
      raise NotInAllowedWorkspace("Mural account has no active workspace", step="verify_workspace")
    return {"id": ws_id, "key": None, "name": None}

  async def ensure_room(self, auth: MuralAuth, workspace_id: str, username: str) -> dict:
    name = settings.mural_room_name_template.format(username=username)
    try:
      room = _named(await mural_list_rooms(auth=auth, workspace_id=workspace_id), name)
      if room is None:
        room = await mural_create_room(auth=auth, workspace_id=workspace_id, name=name)
        logger.info("mural.setup room created name=%r", name)
    except MuralApiError as e:
      raise translate_mural_error(e, step="ensure_room") from e
    if not pick_id(room):
      raise UpstreamUnavailable("Mural returned a room without an id", step="ensure_room", details={"room": room})
    return room

  async def ensure_folder(self, auth: MuralAuth, room_id: str, project_name: str) -> dict | None:
    folder = _named(await mural_list_folders(auth=auth, room_id=room_id), project_name)
    if folder is None:
      folder = await mural_create_folder(auth=auth, room_id=room_id, name=project_name.strip())
    return folder if pick_id(folder) else None

  async def create_or_duplicate_board(
    self, auth: MuralAuth, *, title: str, room_id: str, folder_id: str | None
  ) -> tuple[dict, str, bool]:
    template_copied = True
    try:
      board = await mural_duplicate_board(
        auth=auth, template_id=self.template_board_id, title=title, room_id=room_id, folder_id=folder_id
      )
    except MuralApiError as e:
      if e.status_code != 404:
        raise translate_mural_error(e, step="create_or_duplicate_board") from e
      logger.warning("mural.setup template %s not found; creating a blank board", self.template_board_id)
      template_copied = False
      try:
        board = await mural_create_board(auth=auth, title=title, room_id=room_id, folder_id=folder_id)
      except MuralApiError as e2:
        raise translate_mural_error(e2, step="create_or_duplicate_board") from e2
    board_id = pick_id(board)
    if not board_id:
      raise UpstreamUnavailable("Mural returned a board without an id", step="create_or_duplicate_board", details={"board": board})
    return board, board_id, template_copied

  async def update_board_label(self, auth: MuralAuth, board_id: str, project_name: str) -> bool:
    prefix = settings.mural_board_title_prefix.lower()
    label = board_title(project_name)
    for w in await mural_list_widgets(auth=auth, board_id=board_id):
      kind = str(w.get("type") or "").lower()
      wid = pick_id(w)
      if not wid:
        continue
      if "area" in kind and prefix in str(w.get("title") or "").lower():
        await mural_update_widget(auth=auth, board_id=board_id, widget_id=wid, kind="area", patch={"title": label})
        return True
      if "text" in kind and prefix in plain_text(w.get("text")).lower():
        await mural_update_widget(auth=auth, board_id=board_id, widget_id=wid, kind="textbox", patch={"text": label})
        return True
    return False

  async def run(
    self,
    *,
    uid: str,
    project_ref: str,
    project_name: str,
    purpose: str,
    workspace_override: str | None = None,
  ) -> SetupResult:
    warnings: list[dict[str, Any]] = []

    def _warn(step: str, exc: Exception) -> None:
      message = exc.message if isinstance(exc, (BoardSyncError, MuralApiError)) else str(exc)
      logger.warning("mural.setup step=%s failed (non-critical): %s", step, message)
      warnings.append({"step": step, "message": message})

    logger.info("mural.setup start uid=%s project=%s", uid, project_ref)
    auth, me = await self.authenticate(uid)
    workspace = await self.verify_workspace(auth, me, workspace_override)
    username = display_name(me)

    room = await self.ensure_room(auth, workspace["id"], username)
    room_id = pick_id(room) or ""

    folder: dict | None = None
    try:
      folder = await self.ensure_folder(auth, room_id, project_name)
    except MuralApiError as e:
      _warn("ensure_folder", e)

    board, board_id, template_copied = await self.create_or_duplicate_board(
      auth, title=board_title(project_name), room_id=room_id, folder_id=pick_id(folder) if folder else None
    )
    logger.info("mural.setup board=%s template_copied=%s", board_id, template_copied)

    if template_copied:
      try:
        if not await self.update_board_label(auth, board_id, project_name):
          logger.info("mural.setup no title widget found on board=%s", board_id)
      except MuralApiError as e:
        _warn("update_board_label", e)

    board_url, attempts = await poll_viewer_url(
      self.prober,
      board_id,
      auth,
      deadline_s=self.probe_deadline_s,
      interval_s=self.probe_interval_s,
    )
    logger.info("mural.setup viewer url found=%s attempts=%s", bool(board_url), attempts)

    project_key: str | None = None
    if self.registry.store is not None:
      try:
        project_key = await self.registry.store.resolve_project_key(project_ref)
      except BoardSyncError as e:
        _warn("resolve_project_key", e)

    try:
      mapping = await self.registry.register(
        project_ref,
        uid,
        purpose,
        board_id,
        board_url=board_url,
        workspace_id=workspace["id"],
        is_primary=True,
        project_key=project_key,
      )
    except BoardSyncError as e:
      e.at_step("register_mapping")
      e.details = {**e.details, "boardId": board_id, "boardUrl": board_url}
      logger.error("mural.setup register failed board=%s left unregistered: %s", board_id, e.message)
      raise

    await self._force_link(mapping, project_key, _warn)

    if board_url:
      try:
        await self.registry.write_side_cache(uid, project_ref, mapping, project_name=project_name)
      except Exception as e:  # KV backends raise their own driver errors
        _warn("cache_side_entry", e)

    status = "complete" if board_url else "pending"
    logger.info("mural.setup %s uid=%s project=%s board=%s", status, uid, project_ref, board_id)
    return SetupResult(
      status=status,
      board_id=board_id,
      board_url=board_url,
      workspace=workspace,
      room=room,
      folder=folder,
      template_copied=template_copied,
      probe_attempts=attempts,
      project_key=mapping.project_key or project_key,
      warnings=warnings,
    )

  async def _force_link(
    self, mapping: BoardMapping, project_key: str | None, warn: Callable[[str, Exception], None]
  ) -> None:
    store = self.registry.store
    if store is None or not project_key or not mapping.record_id:
      return
    try:
      if not await store.link_project(mapping.record_id, project_key):
        logger.info("mural.setup project link not accepted record=%s", mapping.record_id)
    except BoardSyncError as e:
      warn("force_link_project", e)
