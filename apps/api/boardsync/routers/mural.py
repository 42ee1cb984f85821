from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from boardsync.audit import write_audit
from boardsync.boards.service import BoardService
from boardsync.boards.types import ANON_USER, PURPOSE_REFLEXIVE
from boardsync.deps import get_board_service, get_db
from boardsync.errors import BoardSyncError
from boardsync.schemas import (
  AwaitUrlIn,
  AwaitUrlOut,
  JournalSyncIn,
  JournalSyncOut,
  MuralResolveOut,
  MuralSetupIn,
  MuralSetupOut,
  MuralVerifyOut,
)

router = APIRouter(prefix="/mural", tags=["mural"])


@router.get("/auth")
async def mural_auth(
  uid: str = ANON_USER,
  return_: str | None = Query(default=None, alias="return"),
  svc: BoardService = Depends(get_board_service),
) -> RedirectResponse:
  return RedirectResponse(svc.begin_auth(uid, return_), status_code=302)


@router.get("/callback")
async def mural_callback(
  code: str | None = None,
  state: str | None = None,
  svc: BoardService = Depends(get_board_service),
  db: AsyncSession = Depends(get_db),
) -> RedirectResponse:
  result = await svc.complete_auth(code, state)
  await write_audit(
    db,
    event_type="mural.auth.connected" if result.connected else "mural.auth.failed",
    entity_type="MuralConnection",
    entity_id=result.uid,
    actor_id=result.uid,
    payload={"reason": result.reason},
  )
  await db.commit()
  return RedirectResponse(result.redirect_url, status_code=302)


@router.get("/verify", response_model=MuralVerifyOut)
async def mural_verify(uid: str = ANON_USER, svc: BoardService = Depends(get_board_service)) -> MuralVerifyOut:
  out = await svc.verify_identity(uid)
  return MuralVerifyOut(activeWorkspaceId=out["workspace"]["id"], me=out["profile"])


@router.get("/me")
async def mural_me(uid: str = ANON_USER, svc: BoardService = Depends(get_board_service)) -> dict:
  return {"ok": True, "me": await svc.me(uid)}


@router.get("/workspaces")
async def mural_workspaces(uid: str = ANON_USER, svc: BoardService = Depends(get_board_service)) -> dict:
  return {"ok": True, "workspaces": await svc.list_workspaces(uid)}


@router.post("/setup", response_model=MuralSetupOut)
async def mural_setup(
  payload: MuralSetupIn,
  svc: BoardService = Depends(get_board_service),
  db: AsyncSession = Depends(get_db),
) -> MuralSetupOut:
  try:
    res = await svc.setup_board(
      payload.uid,
      payload.projectId,
      payload.projectName,
      workspace_override=payload.workspaceId,
      purpose=payload.purpose,
    )
  except BoardSyncError as e:
    await write_audit(
      db,
      event_type="mural.setup.failed",
      entity_type="Project",
      entity_id=payload.projectId,
      actor_id=payload.uid,
      payload={"step": e.step, "error": e.reason, "message": e.message, "details": e.details},
    )
    await db.commit()
    raise
  await write_audit(
    db,
    event_type=f"mural.setup.{res.status}",
    entity_type="Project",
    entity_id=payload.projectId,
    actor_id=payload.uid,
    payload={
      "muralId": res.board_id,
      "boardUrl": res.board_url,
      "templateCopied": res.template_copied,
      "probeAttempts": res.probe_attempts,
      "warnings": res.warnings,
    },
  )
  await db.commit()
  return MuralSetupOut(
    status=res.status,
    muralId=res.board_id,
    boardUrl=res.board_url,
    workspace=res.workspace,
    room=res.room,
    folder=res.folder,
    templateCopied=res.template_copied,
    probeAttempts=res.probe_attempts,
    projectRecordId=res.project_key,
    warnings=res.warnings,
  )


@router.get("/resolve", response_model=MuralResolveOut)
async def mural_resolve(
  projectId: str,
  uid: str | None = None,
  purpose: str = PURPOSE_REFLEXIVE,
  svc: BoardService = Depends(get_board_service),
) -> MuralResolveOut:
  m = await svc.resolve_board(projectId, uid, purpose)
  return MuralResolveOut(
    muralId=m.board_id,
    boardUrl=m.board_url,
    workspaceId=m.workspace_id,
    projectRecordId=m.project_key,
    isPrimary=m.is_primary,
    createdAt=m.created_at,
    source=m.source,
  )


@router.post("/journal-sync", response_model=JournalSyncOut)
async def mural_journal_sync(
  payload: JournalSyncIn,
  svc: BoardService = Depends(get_board_service),
  db: AsyncSession = Depends(get_db),
) -> JournalSyncOut:
  try:
    out = await svc.sync_journal_entry(
      payload.uid,
      category=payload.category,
      text=payload.description,
      project_ref=payload.projectId,
      board_id=payload.muralId,
      purpose=payload.purpose,
      tags=payload.tags,
    )
  except BoardSyncError as e:
    await write_audit(
      db,
      event_type="mural.journal.failed",
      entity_type="Project",
      entity_id=payload.projectId or payload.muralId,
      actor_id=payload.uid,
      payload={"step": e.step, "error": e.reason, "category": payload.category},
    )
    await db.commit()
    raise
  await write_audit(
    db,
    event_type="mural.journal.synced",
    entity_type="MuralWidget",
    entity_id=out.widget_id,
    actor_id=payload.uid,
    payload={"muralId": out.board_id, "action": out.action, "category": payload.category, "tagsApplied": out.tags_applied},
  )
  await db.commit()
  return JournalSyncOut(stickyId=out.widget_id, action=out.action, muralId=out.board_id, tagsApplied=out.tags_applied)


@router.post("/await-url", response_model=AwaitUrlOut)
async def mural_await_url(payload: AwaitUrlIn, svc: BoardService = Depends(get_board_service)) -> AwaitUrlOut:
  out = await svc.await_viewer_url(payload.uid, payload.projectId, payload.purpose)
  return AwaitUrlOut(status=out["status"], muralId=out["boardId"], boardUrl=out["boardUrl"], attempts=out["attempts"])


@router.get("/debug/env")
async def mural_debug_env(svc: BoardService = Depends(get_board_service)) -> dict:
  return {"ok": True, "config": svc.config_status()}
