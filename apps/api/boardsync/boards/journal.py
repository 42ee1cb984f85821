from __future__ import annotations

import logging
import re
from typing import Any

from boardsync.boards.types import JOURNAL_CATEGORIES, StickyNote, SyncOutcome
from boardsync.config import settings
from boardsync.errors import MissingRequiredField, UnsupportedCategory
from boardsync.mural.client import (
  MuralApiError,
  MuralAuth,
  mural_create_sticky,
  mural_create_tag,
  mural_list_tags,
  mural_list_widgets,
  mural_update_widget,
  pick_id,
)

logger = logging.getLogger(__name__)

GRID_Y = 32
DEFAULT_W = 240
DEFAULT_H = 120
DEFAULT_X = 200
DEFAULT_Y = 200

_HTML_TAG = re.compile(r"<[^>]+>")


def _num(value: Any) -> float | None:
  if isinstance(value, bool):
    return None
  if isinstance(value, (int, float)):
    return float(value)
  if isinstance(value, str):
    try:
      return float(value)
    except ValueError:
      return None
  return None


def plain_text(value: Any) -> str:
  if not isinstance(value, str):
    return ""
  return _HTML_TAG.sub("", value).replace("&nbsp;", " ").strip()


def _names(items: Any, tag_names: dict[str, str]) -> tuple[list[str], list[str]]:
  ids: list[str] = []
  names: list[str] = []
  if not isinstance(items, list):
    return ids, names
  for t in items:
    if isinstance(t, dict):
      tid = pick_id(t)
      name = t.get("text") or t.get("name") or t.get("label")
      if tid:
        ids.append(tid)
      if isinstance(name, str) and name.strip():
        names.append(name.strip().lower())
      elif tid and tid in tag_names:
        names.append(tag_names[tid])
    elif isinstance(t, str) and t.strip():
      if t in tag_names:
        ids.append(t)
        names.append(tag_names[t])
      else:
        names.append(t.strip().lower())
  return ids, names


def normalize_stickies(widgets: list[dict], tag_names: dict[str, str] | None = None) -> list[StickyNote]:
  tag_names = tag_names or {}
  out: list[StickyNote] = []
  for w in widgets:
    if "sticky" not in str(w.get("type") or "").lower():
      continue
    wid = pick_id(w)
    if not wid:
      continue
    tag_ids, names = _names(w.get("tags"), tag_names)
    _, label_names = _names(w.get("labels"), tag_names)
    out.append(
      StickyNote(
        id=wid,
        text=plain_text(w.get("text") or w.get("htmlText")),
        x=_num(w.get("x")),
        y=_num(w.get("y")),
        width=_num(w.get("width")),
        height=_num(w.get("height")),
        created_on=_num(w.get("createdOn")),
        tag_ids=tag_ids,
        tag_names=names + [n for n in label_names if n not in names],
        title=str(w.get("title") or "").strip(),
      )
    )
  return out


def in_category(note: StickyNote, category: str) -> bool:
  cat = category.lower()
  return cat in note.tag_names or note.title.strip().lower() == cat


def latest_in_category(notes: list[StickyNote], category: str) -> StickyNote | None:
  pool = [n for n in notes if in_category(n, category)]
  if not pool:
    return None
  positioned = [n for n in pool if n.positioned]
  if positioned:
    return max(
      positioned,
      key=lambda n: (n.y or 0.0, (n.y or 0.0) + (n.height or 0.0), n.created_on or 0.0),
    )
  return max(pool, key=lambda n: n.created_on or 0.0)


def merge_tags(category: str, tags: list[str] | None) -> list[str]:
  out: list[str] = []
  seen: set[str] = set()
  for t in [category, *(tags or [])]:
    name = str(t or "").strip()
    if name and name.lower() not in seen:
      seen.add(name.lower())
      out.append(name)
  return out


def validate_entry(category: str, text: str) -> tuple[str, str]:
  cat = (category or "").strip().lower()
  if not cat:
    raise MissingRequiredField("Journal entry category is required", details={"field": "category"})
  if cat not in JOURNAL_CATEGORIES:
    raise UnsupportedCategory(f"Unsupported category '{cat}'", details={"allowed": list(JOURNAL_CATEGORIES)})
  body = (text or "").strip()
  if not body:
    raise MissingRequiredField("Journal entry text is required", details={"field": "text"})
  return cat, body


class JournalSyncEngine:
  def __init__(self, auth: MuralAuth, *, tag_color: str | None = None) -> None:
    self.auth = auth
    self.tag_color = tag_color or settings.mural_tag_color

  async def _board_tags(self, board_id: str) -> list[dict]:
    try:
      return await mural_list_tags(auth=self.auth, board_id=board_id)
    except MuralApiError as e:
      logger.warning("journal.tags list failed board=%s status=%s", board_id, e.status_code)
      return []

  async def ensure_tags(self, board_id: str, names: list[str], existing: list[dict]) -> list[str]:
    by_name: dict[str, str] = {}
    for t in existing:
      tid = pick_id(t)
      name = t.get("text") or t.get("name")
      if tid and isinstance(name, str) and name.strip():
        by_name.setdefault(name.strip().lower(), tid)
    ids: list[str] = []
    for name in names:
      tid = by_name.get(name.lower())
      if tid is None:
        tid = await mural_create_tag(auth=self.auth, board_id=board_id, name=name, color=self.tag_color)
        if not tid:
          raise MuralApiError(status_code=502, message=f"Tag '{name}' was not created", endpoint=f"/murals/{board_id}/tags")
        by_name[name.lower()] = tid
      if tid not in ids:
        ids.append(tid)
    return ids

  async def sync(self, board_id: str, category: str, text: str, tags: list[str] | None = None) -> SyncOutcome:
    category, body = validate_entry(category, text)

    board_tags = await self._board_tags(board_id)
    tag_names = {pick_id(t) or "": str(t.get("text") or t.get("name") or "").strip().lower() for t in board_tags}
    widgets = await mural_list_widgets(auth=self.auth, board_id=board_id)
    notes = normalize_stickies(widgets, tag_names)
    last = latest_in_category(notes, category)

    if last is not None and not last.text:
      await mural_update_widget(auth=self.auth, board_id=board_id, widget_id=last.id, patch={"text": body})
      widget_id, action, prior_tags = last.id, "updated-empty", list(last.tag_ids)
    else:
      if last is not None:
        height = last.height or DEFAULT_H
        x = last.x if last.x is not None else DEFAULT_X
        y = (last.y or 0.0) + height + GRID_Y
        width = last.width or DEFAULT_W
      else:
        x, y, width, height = DEFAULT_X, DEFAULT_Y, DEFAULT_W, DEFAULT_H
      created = await mural_create_sticky(
        auth=self.auth,
        board_id=board_id,
        text=body,
        x=round(x),
        y=round(y),
        width=round(width),
        height=round(height),
      )
      if not created:
        raise MuralApiError(
          status_code=502, message="Sticky note was created without an id", endpoint=f"/murals/{board_id}/widgets/sticky-note"
        )
      widget_id, action, prior_tags = created, "created-new", []

    tags_applied = True
    try:
      wanted = await self.ensure_tags(board_id, merge_tags(category, tags), board_tags)
      merged = list(dict.fromkeys([*prior_tags, *wanted]))
      await mural_update_widget(auth=self.auth, board_id=board_id, widget_id=widget_id, patch={"tags": merged})
    except MuralApiError as e:
      tags_applied = False
      logger.warning("journal.tags apply failed board=%s widget=%s status=%s: %s", board_id, widget_id, e.status_code, e.message)

    logger.info("journal.sync board=%s category=%s action=%s widget=%s", board_id, category, action, widget_id)
    return SyncOutcome(widget_id=widget_id, action=action, board_id=board_id, tags_applied=tags_applied)
